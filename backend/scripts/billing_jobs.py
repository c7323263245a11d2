#!/usr/bin/env python3
"""
Scheduled Billing Jobs

Entry point for the cron-driven side of the billing engine. Each job runs
in its own database session and exits non-zero when it reports failures.

Usage:
    python -m scripts.billing_jobs reconcile            # Daily drift correction
    python -m scripts.billing_jobs retry --limit 50     # Drain due event retries
    python -m scripts.billing_jobs overage              # Period-boundary overage run
    python -m scripts.billing_jobs health               # Stuck / failed event counts
    python -m scripts.billing_jobs expirations --days 3 # Grace periods ending soon
"""

import asyncio
import argparse
import logging

# Add parent directory to path for imports
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from app.config.settings import settings
from app.domain.billing import BillingEngine
from app.infrastructure.db.database import close_db, get_session_context, init_db
from app.infrastructure.db.repositories import SqlBillingStore

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def run_reconcile(engine: BillingEngine, args) -> bool:
    report = await engine.reconciliation.enforce_subscription_rules()
    print(f"Trials expired: {report.trials_expired}")
    print(f"Boxes suspended: {report.boxes_suspended}")
    print(f"Errors: {len(report.errors)}")
    return report.success


async def run_retry(engine: BillingEngine, args) -> bool:
    results = await engine.webhooks.retry_due_events(args.limit)
    processed = sum(1 for r in results if r.status == "processed")
    print(f"Retried: {len(results)}")
    print(f"Processed: {processed}")
    print(f"Still failing: {len(results) - processed}")
    return True


async def run_overage(engine: BillingEngine, args) -> bool:
    results = await engine.usage.process_period_overage_billing()
    billed = [r for r in results if r.billed]
    failed = [r for r in results if not r.success]
    print(f"Boxes checked: {len(results)}")
    print(f"Billed: {len(billed)} ({sum(r.total_overage_amount for r in billed)} total)")
    print(f"Failed: {len(failed)}")
    return not failed


async def run_health(engine: BillingEngine, args) -> bool:
    report = await engine.webhooks.health_check()
    print(f"Stuck processing: {report.stuck_processing}")
    print(f"Terminal failures: {report.terminal_failures}")
    print(f"Overdue grace periods: {report.overdue_grace_periods}")
    return report.healthy


async def run_expirations(engine: BillingEngine, args) -> bool:
    upcoming = await engine.grace_periods.list_upcoming_expirations(args.days)
    for gp in upcoming:
        print(f"{gp.box_id}  {gp.reason.value:<24} {gp.severity.value:<9} ends {gp.ends_at.isoformat()}")
    print(f"Ending within {args.days} days: {len(upcoming)}")
    return True


JOBS = {
    "reconcile": run_reconcile,
    "retry": run_retry,
    "overage": run_overage,
    "health": run_health,
    "expirations": run_expirations,
}


async def run_job(args) -> bool:
    await init_db()
    try:
        async with get_session_context() as session:
            engine = BillingEngine.from_store(SqlBillingStore(session), settings.billing_policy)
            logger.info(f"Running billing job: {args.job}")
            return await JOBS[args.job](engine, args)
    finally:
        await close_db()


def main():
    parser = argparse.ArgumentParser(description="Run scheduled billing jobs")
    parser.add_argument("job", choices=sorted(JOBS), help="Job to run")
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Maximum events to retry (default: BILLING_RETRY_BATCH_SIZE)"
    )
    parser.add_argument(
        "--days",
        type=int,
        default=7,
        help="Look-ahead window for expirations (default: 7)"
    )
    args = parser.parse_args()

    ok = asyncio.run(run_job(args))
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
