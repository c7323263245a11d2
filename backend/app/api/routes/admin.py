"""
Admin Routes for Billing Operations

Manual triggers for the scheduled billing jobs plus per-box operator
actions. Protected by API key authentication.
"""

import logging
import secrets
from typing import Any, Awaitable, Callable, Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from pydantic import BaseModel, Field

from app.domain.billing import BillingEngine
from app.domain.billing.models import (
    Box,
    GracePeriod,
    GracePeriodReason,
    GracePeriodTriggerResult,
    GraceSeverity,
    MembershipRole,
    Subscription,
    SubscriptionUsage,
)
from app.infrastructure.db.dependencies import EngineDep
from app.infrastructure.exceptions import NotFoundError
from app.infrastructure.payments.stripe_service import StripeService, get_stripe_service

logger = logging.getLogger(__name__)


# =============================================================================
# Admin API Key Authentication
# =============================================================================

async def verify_admin_api_key(
    x_admin_key: str = Header(..., description="Admin API key for protected operations")
) -> bool:
    """
    Verify admin API key from header.

    The admin key should be set in environment variable ADMIN_API_KEY.
    """
    from app.config.settings import settings

    expected_key = settings.admin_api_key

    if not expected_key:
        logger.error("ADMIN_API_KEY environment variable not set")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin authentication not configured"
        )

    # Use secrets.compare_digest for timing-attack resistance
    if not secrets.compare_digest(x_admin_key, expected_key):
        logger.warning("Invalid admin API key attempt")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin API key"
        )

    return True


router = APIRouter(
    prefix="/api/admin",
    tags=["admin"],
    dependencies=[Depends(verify_admin_api_key)]  # Protect ALL admin routes
)


# =============================================================================
# Request / Response Models
# =============================================================================

class TaskResult(BaseModel):
    """Response from a job trigger. Job failures are reported, not raised."""
    success: bool
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class RecalculateRequest(BaseModel):
    tasks: List[str] = Field(default_factory=lambda: ["usage"])


class TriggerGracePeriodRequest(BaseModel):
    reason: GracePeriodReason
    severity: Optional[GraceSeverity] = None
    custom_message: Optional[str] = None
    auto_resolve: bool = False
    triggered_by: Optional[str] = None


class ResolveGracePeriodRequest(BaseModel):
    resolution: str = Field(default="manual", min_length=1)
    resolved_by: Optional[str] = None


class OverageToggleRequest(BaseModel):
    changed_by: Optional[str] = None


class CancelSubscriptionRequest(BaseModel):
    cancel_at_period_end: bool = True
    reason: Optional[str] = None
    canceled_by: Optional[str] = None
    # Also cancel at Stripe before the local transition
    sync_provider: bool = False


class ReactivateSubscriptionRequest(BaseModel):
    reactivated_by: Optional[str] = None
    sync_provider: bool = False


class MembershipChangeRequest(BaseModel):
    role: MembershipRole
    added: bool
    user_id: Optional[str] = None


BILLING_TASKS = ("usage", "overage")


async def _run_task(
    engine: BillingEngine,
    name: str,
    job: Callable[[], Awaitable[TaskResult]],
) -> TaskResult:
    try:
        return await job()
    except Exception as e:
        await engine.store.rollback()
        logger.error(f"Admin task {name} failed: {e}")
        return TaskResult(success=False, message=f"{name} failed: {e}")


# =============================================================================
# Scheduled Job Triggers
# =============================================================================

@router.post("/billing/reconcile", response_model=TaskResult)
async def run_reconciliation(engine: EngineDep):
    """Run the reconciliation sweep now."""
    async def job() -> TaskResult:
        report = await engine.reconciliation.enforce_subscription_rules()
        return TaskResult(
            success=report.success,
            message=(
                f"Expired {report.trials_expired} trials, "
                f"suspended {report.boxes_suspended} boxes"
            ),
            details=report.model_dump(),
        )
    return await _run_task(engine, "reconcile", job)


@router.post("/billing/events/retry", response_model=TaskResult)
async def retry_failed_events(engine: EngineDep, limit: Optional[int] = None):
    """Drain billing events whose retry is due."""
    async def job() -> TaskResult:
        results = await engine.webhooks.retry_due_events(limit)
        processed = sum(1 for r in results if r.status == "processed")
        return TaskResult(
            success=True,
            message=f"Retried {len(results)} events, {processed} processed",
            details={"results": [r.model_dump() for r in results]},
        )
    return await _run_task(engine, "retry", job)


@router.post("/billing/events/{billing_event_id}/replay", response_model=TaskResult)
async def replay_event(billing_event_id: str, engine: EngineDep):
    """Re-run one stored event, including one that exhausted its retries."""
    async def job() -> TaskResult:
        try:
            result = await engine.webhooks.replay_event(billing_event_id)
        except NotFoundError as e:
            return TaskResult(success=False, message=e.message)
        return TaskResult(
            success=result.status in ("processed", "ignored", "already_processed"),
            message=f"Event {billing_event_id} {result.status}",
            details=result.model_dump(),
        )
    return await _run_task(engine, "replay", job)


@router.get("/billing/health", response_model=TaskResult)
async def billing_health(engine: EngineDep):
    """Counts of stuck and terminally failed events and overdue grace periods."""
    async def job() -> TaskResult:
        report = await engine.webhooks.health_check()
        return TaskResult(
            success=report.healthy,
            message="healthy" if report.healthy else "degraded",
            details=report.model_dump(),
        )
    return await _run_task(engine, "health", job)


@router.post("/billing/overage/run", response_model=TaskResult)
async def run_overage_billing(engine: EngineDep):
    """Bill the current period's overage for every enabled box."""
    async def job() -> TaskResult:
        results = await engine.usage.process_period_overage_billing()
        billed = [r for r in results if r.billed]
        return TaskResult(
            success=all(r.success for r in results),
            message=f"Billed {len(billed)} of {len(results)} boxes",
            details={
                "total_overage_amount": sum(r.total_overage_amount for r in billed),
                "results": [r.model_dump() for r in results],
            },
        )
    return await _run_task(engine, "overage", job)


@router.post("/boxes/{box_id}/recalculate", response_model=TaskResult)
async def recalculate_box(box_id: str, request: RecalculateRequest, engine: EngineDep):
    """
    Emergency per-box recalculation.

    Only the billing tasks (usage, overage) run here; other task names are
    reported as skipped.
    """
    async def job() -> TaskResult:
        details: Dict[str, Any] = {"skipped": []}
        for task in request.tasks:
            if task == "usage":
                usage = await engine.usage.check_limits(box_id, triggered_by="admin")
                details["usage"] = usage.model_dump()
            elif task == "overage":
                outcome = await engine.usage.calculate_overage_billing(box_id)
                details["overage"] = outcome.model_dump()
            else:
                details["skipped"].append(task)

        ran = [t for t in request.tasks if t in BILLING_TASKS]
        return TaskResult(
            success=True,
            message=f"Recalculated {', '.join(ran) or 'nothing'} for box {box_id}",
            details=details,
        )
    return await _run_task(engine, "recalculate", job)


# =============================================================================
# Grace Periods
# =============================================================================

@router.post("/boxes/{box_id}/grace-periods", response_model=GracePeriodTriggerResult)
async def trigger_grace_period(box_id: str, request: TriggerGracePeriodRequest, engine: EngineDep):
    return await engine.grace_periods.trigger(
        box_id,
        request.reason,
        severity=request.severity,
        custom_message=request.custom_message,
        auto_resolve=request.auto_resolve,
        triggered_by=request.triggered_by,
    )


@router.post("/grace-periods/{grace_period_id}/resolve", response_model=GracePeriod)
async def resolve_grace_period(
    grace_period_id: str,
    request: ResolveGracePeriodRequest,
    engine: EngineDep,
):
    return await engine.grace_periods.resolve(
        grace_period_id, request.resolution, resolved_by=request.resolved_by,
    )


# =============================================================================
# Overage Billing
# =============================================================================

@router.post("/boxes/{box_id}/overage/enable", response_model=Box)
async def enable_overage(box_id: str, request: OverageToggleRequest, engine: EngineDep):
    return await engine.usage.enable_overage_billing(box_id, enabled_by=request.changed_by)


@router.post("/boxes/{box_id}/overage/disable", response_model=Box)
async def disable_overage(box_id: str, request: OverageToggleRequest, engine: EngineDep):
    return await engine.usage.disable_overage_billing(box_id, disabled_by=request.changed_by)


# =============================================================================
# Subscriptions & Memberships
# =============================================================================

@router.post("/boxes/{box_id}/subscription/cancel", response_model=Subscription)
async def cancel_subscription(
    box_id: str,
    request: CancelSubscriptionRequest,
    engine: EngineDep,
    stripe_service: StripeService = Depends(get_stripe_service),
):
    """
    Cancel the box's subscription, at period end by default.

    With sync_provider the cancellation is sent to Stripe first; Stripe's
    own webhook for it is then a duplicate of the local transition.
    """
    if request.sync_provider:
        subscription = await engine.lifecycle.require_current_subscription(box_id)
        await stripe_service.cancel_subscription(
            subscription.provider_subscription_id,
            cancel_at_period_end=request.cancel_at_period_end,
        )

    return await engine.lifecycle.cancel_subscription(
        box_id,
        cancel_at_period_end=request.cancel_at_period_end,
        reason=request.reason,
        canceled_by=request.canceled_by,
    )


@router.post("/boxes/{box_id}/subscription/reactivate", response_model=Subscription)
async def reactivate_subscription(
    box_id: str,
    request: ReactivateSubscriptionRequest,
    engine: EngineDep,
    stripe_service: StripeService = Depends(get_stripe_service),
):
    subscription = await engine.lifecycle.reactivate_subscription(
        box_id, reactivated_by=request.reactivated_by,
    )
    if request.sync_provider:
        await stripe_service.resume_subscription(subscription.provider_subscription_id)
    return subscription


@router.post("/boxes/{box_id}/memberships/changes", response_model=SubscriptionUsage)
async def record_membership_change(box_id: str, request: MembershipChangeRequest, engine: EngineDep):
    """Log a membership add/remove and enforce the box's limits."""
    return await engine.usage.record_membership_change(
        box_id, request.role, request.added, user_id=request.user_id,
    )
