"""
Reconciliation Sweep

Scheduled pass that re-derives box status from ground truth, healing drift
left by lost or terminally failed webhooks. Uses the state machine's
primitives only and never opens grace periods.
"""

import logging
from datetime import datetime
from typing import Callable, List

from pydantic import BaseModel, Field

from app.domain.billing.interfaces import BillingStore
from app.domain.billing.lifecycle import SubscriptionStateMachine
from app.domain.billing.models import utc_now


logger = logging.getLogger(__name__)


class ReconciliationReport(BaseModel):
    trials_expired: int = 0
    boxes_suspended: int = 0
    errors: List[str] = Field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


class ReconciliationSweep:

    def __init__(
        self,
        store: BillingStore,
        state_machine: SubscriptionStateMachine,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self._state_machine = state_machine
        self._clock = clock

    async def enforce_subscription_rules(self) -> ReconciliationReport:
        """
        Expire lapsed trials and suspend boxes whose canceled subscription
        has ended. Running it twice in a row is a no-op the second time.
        """
        now = self._clock()
        report = ReconciliationReport()

        for box in await self._store.boxes.list_expired_trials(now):
            try:
                await self._state_machine.mark_trial_expired(box)
                report.trials_expired += 1
            except Exception as e:
                logger.error(f"Failed to expire trial for box {box.id}: {e}")
                report.errors.append(f"{box.id}: {e}")

        for box in await self._store.boxes.list_active_with_ended_cancellation(now):
            try:
                await self._state_machine.suspend_after_cancellation(box)
                report.boxes_suspended += 1
            except Exception as e:
                logger.error(f"Failed to suspend box {box.id}: {e}")
                report.errors.append(f"{box.id}: {e}")

        logger.info(
            f"Reconciliation complete: {report.trials_expired} trials expired, "
            f"{report.boxes_suspended} boxes suspended, {len(report.errors)} errors"
        )
        return report
