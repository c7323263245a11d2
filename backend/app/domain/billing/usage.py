"""
Usage & Overage Calculator

Counts active memberships against plan limits, keeps the box usage
projection current, and turns overage into at most one billing record per
(box, billing period). Overage billing and limit grace periods are
mutually exclusive, switched by box.is_overage_enabled.
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional, Union

from app.domain.billing.events import InvoicePayload
from app.domain.billing.grace_periods import LIMIT_REASONS, GracePeriodManager
from app.domain.billing.interfaces import BillingStore
from app.domain.billing.models import (
    Box,
    GracePeriodReason,
    MembershipRole,
    NoOverage,
    OverageBillingRecord,
    OverageRunResult,
    OverageStatus,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
    SubscriptionUsage,
    UsageEvent,
    UsageEventType,
    utc_now,
)
from app.domain.billing.policy import BillingPolicy
from app.infrastructure.exceptions import DuplicateError, NotFoundError


logger = logging.getLogger(__name__)


TERMINAL_OVERAGE_STATUSES = (OverageStatus.PAID, OverageStatus.WAIVED)

MEMBERSHIP_EVENTS = {
    (MembershipRole.ATHLETE, True): UsageEventType.ATHLETE_ADDED,
    (MembershipRole.ATHLETE, False): UsageEventType.ATHLETE_REMOVED,
    (MembershipRole.COACH, True): UsageEventType.COACH_ADDED,
    (MembershipRole.COACH, False): UsageEventType.COACH_REMOVED,
    (MembershipRole.HEAD_COACH, True): UsageEventType.COACH_ADDED,
    (MembershipRole.HEAD_COACH, False): UsageEventType.COACH_REMOVED,
}


def _percentage(count: int, limit: int) -> float:
    if limit <= 0:
        return 0.0
    return round(count / limit * 100, 2)


class UsageCalculator:

    def __init__(
        self,
        store: BillingStore,
        grace_periods: GracePeriodManager,
        policy: BillingPolicy = BillingPolicy(),
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self._grace_periods = grace_periods
        self._policy = policy
        self._clock = clock

    # =========================================================================
    # Usage
    # =========================================================================

    async def calculate_usage(
        self,
        box_id: str,
        plan: Optional[SubscriptionPlan] = None,
        box: Optional[Box] = None,
    ) -> SubscriptionUsage:
        """
        Compare active memberships against the plan of the box's tier.

        Limits and per-unit rates fall back to policy defaults when the plan
        (or its overage price) is missing.
        """
        box = box or await self._require_box(box_id)
        plan = plan or await self._store.plans.get_current(box.subscription_tier)

        athletes = await self._store.memberships.count_active(box_id, MembershipRole.ATHLETE)
        coaches = (
            await self._store.memberships.count_active(box_id, MembershipRole.COACH)
            + await self._store.memberships.count_active(box_id, MembershipRole.HEAD_COACH)
        )

        athlete_limit = plan.athlete_limit if plan else self._policy.default_athlete_limit
        coach_limit = plan.coach_limit if plan else self._policy.default_coach_limit
        athlete_rate = self._rate(plan.athlete_overage_price if plan else None)
        coach_rate = self._rate(plan.coach_overage_price if plan else None)

        athlete_overage = max(0, athletes - athlete_limit)
        coach_overage = max(0, coaches - coach_limit)

        return SubscriptionUsage(
            athletes=athletes,
            coaches=coaches,
            athlete_limit=athlete_limit,
            coach_limit=coach_limit,
            athlete_percentage=_percentage(athletes, athlete_limit),
            coach_percentage=_percentage(coaches, coach_limit),
            is_athlete_over_limit=athletes > athlete_limit,
            is_coach_over_limit=coaches > coach_limit,
            athlete_overage=athlete_overage,
            coach_overage=coach_overage,
            athlete_overage_rate=athlete_rate,
            coach_overage_rate=coach_rate,
            has_overage_enabled=box.is_overage_enabled,
            next_billing_date=box.next_billing_date,
            estimated_overage_amount=athlete_overage * athlete_rate + coach_overage * coach_rate,
        )

    async def check_limits(
        self,
        box_id: str,
        triggered_by: Optional[str] = None,
    ) -> SubscriptionUsage:
        """
        Refresh the box usage projection and enforce limits.

        With overage billing disabled, each role over its limit opens the
        matching grace period and each role back under it resolves it.
        With overage billing enabled nothing is triggered; the excess is
        charged at the period boundary instead.
        """
        box = await self._require_box(box_id)
        usage = await self.calculate_usage(box_id, box=box)

        await self._store.boxes.update(box_id, {
            "current_athlete_count": usage.athletes,
            "current_athlete_limit": usage.athlete_limit,
            "current_coach_count": usage.coaches,
            "current_coach_limit": usage.coach_limit,
            "current_athlete_overage": usage.athlete_overage,
            "current_coach_overage": usage.coach_overage,
        })

        if box.is_overage_enabled:
            return usage

        checks = [
            (GracePeriodReason.ATHLETE_LIMIT_EXCEEDED, usage.is_athlete_over_limit,
             usage.athletes, usage.athlete_limit),
            (GracePeriodReason.COACH_LIMIT_EXCEEDED, usage.is_coach_over_limit,
             usage.coaches, usage.coach_limit),
        ]
        for reason, over_limit, count, limit in checks:
            if over_limit:
                await self._grace_periods.trigger(
                    box_id,
                    reason,
                    auto_resolve=True,
                    triggered_by=triggered_by,
                    context_snapshot={"count": count, "limit": limit, "tier": box.subscription_tier.value},
                )
            else:
                await self._grace_periods.resolve_for_reasons(box_id, [reason], "usage_within_limit")

        return usage

    async def record_membership_change(
        self,
        box_id: str,
        role: MembershipRole,
        added: bool,
        user_id: Optional[str] = None,
    ) -> SubscriptionUsage:
        """Hook for the membership mutation path: log the change, then enforce limits."""
        event_type = MEMBERSHIP_EVENTS.get((role, added))
        if event_type:
            await self._store.usage_events.append(UsageEvent(
                box_id=box_id,
                event_type=event_type,
                user_id=user_id,
                event_metadata={"role": role.value},
                created_at=self._clock(),
            ))
        return await self.check_limits(box_id, triggered_by=user_id)

    # =========================================================================
    # Overage Billing
    # =========================================================================

    async def calculate_overage_billing(
        self,
        box_id: str,
    ) -> Union[OverageBillingRecord, NoOverage]:
        """
        Bill the current period's overage once.

        A second call in the same period returns the stored record.
        """
        box = await self._require_box(box_id)
        subscription = await self._active_subscription(box)
        if subscription is None:
            return NoOverage(reason="No active subscription")
        return await self._bill_period(box, subscription)

    async def process_period_overage_billing(self) -> List[OverageRunResult]:
        """Scheduled run over every active subscription. Per-box errors are reported, not raised."""
        results: List[OverageRunResult] = []

        for subscription in await self._store.subscriptions.list_active():
            try:
                box = await self._store.boxes.get(subscription.box_id)
                if box is None or not box.is_overage_enabled:
                    continue
                if box.provider_subscription_id != subscription.provider_subscription_id:
                    continue

                outcome = await self._bill_period(box, subscription)
                if isinstance(outcome, NoOverage):
                    results.append(OverageRunResult(
                        box_id=box.id, success=True, message=outcome.reason,
                    ))
                else:
                    results.append(OverageRunResult(
                        box_id=box.id,
                        success=True,
                        billed=True,
                        record_id=outcome.id,
                        total_overage_amount=outcome.total_overage_amount,
                        message="Overage billed",
                    ))
            except Exception as e:
                logger.error(f"Overage billing failed for box {subscription.box_id}: {e}")
                results.append(OverageRunResult(
                    box_id=subscription.box_id, success=False, message=str(e),
                ))

        billed = sum(1 for r in results if r.billed)
        logger.info(f"Overage run complete: {billed} billed, {len(results)} boxes checked")
        return results

    async def mark_overage_paid(
        self,
        record_id: str,
        paid_at: Optional[datetime] = None,
        provider_invoice_id: Optional[str] = None,
    ) -> OverageBillingRecord:
        record = await self._require_record(record_id)
        if record.status in TERMINAL_OVERAGE_STATUSES:
            return record

        changes = {"status": OverageStatus.PAID, "paid_at": paid_at or self._clock()}
        if provider_invoice_id:
            changes["provider_invoice_id"] = provider_invoice_id
        return await self._store.overages.update(record_id, changes)

    async def mark_overage_failed(self, record_id: str) -> OverageBillingRecord:
        record = await self._require_record(record_id)
        if record.status in TERMINAL_OVERAGE_STATUSES:
            return record
        return await self._store.overages.update(record_id, {"status": OverageStatus.FAILED})

    async def settle_overage_invoice(
        self,
        payload: InvoicePayload,
    ) -> Optional[OverageBillingRecord]:
        """Mark the record referenced by an overage invoice as paid."""
        if not payload.is_overage_invoice:
            return None

        record_id = payload.metadata.get("overage_billing_id")
        if not record_id:
            logger.warning(f"Overage invoice {payload.id} carries no overage_billing_id")
            return None
        return await self.mark_overage_paid(record_id, payload.paid_at, payload.id)

    async def list_overage_history(self, box_id: str, limit: int = 12) -> List[OverageBillingRecord]:
        return await self._store.overages.list_for_box(box_id, limit)

    async def enable_overage_billing(self, box_id: str, enabled_by: Optional[str] = None) -> Box:
        """Switch the box to per-unit overage; open limit grace periods are resolved."""
        box = await self._store.boxes.update(box_id, {"is_overage_enabled": True})
        await self._grace_periods.resolve_for_reasons(
            box_id, LIMIT_REASONS, "overage_enabled", resolved_by=enabled_by,
        )
        await self._store.usage_events.append(UsageEvent(
            box_id=box_id,
            event_type=UsageEventType.OVERAGE_ENABLED,
            user_id=enabled_by,
            created_at=self._clock(),
        ))
        logger.info(f"Overage billing enabled for box {box_id}")
        return box

    async def disable_overage_billing(self, box_id: str, disabled_by: Optional[str] = None) -> Box:
        """Switch back to grace periods; current excess is re-checked right away."""
        await self._store.boxes.update(box_id, {"is_overage_enabled": False})
        await self._store.usage_events.append(UsageEvent(
            box_id=box_id,
            event_type=UsageEventType.OVERAGE_DISABLED,
            user_id=disabled_by,
            created_at=self._clock(),
        ))
        await self.check_limits(box_id, triggered_by=disabled_by)
        logger.info(f"Overage billing disabled for box {box_id}")
        return await self._require_box(box_id)

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _bill_period(
        self,
        box: Box,
        subscription: Subscription,
    ) -> Union[OverageBillingRecord, NoOverage]:
        period_start = subscription.current_period_start
        period_end = subscription.current_period_end
        if period_start is None or period_end is None:
            return NoOverage(reason="Subscription has no billing period")

        existing = await self._store.overages.get_for_period(box.id, period_start, period_end)
        if existing:
            return existing

        if not box.is_overage_enabled:
            return NoOverage(reason="Overage billing not enabled")

        usage = await self.calculate_usage(box.id, box=box)
        if usage.athlete_overage == 0 and usage.coach_overage == 0:
            return NoOverage(reason="Usage within plan limits")

        athlete_amount = usage.athlete_overage * usage.athlete_overage_rate
        coach_amount = usage.coach_overage * usage.coach_overage_rate
        record = OverageBillingRecord(
            box_id=box.id,
            subscription_id=subscription.id,
            billing_period_start=period_start,
            billing_period_end=period_end,
            athlete_limit=usage.athlete_limit,
            coach_limit=usage.coach_limit,
            athlete_count=usage.athletes,
            coach_count=usage.coaches,
            athlete_overage=usage.athlete_overage,
            coach_overage=usage.coach_overage,
            athlete_overage_rate=usage.athlete_overage_rate,
            coach_overage_rate=usage.coach_overage_rate,
            athlete_overage_amount=athlete_amount,
            coach_overage_amount=coach_amount,
            total_overage_amount=athlete_amount + coach_amount,
            created_at=self._clock(),
        )

        try:
            created = await self._store.overages.insert(record)
        except DuplicateError:
            # Another run billed this period first
            winner = await self._store.overages.get_for_period(box.id, period_start, period_end)
            if winner is None:
                raise
            return winner

        await self._store.usage_events.append(UsageEvent(
            box_id=box.id,
            event_type=UsageEventType.OVERAGE_BILLED,
            quantity=usage.athlete_overage + usage.coach_overage,
            billable=True,
            event_metadata={
                "overage_billing_id": created.id,
                "total_overage_amount": created.total_overage_amount,
            },
            billing_period_start=period_start,
            billing_period_end=period_end,
            created_at=self._clock(),
        ))
        logger.info(
            f"Billed overage {created.total_overage_amount} for box {box.id} "
            f"({period_start.date()} - {period_end.date()})"
        )
        return created

    async def _active_subscription(self, box: Box) -> Optional[Subscription]:
        if not box.provider_subscription_id:
            return None
        subscription = await self._store.subscriptions.get_by_provider_id(box.provider_subscription_id)
        if subscription is None or subscription.status != SubscriptionStatus.ACTIVE:
            return None
        return subscription

    def _rate(self, plan_price: Optional[int]) -> int:
        return plan_price if plan_price is not None else self._policy.default_overage_rate

    async def _require_box(self, box_id: str) -> Box:
        box = await self._store.boxes.get(box_id)
        if box is None:
            raise NotFoundError(f"Box {box_id} not found", operation="lookup", table="boxes")
        return box

    async def _require_record(self, record_id: str) -> OverageBillingRecord:
        record = await self._store.overages.get(record_id)
        if record is None:
            raise NotFoundError(
                f"Overage record {record_id} not found",
                operation="lookup",
                table="overage_billing_records",
            )
        return record
