"""
Grace Period Manager

Creates and resolves time-boxed exceptions that keep a box usable while a
limit breach or billing problem is being fixed.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from app.domain.billing.interfaces import BillingStore
from app.domain.billing.models import (
    GRACE_PERIOD_CONFIG,
    GracePeriod,
    GracePeriodReason,
    GracePeriodTriggerResult,
    GraceSeverity,
    UsageEvent,
    UsageEventType,
    utc_now,
)
from app.infrastructure.exceptions import DuplicateError, NotFoundError


logger = logging.getLogger(__name__)


LIMIT_REASONS = (
    GracePeriodReason.ATHLETE_LIMIT_EXCEEDED,
    GracePeriodReason.COACH_LIMIT_EXCEEDED,
)


def is_grace_period_active(grace_period: GracePeriod, now: datetime) -> bool:
    """
    Blocking grace periods carry no duration; they stay in force until
    resolved. Everything else lapses at ends_at.
    """
    if grace_period.resolved:
        return False
    if grace_period.severity == GraceSeverity.BLOCKING:
        return True
    return grace_period.ends_at > now


class GracePeriodManager:
    """
    Trigger/resolve grace periods with (box, reason) deduplication.

    The unique index on unresolved (box_id, reason) is the authority; the
    lookup before insert only avoids needless constraint violations.
    """

    def __init__(self, store: BillingStore, clock: Callable[[], datetime] = utc_now):
        self._store = store
        self._clock = clock

    # =========================================================================
    # Commands
    # =========================================================================

    async def trigger(
        self,
        box_id: str,
        reason: GracePeriodReason,
        *,
        severity: Optional[GraceSeverity] = None,
        custom_message: Optional[str] = None,
        auto_resolve: bool = False,
        context_snapshot: Optional[Dict[str, Any]] = None,
        triggered_by: Optional[str] = None,
    ) -> GracePeriodTriggerResult:
        """
        Open a grace period unless an active one exists for (box, reason).

        Returns:
            GracePeriodTriggerResult with was_existing=True when deduplicated

        Raises:
            NotFoundError: box does not exist
        """
        box = await self._store.boxes.get(box_id)
        if box is None:
            raise NotFoundError(
                f"Box {box_id} not found",
                operation="trigger_grace_period",
                table="boxes",
            )

        now = self._clock()
        existing = await self._find_active(box_id, reason, now)
        if existing:
            logger.info(
                f"Grace period {existing.id} already active for box {box_id} ({reason.value})"
            )
            return GracePeriodTriggerResult(grace_period=existing, was_existing=True)

        config = GRACE_PERIOD_CONFIG[reason]
        grace_period = GracePeriod(
            box_id=box_id,
            reason=reason,
            severity=severity or config.severity,
            ends_at=now + timedelta(days=config.days),
            auto_resolve=auto_resolve,
            custom_message=custom_message,
            context_snapshot=context_snapshot or {},
            created_at=now,
        )

        try:
            created = await self._store.grace_periods.insert(grace_period)
        except DuplicateError:
            # A concurrent trigger inserted first
            winner = await self._find_active(box_id, reason, now)
            if winner is None:
                raise
            return GracePeriodTriggerResult(grace_period=winner, was_existing=True)

        await self._store.usage_events.append(UsageEvent(
            box_id=box_id,
            event_type=UsageEventType.GRACE_PERIOD_TRIGGERED,
            user_id=triggered_by,
            event_metadata={
                "grace_period_id": created.id,
                "reason": reason.value,
                "severity": created.severity.value,
                "ends_at": created.ends_at.isoformat(),
            },
            created_at=now,
        ))

        logger.warning(
            f"Triggered {created.severity.value} grace period for box {box_id}: "
            f"{reason.value} until {created.ends_at.isoformat()}"
        )
        return GracePeriodTriggerResult(grace_period=created, was_existing=False)

    async def resolve(
        self,
        grace_period_id: str,
        resolution: str,
        resolved_by: Optional[str] = None,
        auto_resolved: bool = False,
    ) -> GracePeriod:
        """
        Resolve a grace period. Resolving twice returns the stored row unchanged.

        Raises:
            NotFoundError: unknown grace period id
        """
        grace_period = await self._store.grace_periods.get(grace_period_id)
        if grace_period is None:
            raise NotFoundError(
                f"Grace period {grace_period_id} not found",
                operation="resolve_grace_period",
                table="grace_periods",
            )
        if grace_period.resolved:
            return grace_period

        return await self._close(grace_period, resolution, resolved_by, auto_resolved)

    async def resolve_for_reasons(
        self,
        box_id: str,
        reasons: Iterable[GracePeriodReason],
        resolution: str,
        resolved_by: Optional[str] = None,
        auto_resolved: bool = True,
    ) -> int:
        """Resolve every unresolved grace period of the box for the given reasons."""
        count = 0
        for reason in reasons:
            for grace_period in await self._store.grace_periods.list_unresolved(box_id, reason):
                await self._close(grace_period, resolution, resolved_by, auto_resolved)
                count += 1

        if count:
            logger.info(f"Resolved {count} grace periods for box {box_id} ({resolution})")
        return count

    # =========================================================================
    # Queries
    # =========================================================================

    async def list_active(self, box_id: str) -> List[GracePeriod]:
        now = self._clock()
        unresolved = await self._store.grace_periods.list_unresolved(box_id)
        return [gp for gp in unresolved if is_grace_period_active(gp, now)]

    async def list_upcoming_expirations(self, days_ahead: int = 7) -> List[GracePeriod]:
        now = self._clock()
        return await self._store.grace_periods.list_ending_between(
            now, now + timedelta(days=days_ahead)
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _find_active(
        self,
        box_id: str,
        reason: GracePeriodReason,
        now: datetime,
    ) -> Optional[GracePeriod]:
        """Return the active row and close lapsed ones so the unique slot frees up."""
        active = None
        for grace_period in await self._store.grace_periods.list_unresolved(box_id, reason):
            if is_grace_period_active(grace_period, now):
                active = active or grace_period
            else:
                await self._close(grace_period, "expired", None, True)
        return active

    async def _close(
        self,
        grace_period: GracePeriod,
        resolution: str,
        resolved_by: Optional[str],
        auto_resolved: bool,
    ) -> GracePeriod:
        now = self._clock()
        resolved = await self._store.grace_periods.update(grace_period.id, {
            "resolved": True,
            "resolved_at": now,
            "resolution": resolution,
            "resolved_by_user_id": resolved_by,
            "auto_resolved": auto_resolved,
        })

        duration_hours = None
        if grace_period.created_at:
            duration_hours = round((now - grace_period.created_at).total_seconds() / 3600, 2)

        await self._store.usage_events.append(UsageEvent(
            box_id=grace_period.box_id,
            event_type=UsageEventType.GRACE_PERIOD_RESOLVED,
            user_id=resolved_by,
            event_metadata={
                "grace_period_id": grace_period.id,
                "reason": grace_period.reason.value,
                "resolution": resolution,
                "auto_resolved": auto_resolved,
                "duration_hours": duration_hours,
            },
            created_at=now,
        ))
        return resolved
