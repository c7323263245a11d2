"""
Unit tests for the grace period manager.
"""

from datetime import timedelta

import pytest

from app.domain.billing.grace_periods import is_grace_period_active
from app.domain.billing.models import GracePeriod, GracePeriodReason, GraceSeverity
from app.infrastructure.exceptions import NotFoundError


class TestTrigger:

    @pytest.mark.asyncio
    async def test_uses_reason_defaults(self, engine, store, clock, make_box):
        box = make_box()

        result = await engine.grace_periods.trigger(box.id, GracePeriodReason.ATHLETE_LIMIT_EXCEEDED)

        assert result.was_existing is False
        assert result.grace_period.severity == GraceSeverity.WARNING
        assert result.grace_period.ends_at == clock.now + timedelta(days=14)
        assert store.usage_events.types_for(box.id) == ["grace_period_triggered"]

    @pytest.mark.asyncio
    async def test_second_trigger_returns_existing(self, engine, store, make_box):
        box = make_box()

        first = await engine.grace_periods.trigger(box.id, GracePeriodReason.PAYMENT_FAILED)
        second = await engine.grace_periods.trigger(box.id, GracePeriodReason.PAYMENT_FAILED)

        assert second.was_existing is True
        assert second.grace_period.id == first.grace_period.id
        assert len(store.grace_periods.rows) == 1

    @pytest.mark.asyncio
    async def test_different_reasons_coexist(self, engine, store, make_box):
        box = make_box()

        await engine.grace_periods.trigger(box.id, GracePeriodReason.ATHLETE_LIMIT_EXCEEDED)
        await engine.grace_periods.trigger(box.id, GracePeriodReason.COACH_LIMIT_EXCEEDED)

        assert len(await engine.grace_periods.list_active(box.id)) == 2

    @pytest.mark.asyncio
    async def test_severity_override(self, engine, make_box):
        box = make_box()

        result = await engine.grace_periods.trigger(
            box.id, GracePeriodReason.BILLING_ISSUE,
            severity=GraceSeverity.CRITICAL, custom_message="Card expired",
        )

        assert result.grace_period.severity == GraceSeverity.CRITICAL
        assert result.grace_period.custom_message == "Card expired"

    @pytest.mark.asyncio
    async def test_lapsed_period_is_closed_and_replaced(self, engine, store, clock, make_box):
        box = make_box()
        first = await engine.grace_periods.trigger(box.id, GracePeriodReason.PAYMENT_FAILED)

        clock.advance(days=4)
        second = await engine.grace_periods.trigger(box.id, GracePeriodReason.PAYMENT_FAILED)

        assert second.was_existing is False
        assert second.grace_period.id != first.grace_period.id
        expired = await store.grace_periods.get(first.grace_period.id)
        assert expired.resolved is True
        assert expired.resolution == "expired"
        assert expired.auto_resolved is True

    @pytest.mark.asyncio
    async def test_concurrent_insert_returns_winner(self, engine, store, clock, make_box, monkeypatch):
        box = make_box()
        winner = store.grace_periods.add(GracePeriod(
            box_id=box.id,
            reason=GracePeriodReason.PAYMENT_FAILED,
            severity=GraceSeverity.CRITICAL,
            ends_at=clock.now + timedelta(days=3),
        ))

        real_list_unresolved = store.grace_periods.list_unresolved
        calls = []

        async def racing_list_unresolved(box_id=None, reason=None):
            calls.append(reason)
            if len(calls) == 1:
                return []
            return await real_list_unresolved(box_id, reason)

        monkeypatch.setattr(store.grace_periods, "list_unresolved", racing_list_unresolved)

        result = await engine.grace_periods.trigger(box.id, GracePeriodReason.PAYMENT_FAILED)

        assert result.was_existing is True
        assert result.grace_period.id == winner.id

    @pytest.mark.asyncio
    async def test_unknown_box_raises(self, engine):
        with pytest.raises(NotFoundError):
            await engine.grace_periods.trigger("missing", GracePeriodReason.BILLING_ISSUE)


class TestResolve:

    @pytest.mark.asyncio
    async def test_resolve_records_resolution(self, engine, store, clock, make_box):
        box = make_box()
        created = await engine.grace_periods.trigger(box.id, GracePeriodReason.BILLING_ISSUE)
        clock.advance(hours=6)

        resolved = await engine.grace_periods.resolve(
            created.grace_period.id, "manual", resolved_by="admin_1",
        )

        assert resolved.resolved is True
        assert resolved.resolved_at == clock.now
        assert resolved.resolved_by_user_id == "admin_1"
        assert resolved.auto_resolved is False
        resolution_event = store.usage_events.events[-1]
        assert resolution_event.event_metadata["duration_hours"] == 6.0

    @pytest.mark.asyncio
    async def test_resolve_twice_is_idempotent(self, engine, clock, make_box):
        box = make_box()
        created = await engine.grace_periods.trigger(box.id, GracePeriodReason.BILLING_ISSUE)

        first = await engine.grace_periods.resolve(created.grace_period.id, "manual")
        clock.advance(hours=1)
        second = await engine.grace_periods.resolve(created.grace_period.id, "other")

        assert second.resolution == "manual"
        assert second.resolved_at == first.resolved_at

    @pytest.mark.asyncio
    async def test_resolve_unknown_raises(self, engine):
        with pytest.raises(NotFoundError):
            await engine.grace_periods.resolve("missing", "manual")

    @pytest.mark.asyncio
    async def test_resolve_for_reasons_only_touches_listed(self, engine, make_box):
        box = make_box()
        await engine.grace_periods.trigger(box.id, GracePeriodReason.ATHLETE_LIMIT_EXCEEDED)
        await engine.grace_periods.trigger(box.id, GracePeriodReason.PAYMENT_FAILED)

        count = await engine.grace_periods.resolve_for_reasons(
            box.id, [GracePeriodReason.ATHLETE_LIMIT_EXCEEDED], "usage_within_limit",
        )

        assert count == 1
        [remaining] = await engine.grace_periods.list_active(box.id)
        assert remaining.reason == GracePeriodReason.PAYMENT_FAILED


class TestActivity:

    def test_blocking_period_never_lapses(self, clock):
        grace_period = GracePeriod(
            box_id="box_1",
            reason=GracePeriodReason.SUBSCRIPTION_CANCELED,
            severity=GraceSeverity.BLOCKING,
            ends_at=clock.now - timedelta(days=30),
        )

        assert is_grace_period_active(grace_period, clock.now) is True

    def test_resolved_period_is_inactive(self, clock):
        grace_period = GracePeriod(
            box_id="box_1",
            reason=GracePeriodReason.BILLING_ISSUE,
            severity=GraceSeverity.WARNING,
            ends_at=clock.now + timedelta(days=3),
            resolved=True,
        )

        assert is_grace_period_active(grace_period, clock.now) is False

    @pytest.mark.asyncio
    async def test_list_active_hides_lapsed(self, engine, clock, make_box):
        box = make_box()
        await engine.grace_periods.trigger(box.id, GracePeriodReason.PAYMENT_FAILED)

        clock.advance(days=3)

        assert await engine.grace_periods.list_active(box.id) == []

    @pytest.mark.asyncio
    async def test_upcoming_expirations_window(self, engine, make_box):
        box = make_box()
        await engine.grace_periods.trigger(box.id, GracePeriodReason.PAYMENT_FAILED)
        await engine.grace_periods.trigger(box.id, GracePeriodReason.ATHLETE_LIMIT_EXCEEDED)

        upcoming = await engine.grace_periods.list_upcoming_expirations(days_ahead=7)

        assert [gp.reason for gp in upcoming] == [GracePeriodReason.PAYMENT_FAILED]
