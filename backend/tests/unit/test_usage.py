"""
Unit tests for usage calculation, limit enforcement and overage billing.
"""

from datetime import timedelta

import pytest

from app.domain.billing.events import InvoicePayload
from app.domain.billing.models import (
    GracePeriodReason,
    MembershipRole,
    NoOverage,
    OverageBillingRecord,
    OverageStatus,
    SubscriptionStatus,
    SubscriptionTier,
)
from app.infrastructure.exceptions import NotFoundError


def set_members(store, box_id, athletes=0, coaches=0, head_coaches=0):
    store.memberships.set(box_id, MembershipRole.ATHLETE, athletes)
    store.memberships.set(box_id, MembershipRole.COACH, coaches)
    store.memberships.set(box_id, MembershipRole.HEAD_COACH, head_coaches)


class TestCalculateUsage:

    @pytest.mark.asyncio
    async def test_overage_against_plan(self, engine, store, plans, make_box):
        box = make_box()
        set_members(store, box.id, athletes=80, coaches=2)

        usage = await engine.usage.calculate_usage(box.id)

        assert usage.athlete_limit == 75
        assert usage.athlete_overage == 5
        assert usage.athlete_percentage == 106.67
        assert usage.is_athlete_over_limit is True
        assert usage.is_coach_over_limit is False
        assert usage.estimated_overage_amount == 500

    @pytest.mark.asyncio
    async def test_head_coaches_count_as_coaches(self, engine, store, plans, make_box):
        box = make_box()
        set_members(store, box.id, coaches=3, head_coaches=1)

        usage = await engine.usage.calculate_usage(box.id)

        assert usage.coaches == 4
        assert usage.coach_overage == 1
        assert usage.estimated_overage_amount == 500

    @pytest.mark.asyncio
    async def test_defaults_without_plan(self, engine, store, make_box):
        box = make_box(subscription_tier=SubscriptionTier.GROW)
        set_members(store, box.id, athletes=76)

        usage = await engine.usage.calculate_usage(box.id)

        assert usage.athlete_limit == 75
        assert usage.coach_limit == 3
        assert usage.athlete_overage_rate == 100
        assert usage.estimated_overage_amount == 100

    @pytest.mark.asyncio
    async def test_exactly_at_limit_is_not_over(self, engine, store, plans, make_box):
        box = make_box()
        set_members(store, box.id, athletes=75)

        usage = await engine.usage.calculate_usage(box.id)

        assert usage.athlete_percentage == 100.0
        assert usage.is_athlete_over_limit is False
        assert usage.athlete_overage == 0

    @pytest.mark.asyncio
    async def test_unknown_box_raises(self, engine):
        with pytest.raises(NotFoundError):
            await engine.usage.calculate_usage("missing")


class TestCheckLimits:

    @pytest.mark.asyncio
    async def test_over_limit_opens_grace_period(self, engine, store, plans, make_box):
        box = make_box()
        set_members(store, box.id, athletes=80)

        await engine.usage.check_limits(box.id)

        updated = await store.boxes.get(box.id)
        assert updated.current_athlete_count == 80
        assert updated.current_athlete_overage == 5
        [grace] = await store.grace_periods.list_unresolved(box.id)
        assert grace.reason == GracePeriodReason.ATHLETE_LIMIT_EXCEEDED
        assert grace.auto_resolve is True
        assert grace.context_snapshot == {"count": 80, "limit": 75, "tier": "seed"}

    @pytest.mark.asyncio
    async def test_back_under_limit_resolves(self, engine, store, plans, make_box):
        box = make_box()
        set_members(store, box.id, athletes=80)
        await engine.usage.check_limits(box.id)

        set_members(store, box.id, athletes=70)
        await engine.usage.check_limits(box.id)

        assert await store.grace_periods.list_unresolved(box.id) == []

    @pytest.mark.asyncio
    async def test_overage_enabled_triggers_nothing(self, engine, store, plans, make_box):
        box = make_box(is_overage_enabled=True)
        set_members(store, box.id, athletes=80, coaches=5)

        usage = await engine.usage.check_limits(box.id)

        assert usage.athlete_overage == 5
        assert store.grace_periods.rows == {}

    @pytest.mark.asyncio
    async def test_membership_change_is_logged(self, engine, store, plans, make_box):
        box = make_box()
        set_members(store, box.id, coaches=4)

        await engine.usage.record_membership_change(
            box.id, MembershipRole.HEAD_COACH, added=True, user_id="user_1",
        )

        types = store.usage_events.types_for(box.id)
        assert types[0] == "coach_added"
        assert "grace_period_triggered" in types


class TestOverageBilling:

    @pytest.mark.asyncio
    async def test_bills_period_once(self, engine, store, plans, make_subscribed_box):
        box, subscription = make_subscribed_box(is_overage_enabled=True)
        set_members(store, box.id, athletes=80)

        first = await engine.usage.calculate_overage_billing(box.id)
        second = await engine.usage.calculate_overage_billing(box.id)

        assert isinstance(first, OverageBillingRecord)
        assert first.total_overage_amount == 500
        assert first.athlete_overage == 5
        assert first.billing_period_start == subscription.current_period_start
        assert second.id == first.id
        assert len(store.overages.rows) == 1
        assert store.usage_events.types_for(box.id).count("overage_billed") == 1

    @pytest.mark.asyncio
    async def test_not_enabled(self, engine, store, plans, make_subscribed_box):
        box, _ = make_subscribed_box()
        set_members(store, box.id, athletes=80)

        outcome = await engine.usage.calculate_overage_billing(box.id)

        assert isinstance(outcome, NoOverage)
        assert outcome.reason == "Overage billing not enabled"

    @pytest.mark.asyncio
    async def test_within_limits(self, engine, store, plans, make_subscribed_box):
        box, _ = make_subscribed_box(is_overage_enabled=True)
        set_members(store, box.id, athletes=75)

        outcome = await engine.usage.calculate_overage_billing(box.id)

        assert isinstance(outcome, NoOverage)
        assert outcome.overage == 0

    @pytest.mark.asyncio
    async def test_no_active_subscription(self, engine, make_box):
        box = make_box(is_overage_enabled=True)

        outcome = await engine.usage.calculate_overage_billing(box.id)

        assert isinstance(outcome, NoOverage)
        assert outcome.reason == "No active subscription"

    @pytest.mark.asyncio
    async def test_period_run_bills_enabled_boxes(self, engine, store, plans, make_subscribed_box):
        enabled, _ = make_subscribed_box(provider_subscription_id="sub_a", is_overage_enabled=True)
        disabled, _ = make_subscribed_box(provider_subscription_id="sub_b")
        set_members(store, enabled.id, athletes=80)
        set_members(store, disabled.id, athletes=90)

        results = await engine.usage.process_period_overage_billing()
        rerun = await engine.usage.process_period_overage_billing()

        assert [(r.box_id, r.billed) for r in results] == [(enabled.id, True)]
        assert results[0].total_overage_amount == 500
        assert rerun[0].record_id == results[0].record_id
        assert len(store.overages.rows) == 1

    @pytest.mark.asyncio
    async def test_period_run_skips_canceled_subscriptions(
        self, engine, store, plans, make_subscribed_box
    ):
        box, _ = make_subscribed_box(status=SubscriptionStatus.CANCELED, is_overage_enabled=True)
        set_members(store, box.id, athletes=80)

        assert await engine.usage.process_period_overage_billing() == []


class TestOverageSettlement:

    @pytest.fixture
    def billed(self, store, plans, make_subscribed_box):
        box, subscription = make_subscribed_box(is_overage_enabled=True)
        record = store.overages.add(OverageBillingRecord(
            box_id=box.id,
            subscription_id=subscription.id,
            billing_period_start=subscription.current_period_start,
            billing_period_end=subscription.current_period_end,
            athlete_limit=75, coach_limit=3, athlete_count=80, coach_count=3,
            athlete_overage=5, athlete_overage_rate=100, coach_overage_rate=500,
            athlete_overage_amount=500, total_overage_amount=500,
        ))
        return box, record

    @pytest.mark.asyncio
    async def test_mark_paid_is_terminal(self, engine, clock, billed):
        _, record = billed

        paid = await engine.usage.mark_overage_paid(record.id, provider_invoice_id="in_1")
        failed = await engine.usage.mark_overage_failed(record.id)

        assert paid.status == OverageStatus.PAID
        assert paid.paid_at == clock.now
        assert failed.status == OverageStatus.PAID

    @pytest.mark.asyncio
    async def test_non_overage_invoice_is_ignored(self, engine, billed):
        assert await engine.usage.settle_overage_invoice(InvoicePayload(id="in_regular")) is None

    @pytest.mark.asyncio
    async def test_overage_invoice_marks_record_paid(self, engine, clock, billed):
        _, record = billed
        paid_at = clock.now - timedelta(hours=1)

        settled = await engine.usage.settle_overage_invoice(InvoicePayload(
            id="in_overage",
            paid_at=paid_at,
            metadata={"type": "overage", "overage_billing_id": record.id},
        ))

        assert settled.status == OverageStatus.PAID
        assert settled.paid_at == paid_at

    @pytest.mark.asyncio
    async def test_history_newest_first(self, engine, store, billed):
        box, record = billed
        older = store.overages.add(record.model_copy(update={
            "id": "older",
            "billing_period_start": record.billing_period_start - timedelta(days=30),
            "billing_period_end": record.billing_period_start,
        }))

        history = await engine.usage.list_overage_history(box.id, limit=1)

        assert [r.id for r in history] == [record.id]
        assert older.id not in [r.id for r in history]


class TestOverageToggle:

    @pytest.mark.asyncio
    async def test_enable_resolves_limit_grace_periods(self, engine, store, plans, make_box):
        box = make_box()
        set_members(store, box.id, athletes=80)
        await engine.usage.check_limits(box.id)

        updated = await engine.usage.enable_overage_billing(box.id, enabled_by="owner_1")

        assert updated.is_overage_enabled is True
        assert await store.grace_periods.list_unresolved(box.id) == []
        assert "overage_enabled" in store.usage_events.types_for(box.id)

    @pytest.mark.asyncio
    async def test_disable_rechecks_limits(self, engine, store, plans, make_box):
        box = make_box(is_overage_enabled=True)
        set_members(store, box.id, athletes=80)

        updated = await engine.usage.disable_overage_billing(box.id)

        assert updated.is_overage_enabled is False
        [grace] = await store.grace_periods.list_unresolved(box.id)
        assert grace.reason == GracePeriodReason.ATHLETE_LIMIT_EXCEEDED

    @pytest.mark.asyncio
    async def test_enable_unknown_box_raises(self, engine):
        with pytest.raises(NotFoundError):
            await engine.usage.enable_overage_billing("missing")
