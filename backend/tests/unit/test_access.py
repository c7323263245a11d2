"""
Unit tests for access decisions and feature gates.
"""

from datetime import timedelta

import pytest

from app.domain.billing.access import NO_SUBSCRIPTION, PERIOD_ENDED, TRIAL_EXPIRED
from app.domain.billing.models import (
    BoxStatus,
    MembershipRole,
    SubscriptionStatus,
    SubscriptionTier,
)


class TestCheckAccess:

    @pytest.mark.asyncio
    async def test_unknown_box(self, engine):
        decision = await engine.access.check_access("missing")

        assert decision.has_access is False
        assert decision.reason == "Box not found"

    @pytest.mark.asyncio
    async def test_running_trial(self, engine, make_box):
        box = make_box()

        assert (await engine.access.check_access(box.id)).has_access is True

    @pytest.mark.asyncio
    async def test_trial_without_end_date_never_lapses(self, engine, make_box):
        box = make_box(trial_ends_at=None)

        assert (await engine.access.check_access(box.id)).has_access is True

    @pytest.mark.asyncio
    async def test_lapsed_trial_is_corrected(self, engine, store, clock, make_box):
        box = make_box(trial_ends_at=clock.now - timedelta(minutes=1))

        decision = await engine.access.check_access(box.id)

        assert decision.has_access is False
        assert decision.reason == TRIAL_EXPIRED
        assert (await store.boxes.get(box.id)).status == BoxStatus.TRIAL_EXPIRED
        assert store.usage_events.types_for(box.id) == ["trial_expired"]

        again = await engine.access.check_access(box.id)
        assert again.reason == "trial_expired"
        assert store.usage_events.types_for(box.id) == ["trial_expired"]

    @pytest.mark.asyncio
    async def test_suspended_box(self, engine, make_subscribed_box):
        box, _ = make_subscribed_box(status=SubscriptionStatus.ACTIVE)
        await engine.store.boxes.update(box.id, {"status": BoxStatus.SUSPENDED})

        decision = await engine.access.check_access(box.id)

        assert decision.has_access is False
        assert decision.reason == "suspended"

    @pytest.mark.asyncio
    async def test_no_subscription_after_trial(self, engine, make_box):
        box = make_box(subscription_status=SubscriptionStatus.CANCELED)

        decision = await engine.access.check_access(box.id)

        assert decision.reason == NO_SUBSCRIPTION

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.TRIALING,
        SubscriptionStatus.PAST_DUE,
    ])
    async def test_entitled_statuses(self, engine, make_subscribed_box, status):
        box, _ = make_subscribed_box(status=status)

        assert (await engine.access.check_access(box.id)).has_access is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [
        SubscriptionStatus.UNPAID,
        SubscriptionStatus.CANCELED,
        SubscriptionStatus.INCOMPLETE,
    ])
    async def test_unentitled_statuses(self, engine, make_subscribed_box, status):
        box, _ = make_subscribed_box(status=status)

        decision = await engine.access.check_access(box.id)

        assert decision.has_access is False
        assert decision.reason == status.value

    @pytest.mark.asyncio
    async def test_period_ended(self, engine, store, clock, make_subscribed_box):
        box, subscription = make_subscribed_box()
        await store.subscriptions.update(subscription.id, {"current_period_end": clock.now})

        decision = await engine.access.check_access(box.id)

        assert decision.has_access is False
        assert decision.reason == PERIOD_ENDED

    @pytest.mark.asyncio
    async def test_paid_box_with_lapsed_trial_date(self, engine, clock, make_subscribed_box):
        box, _ = make_subscribed_box(
            subscription_status=SubscriptionStatus.TRIAL,
            trial_ends_at=clock.now - timedelta(days=1),
        )

        assert (await engine.access.check_access(box.id)).has_access is True


class TestFeatureAccess:

    @pytest.mark.asyncio
    async def test_tier_gated_feature_denied(self, engine, make_subscribed_box):
        box, _ = make_subscribed_box(tier=SubscriptionTier.SEED)

        decision = await engine.access.check_feature_access(box.id, "advanced_analytics")

        assert decision.has_access is False
        assert decision.reason == "advanced_analytics requires grow or scale plan"

    @pytest.mark.asyncio
    async def test_tier_gated_feature_allowed(self, engine, make_subscribed_box):
        box, _ = make_subscribed_box(tier=SubscriptionTier.SCALE)

        assert (await engine.access.check_feature_access(box.id, "api_access")).has_access is True

    @pytest.mark.asyncio
    async def test_unlisted_feature_follows_access(self, engine, make_subscribed_box):
        box, _ = make_subscribed_box()

        assert (await engine.access.check_feature_access(box.id, "workouts")).has_access is True

    @pytest.mark.asyncio
    async def test_denied_box_denies_every_feature(self, engine, clock, make_box):
        box = make_box(trial_ends_at=clock.now - timedelta(days=1))

        decision = await engine.access.check_feature_access(box.id, "workouts")

        assert decision.reason == TRIAL_EXPIRED

    @pytest.mark.asyncio
    async def test_add_athlete_at_limit(self, engine, store, plans, make_subscribed_box):
        box, _ = make_subscribed_box()
        store.memberships.set(box.id, MembershipRole.ATHLETE, 75)

        decision = await engine.access.check_feature_access(box.id, "add_athlete")

        assert decision.has_access is False
        assert decision.reason == "Athlete limit reached (75/75)"

    @pytest.mark.asyncio
    async def test_add_coach_under_limit(self, engine, store, plans, make_subscribed_box):
        box, _ = make_subscribed_box()
        store.memberships.set(box.id, MembershipRole.COACH, 2)

        assert (await engine.access.check_feature_access(box.id, "add_coach")).has_access is True

    @pytest.mark.asyncio
    async def test_add_athlete_with_overage_enabled(self, engine, store, plans, make_subscribed_box):
        box, _ = make_subscribed_box(is_overage_enabled=True)
        store.memberships.set(box.id, MembershipRole.ATHLETE, 200)

        assert (await engine.access.check_feature_access(box.id, "add_athlete")).has_access is True
