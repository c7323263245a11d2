"""
Access Decision

Answers "can this box act now" from persisted state. Denial is a normal
return value. The only write is the lazy trial-expiry correction, done
through the same primitive the reconciliation sweep uses.
"""

import logging
from datetime import datetime
from typing import Callable

from app.domain.billing.interfaces import BillingStore
from app.domain.billing.lifecycle import ENTITLED_STATUSES, SubscriptionStateMachine
from app.domain.billing.models import (
    AccessDecision,
    Box,
    BoxStatus,
    SubscriptionStatus,
    SubscriptionTier,
    utc_now,
)
from app.domain.billing.usage import UsageCalculator


logger = logging.getLogger(__name__)


NO_SUBSCRIPTION = "No active subscription or trial"
TRIAL_EXPIRED = "Trial expired without subscription"
PERIOD_ENDED = "Subscription period ended"

# Features gated on tier beyond plain access
FEATURE_TIERS = {
    "advanced_analytics": {SubscriptionTier.GROW, SubscriptionTier.SCALE},
    "api_access": {SubscriptionTier.SCALE},
}


def trial_expired(box: Box, now: datetime) -> bool:
    """A trial without an end date never lapses on its own."""
    return box.trial_ends_at is not None and box.trial_ends_at <= now


class AccessService:

    def __init__(
        self,
        store: BillingStore,
        state_machine: SubscriptionStateMachine,
        usage: UsageCalculator,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self._state_machine = state_machine
        self._usage = usage
        self._clock = clock

    async def check_access(self, box_id: str) -> AccessDecision:
        """
        First matching rule wins:

        1. box not active -> deny with the box status
        2. trial running -> allow
        3. trial over, nothing paid -> mark trial_expired, deny
        4. no provider subscription -> deny
        5. entitled subscription inside its period -> allow (past_due included)
        6. anything else -> deny with the subscription status or period end
        """
        box = await self._store.boxes.get(box_id)
        if box is None:
            return AccessDecision(has_access=False, reason="Box not found")

        if box.status != BoxStatus.ACTIVE:
            return AccessDecision(has_access=False, reason=box.status.value)

        now = self._clock()
        if box.subscription_status == SubscriptionStatus.TRIAL:
            if not trial_expired(box, now):
                return AccessDecision(has_access=True)
            if not box.provider_subscription_id:
                await self._state_machine.mark_trial_expired(box)
                return AccessDecision(has_access=False, reason=TRIAL_EXPIRED)

        if not box.provider_subscription_id:
            return AccessDecision(has_access=False, reason=NO_SUBSCRIPTION)

        subscription = await self._store.subscriptions.get_by_provider_id(box.provider_subscription_id)
        if subscription is None:
            return AccessDecision(has_access=False, reason=NO_SUBSCRIPTION)

        if subscription.status not in ENTITLED_STATUSES:
            return AccessDecision(has_access=False, reason=subscription.status.value)

        if subscription.current_period_end and subscription.current_period_end <= now:
            return AccessDecision(has_access=False, reason=PERIOD_ENDED)

        return AccessDecision(has_access=True)

    async def check_feature_access(self, box_id: str, feature: str) -> AccessDecision:
        """Access check plus tier and limit gates for individual features."""
        decision = await self.check_access(box_id)
        if not decision.has_access:
            return decision

        box = await self._store.boxes.get(box_id)

        if feature in ("add_athlete", "add_coach"):
            if box.is_overage_enabled:
                return AccessDecision(has_access=True)
            usage = await self._usage.calculate_usage(box_id, box=box)
            if feature == "add_athlete" and usage.athletes >= usage.athlete_limit:
                return AccessDecision(
                    has_access=False,
                    reason=f"Athlete limit reached ({usage.athletes}/{usage.athlete_limit})",
                )
            if feature == "add_coach" and usage.coaches >= usage.coach_limit:
                return AccessDecision(
                    has_access=False,
                    reason=f"Coach limit reached ({usage.coaches}/{usage.coach_limit})",
                )
            return AccessDecision(has_access=True)

        allowed_tiers = FEATURE_TIERS.get(feature)
        if allowed_tiers is None:
            return AccessDecision(has_access=True)
        if box.subscription_tier not in allowed_tiers:
            return AccessDecision(
                has_access=False,
                reason=f"{feature} requires {' or '.join(sorted(t.value for t in allowed_tiers))} plan",
            )
        return AccessDecision(has_access=True)
