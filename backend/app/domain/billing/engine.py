"""
Billing Engine Composition

Wires the billing services around one BillingStore. Built per request or
per job run; the services keep no state of their own.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from app.domain.billing.access import AccessService
from app.domain.billing.grace_periods import GracePeriodManager
from app.domain.billing.interfaces import BillingStore
from app.domain.billing.lifecycle import SubscriptionStateMachine
from app.domain.billing.models import utc_now
from app.domain.billing.policy import BillingPolicy
from app.domain.billing.reconciliation import ReconciliationSweep
from app.domain.billing.usage import UsageCalculator
from app.domain.billing.webhook_processor import WebhookEventProcessor


@dataclass
class BillingEngine:
    store: BillingStore
    grace_periods: GracePeriodManager
    lifecycle: SubscriptionStateMachine
    usage: UsageCalculator
    access: AccessService
    reconciliation: ReconciliationSweep
    webhooks: WebhookEventProcessor

    @classmethod
    def from_store(
        cls,
        store: BillingStore,
        policy: BillingPolicy = BillingPolicy(),
        clock: Callable[[], datetime] = utc_now,
    ) -> "BillingEngine":
        grace_periods = GracePeriodManager(store, clock)
        lifecycle = SubscriptionStateMachine(store, grace_periods, clock)
        usage = UsageCalculator(store, grace_periods, policy, clock)
        return cls(
            store=store,
            grace_periods=grace_periods,
            lifecycle=lifecycle,
            usage=usage,
            access=AccessService(store, lifecycle, usage, clock),
            reconciliation=ReconciliationSweep(store, lifecycle, clock),
            webhooks=WebhookEventProcessor(store, lifecycle, usage, policy, clock),
        )
