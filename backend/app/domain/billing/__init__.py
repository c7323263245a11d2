"""Billing domain: subscription lifecycle and entitlement enforcement."""
from app.domain.billing.engine import BillingEngine
from app.domain.billing.events import BillingEventType, NormalizedBillingEvent
from app.domain.billing.interfaces import BillingStore
from app.domain.billing.policy import BillingPolicy

__all__ = [
    "BillingEngine",
    "BillingEventType",
    "BillingPolicy",
    "BillingStore",
    "NormalizedBillingEvent",
]
