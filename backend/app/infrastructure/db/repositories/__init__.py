"""
Repository Layer for the Box Billing Engine

Exports the SQL adapters for the billing ports.
"""

from app.infrastructure.db.repositories.base_repository import BaseRepository
from app.infrastructure.db.repositories.billing_event_repository import BillingEventRepository
from app.infrastructure.db.repositories.billing_store import SqlBillingStore
from app.infrastructure.db.repositories.box_repository import BoxRepository
from app.infrastructure.db.repositories.grace_period_repository import GracePeriodRepository
from app.infrastructure.db.repositories.membership_repository import MembershipRepository
from app.infrastructure.db.repositories.order_repository import OrderRepository
from app.infrastructure.db.repositories.overage_repository import OverageRepository
from app.infrastructure.db.repositories.plan_repository import PlanRepository
from app.infrastructure.db.repositories.subscription_repository import SubscriptionRepository
from app.infrastructure.db.repositories.usage_event_repository import UsageEventRepository


__all__ = [
    # Base
    "BaseRepository",
    # Unit of work
    "SqlBillingStore",
    # Repositories
    "BillingEventRepository",
    "BoxRepository",
    "GracePeriodRepository",
    "MembershipRepository",
    "OrderRepository",
    "OverageRepository",
    "PlanRepository",
    "SubscriptionRepository",
    "UsageEventRepository",
]
