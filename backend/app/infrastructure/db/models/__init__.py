"""
SQLModel ORM Models for the Box Billing Engine

Exports all database models for Alembic autogenerate and application use.
Import models here to register them with SQLModel.metadata.
"""

from app.infrastructure.db.models.base import (
    BaseModel,
    IdMixin,
    TimestampMixin,
)
from app.infrastructure.db.models.box import BoxModel
from app.infrastructure.db.models.subscription_plan import SubscriptionPlanModel
from app.infrastructure.db.models.subscription import SubscriptionModel
from app.infrastructure.db.models.grace_period import GracePeriodModel
from app.infrastructure.db.models.overage_billing import OverageBillingModel
from app.infrastructure.db.models.billing_event import BillingEventModel
from app.infrastructure.db.models.usage_event import UsageEventModel
from app.infrastructure.db.models.membership import BoxMembershipModel
from app.infrastructure.db.models.order import OrderModel


__all__ = [
    # Base
    "BaseModel",
    "IdMixin",
    "TimestampMixin",
    # Billing
    "BoxModel",
    "SubscriptionPlanModel",
    "SubscriptionModel",
    "GracePeriodModel",
    "OverageBillingModel",
    "BillingEventModel",
    "UsageEventModel",
    "BoxMembershipModel",
    "OrderModel",
]
