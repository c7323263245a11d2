"""
Subscription Database Model

One provider subscription per row, keyed by provider_subscription_id.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime
from sqlmodel import Field

from app.infrastructure.db.models.base import BaseModel


class SubscriptionModel(BaseModel, table=True):
    """Maps to the 'subscriptions' table."""

    __tablename__ = "subscriptions"

    box_id: str = Field(foreign_key="boxes.id", max_length=36, index=True)

    # Provider IDs
    provider_subscription_id: str = Field(max_length=255, unique=True, index=True)
    provider_customer_id: Optional[str] = Field(default=None, max_length=255, index=True)
    provider_product_id: Optional[str] = Field(default=None, max_length=255)

    # Subscription details
    plan_tier: str = Field(default="seed", max_length=20)
    status: str = Field(default="active", max_length=30, index=True)
    amount: Optional[int] = Field(default=None)
    currency: str = Field(default="USD", max_length=3)

    # Billing period dates
    current_period_start: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    current_period_end: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    cancel_at_period_end: bool = Field(default=False)
    canceled_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    cancel_reason: Optional[str] = Field(default=None, max_length=255)
