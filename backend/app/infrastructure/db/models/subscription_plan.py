"""
Subscription Plan Database Model

Priced tiers. Exactly one current version per tier, enforced by a partial
unique index.
"""

from typing import Optional

from sqlalchemy import Index, text
from sqlmodel import Field

from app.infrastructure.db.models.base import BaseModel


class SubscriptionPlanModel(BaseModel, table=True):
    """Maps to the 'subscription_plans' table."""

    __tablename__ = "subscription_plans"
    __table_args__ = (
        Index(
            "uq_subscription_plans_current_tier",
            "tier",
            unique=True,
            postgresql_where=text("is_current_version"),
        ),
    )

    tier: str = Field(max_length=20, index=True)
    name: str = Field(default="", max_length=100)
    athlete_limit: int
    coach_limit: int
    # Minor currency units
    athlete_overage_price: Optional[int] = Field(default=None)
    coach_overage_price: Optional[int] = Field(default=None)
    monthly_price: int = Field(default=0)
    version: int = Field(default=1)
    is_current_version: bool = Field(default=True)
    provider_product_id: Optional[str] = Field(default=None, max_length=255, index=True)
