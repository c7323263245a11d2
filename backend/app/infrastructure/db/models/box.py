"""
Box Database Model

A tenant gym and its billing projection. The status columns are written
only by the billing engine.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime
from sqlmodel import Field

from app.infrastructure.db.models.base import BaseModel


class BoxModel(BaseModel, table=True):
    """Maps to the 'boxes' table."""

    __tablename__ = "boxes"

    name: str = Field(default="", max_length=255)
    status: str = Field(default="active", max_length=20, index=True)

    # Subscription projection
    subscription_status: Optional[str] = Field(default="trial", max_length=30, index=True)
    subscription_tier: str = Field(default="seed", max_length=20)
    trial_ends_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    subscription_starts_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    subscription_ends_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    next_billing_date: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    provider_subscription_id: Optional[str] = Field(default=None, max_length=255, index=True)
    provider_customer_id: Optional[str] = Field(default=None, max_length=255, index=True)

    # Usage projection
    is_overage_enabled: bool = Field(default=False)
    current_athlete_count: int = Field(default=0)
    current_athlete_limit: int = Field(default=75)
    current_coach_count: int = Field(default=0)
    current_coach_limit: int = Field(default=3)
    current_athlete_overage: int = Field(default=0)
    current_coach_overage: int = Field(default=0)
