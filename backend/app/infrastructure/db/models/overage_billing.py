"""
Overage Billing Database Model

One computed overage charge per (box, billing period).
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, UniqueConstraint
from sqlmodel import Field

from app.infrastructure.db.models.base import BaseModel


class OverageBillingModel(BaseModel, table=True):
    """Maps to the 'overage_billing_records' table."""

    __tablename__ = "overage_billing_records"
    __table_args__ = (
        UniqueConstraint(
            "box_id",
            "billing_period_start",
            "billing_period_end",
            name="uq_overage_billing_period",
        ),
    )

    box_id: str = Field(foreign_key="boxes.id", max_length=36, index=True)
    subscription_id: str = Field(foreign_key="subscriptions.id", max_length=36)
    billing_period_start: datetime = Field(sa_type=DateTime(timezone=True))
    billing_period_end: datetime = Field(sa_type=DateTime(timezone=True))

    athlete_limit: int
    coach_limit: int
    athlete_count: int
    coach_count: int
    athlete_overage: int = Field(default=0)
    coach_overage: int = Field(default=0)
    athlete_overage_rate: int
    coach_overage_rate: int
    athlete_overage_amount: int = Field(default=0)
    coach_overage_amount: int = Field(default=0)
    total_overage_amount: int = Field(default=0)

    status: str = Field(default="calculated", max_length=20, index=True)
    provider_invoice_id: Optional[str] = Field(default=None, max_length=255)
    paid_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
