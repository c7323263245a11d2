"""
Order Database Model

Paid provider invoices, one row per provider_order_id.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime
from sqlmodel import Field

from app.infrastructure.db.models.base import BaseModel


class OrderModel(BaseModel, table=True):
    """Maps to the 'orders' table."""

    __tablename__ = "orders"

    box_id: str = Field(foreign_key="boxes.id", max_length=36, index=True)
    provider_order_id: str = Field(max_length=255, unique=True, index=True)
    provider_subscription_id: Optional[str] = Field(default=None, max_length=255)
    status: str = Field(default="paid", max_length=20)
    amount: int = Field(default=0)
    currency: str = Field(default="USD", max_length=3)
    billing_reason: Optional[str] = Field(default=None, max_length=50)
    paid_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
