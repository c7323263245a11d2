"""
Billing Event Database Model

Every received provider event, kept for idempotency, retry and audit.
Rows are never deleted.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import Column, DateTime, Index, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Field

from app.infrastructure.db.models.base import BaseModel


class BillingEventModel(BaseModel, table=True):
    """Maps to the 'billing_events' table."""

    __tablename__ = "billing_events"
    __table_args__ = (
        Index("ix_billing_events_retry", "status", "next_retry_at"),
    )

    box_id: Optional[str] = Field(default=None, max_length=36, index=True)
    event_type: str = Field(max_length=100)
    provider_event_id: str = Field(max_length=255, unique=True, index=True)
    data: dict = Field(
        default_factory=dict,
        sa_column=Column(JSONB, nullable=False, server_default=text("'{}'::jsonb")),
        description="Raw event payload"
    )
    source: Optional[str] = Field(default=None, max_length=50)

    status: str = Field(default="pending", max_length=20)
    retry_count: int = Field(default=0)
    max_retries: int = Field(default=3)
    next_retry_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    processing_error: Optional[str] = Field(default=None)
    last_attempt_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    processed_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
