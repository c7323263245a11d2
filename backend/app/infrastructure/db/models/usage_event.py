"""
Usage Event Model

Append-only audit trail of billable and informational box occurrences.
"""

from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from sqlalchemy import Column, DateTime, String, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Field, SQLModel


class UsageEventModel(SQLModel, table=True):
    """Usage event row. Never updated after insert."""

    __tablename__ = "usage_events"

    id: str = Field(
        default_factory=lambda: str(uuid4()),
        primary_key=True,
        max_length=36
    )

    box_id: str = Field(
        ...,
        foreign_key="boxes.id",
        max_length=36,
        index=True,
        description="Box this event belongs to"
    )

    event_type: str = Field(
        ...,
        max_length=50,
        sa_column=Column(String(50), nullable=False, index=True),
        description="Type of event"
    )

    quantity: int = Field(default=1)
    billable: bool = Field(default=False)
    user_id: Optional[str] = Field(default=None, max_length=36)

    event_metadata: dict = Field(
        default_factory=dict,
        sa_column=Column(JSONB, nullable=False, server_default=text("'{}'::jsonb")),
        description="Additional event data (grace period id, amounts, tiers, etc.)"
    )

    billing_period_start: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    billing_period_end: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        sa_type=DateTime(timezone=True),
        description="When this event occurred"
    )
