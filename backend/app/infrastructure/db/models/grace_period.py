"""
Grace Period Database Model

At most one unresolved row per (box_id, reason), enforced by a partial
unique index.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import Column, DateTime, Index, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlmodel import Field

from app.infrastructure.db.models.base import BaseModel


class GracePeriodModel(BaseModel, table=True):
    """Maps to the 'grace_periods' table."""

    __tablename__ = "grace_periods"
    __table_args__ = (
        Index(
            "uq_grace_periods_open_reason",
            "box_id",
            "reason",
            unique=True,
            postgresql_where=text("resolved = false"),
        ),
    )

    box_id: str = Field(foreign_key="boxes.id", max_length=36, index=True)
    reason: str = Field(max_length=50)
    severity: str = Field(max_length=20)
    ends_at: datetime = Field(sa_type=DateTime(timezone=True), index=True)

    resolved: bool = Field(default=False, index=True)
    resolved_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    resolution: Optional[str] = Field(default=None, max_length=100)
    resolved_by_user_id: Optional[str] = Field(default=None, max_length=36)
    auto_resolve: bool = Field(default=False)
    auto_resolved: bool = Field(default=False)
    custom_message: Optional[str] = Field(default=None)

    context_snapshot: dict = Field(
        default_factory=dict,
        sa_column=Column(JSONB, nullable=False, server_default=text("'{}'::jsonb")),
        description="Usage/billing state when the grace period opened"
    )
