"""
Base Model for SQLModel ORM

Provides common fields and behavior for all billing tables.
Ids are UUID4 strings; all timestamps are timezone-aware (UTC).
"""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class TimestampMixin(SQLModel):
    """Mixin providing timestamp fields for models."""

    created_at: datetime = Field(
        default_factory=utc_now,
        sa_type=DateTime(timezone=True),
        nullable=False,
        description="Record creation timestamp (UTC)"
    )
    updated_at: datetime = Field(
        default_factory=utc_now,
        sa_type=DateTime(timezone=True),
        nullable=False,
        sa_column_kwargs={"onupdate": utc_now},
        description="Last update timestamp (UTC)"
    )


class IdMixin(SQLModel):
    """Mixin providing a string UUID primary key."""

    id: str = Field(
        default_factory=lambda: str(uuid4()),
        primary_key=True,
        max_length=36,
        description="Unique identifier (UUID v4)"
    )


class BaseModel(IdMixin, TimestampMixin):
    """
    Base model combining id and timestamp mixins.

    Provides: id, created_at, updated_at
    """
    pass
