"""
Box Membership Database Model

Read-only here: the billing engine only counts active members by role.
"""

from sqlmodel import Field

from app.infrastructure.db.models.base import BaseModel


class BoxMembershipModel(BaseModel, table=True):
    """Maps to the 'box_memberships' table."""

    __tablename__ = "box_memberships"

    box_id: str = Field(foreign_key="boxes.id", max_length=36, index=True)
    user_id: str = Field(max_length=36, index=True)
    role: str = Field(max_length=20)
    is_active: bool = Field(default=True)
