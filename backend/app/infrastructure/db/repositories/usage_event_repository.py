"""
Usage Event Repository

Append-only audit trail.
"""

from typing import List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.billing.interfaces import IUsageEventRepository
from app.domain.billing.models import UsageEvent
from app.infrastructure.db.models.usage_event import UsageEventModel
from app.infrastructure.db.repositories.base_repository import BaseRepository


class UsageEventRepository(BaseRepository[UsageEventModel, UsageEvent], IUsageEventRepository):
    """Repository for usage events."""

    def __init__(self, session: AsyncSession):
        super().__init__(UsageEventModel, UsageEvent, session)

    async def append(self, event: UsageEvent) -> UsageEvent:
        return await self._insert(event)

    async def get_by_box(self, box_id: str, limit: int = 100) -> List[UsageEvent]:
        """Get the most recent events for a box."""
        stmt = (
            select(UsageEventModel)
            .where(UsageEventModel.box_id == box_id)
            .order_by(UsageEventModel.created_at.desc())
            .limit(limit)
        )
        return await self._select_all(stmt)
