"""
Grace Period Repository

The partial unique index on (box_id, reason) WHERE resolved = false turns a
concurrent second trigger into DuplicateError.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.billing.interfaces import IGracePeriodRepository
from app.domain.billing.models import GracePeriod, GracePeriodReason
from app.infrastructure.db.models.grace_period import GracePeriodModel
from app.infrastructure.db.repositories.base_repository import BaseRepository


class GracePeriodRepository(BaseRepository[GracePeriodModel, GracePeriod], IGracePeriodRepository):
    """Repository for grace periods."""

    def __init__(self, session: AsyncSession):
        super().__init__(GracePeriodModel, GracePeriod, session)

    async def list_unresolved(
        self,
        box_id: Optional[str] = None,
        reason: Optional[GracePeriodReason] = None,
    ) -> List[GracePeriod]:
        stmt = select(GracePeriodModel).where(GracePeriodModel.resolved.is_(False))
        if box_id is not None:
            stmt = stmt.where(GracePeriodModel.box_id == box_id)
        if reason is not None:
            stmt = stmt.where(GracePeriodModel.reason == reason.value)
        return await self._select_all(stmt.order_by(GracePeriodModel.ends_at))

    async def insert(self, grace_period: GracePeriod) -> GracePeriod:
        return await self._insert(grace_period)

    async def list_ending_between(self, start: datetime, end: datetime) -> List[GracePeriod]:
        stmt = (
            select(GracePeriodModel)
            .where(
                GracePeriodModel.resolved.is_(False),
                GracePeriodModel.ends_at >= start,
                GracePeriodModel.ends_at < end,
            )
            .order_by(GracePeriodModel.ends_at)
        )
        return await self._select_all(stmt)
