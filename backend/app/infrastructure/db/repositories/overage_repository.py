"""
Overage Billing Repository

One record per (box, billing period), enforced by uq_overage_billing_period.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.billing.interfaces import IOverageRepository
from app.domain.billing.models import OverageBillingRecord
from app.infrastructure.db.models.overage_billing import OverageBillingModel
from app.infrastructure.db.repositories.base_repository import BaseRepository


class OverageRepository(BaseRepository[OverageBillingModel, OverageBillingRecord], IOverageRepository):
    """Repository for overage billing records."""

    def __init__(self, session: AsyncSession):
        super().__init__(OverageBillingModel, OverageBillingRecord, session)

    async def get_for_period(
        self,
        box_id: str,
        period_start: datetime,
        period_end: datetime,
    ) -> Optional[OverageBillingRecord]:
        stmt = select(OverageBillingModel).where(
            OverageBillingModel.box_id == box_id,
            OverageBillingModel.billing_period_start == period_start,
            OverageBillingModel.billing_period_end == period_end,
        )
        return await self._select_one(stmt)

    async def insert(self, record: OverageBillingRecord) -> OverageBillingRecord:
        return await self._insert(record)

    async def list_for_box(self, box_id: str, limit: int = 12) -> List[OverageBillingRecord]:
        stmt = (
            select(OverageBillingModel)
            .where(OverageBillingModel.box_id == box_id)
            .order_by(OverageBillingModel.billing_period_start.desc())
            .limit(limit)
        )
        return await self._select_all(stmt)
