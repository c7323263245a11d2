"""
Billing Event Repository

Received provider events. insert_if_absent is the idempotency gate: the
unique provider_event_id decides which of two concurrent deliveries owns
the row.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.billing.interfaces import IBillingEventRepository
from app.domain.billing.models import BillingEvent, BillingEventStatus
from app.infrastructure.db.models.billing_event import BillingEventModel
from app.infrastructure.db.repositories.base_repository import BaseRepository, to_row


logger = logging.getLogger(__name__)


class BillingEventRepository(BaseRepository[BillingEventModel, BillingEvent], IBillingEventRepository):
    """Repository for billing events."""

    def __init__(self, session: AsyncSession):
        super().__init__(BillingEventModel, BillingEvent, session)

    async def get_by_provider_event_id(self, provider_event_id: str) -> Optional[BillingEvent]:
        stmt = select(BillingEventModel).where(
            BillingEventModel.provider_event_id == provider_event_id
        )
        return await self._select_one(stmt)

    async def insert_if_absent(self, event: BillingEvent) -> Tuple[BillingEvent, bool]:
        stmt = (
            pg_insert(BillingEventModel)
            .values(**to_row(event))
            .on_conflict_do_nothing(index_elements=["provider_event_id"])
            .returning(BillingEventModel.id)
        )
        result = await self._session.execute(stmt)
        created = result.scalar_one_or_none() is not None

        stored = await self.get_by_provider_event_id(event.provider_event_id)
        if not created:
            logger.debug(f"Billing event {event.provider_event_id} already stored")
        return stored, created

    async def list_due_for_retry(self, now: datetime, limit: int) -> List[BillingEvent]:
        stmt = (
            select(BillingEventModel)
            .where(
                BillingEventModel.status == BillingEventStatus.FAILED.value,
                BillingEventModel.next_retry_at.is_not(None),
                BillingEventModel.next_retry_at <= now,
            )
            .order_by(BillingEventModel.next_retry_at)
            .limit(limit)
        )
        return await self._select_all(stmt)

    async def count_stuck_processing(self, older_than: datetime) -> int:
        stmt = select(func.count()).select_from(BillingEventModel).where(
            BillingEventModel.status == BillingEventStatus.PROCESSING.value,
            BillingEventModel.last_attempt_at < older_than,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one()

    async def count_terminal_failures(self) -> int:
        stmt = select(func.count()).select_from(BillingEventModel).where(
            BillingEventModel.status == BillingEventStatus.FAILED.value,
            BillingEventModel.next_retry_at.is_(None),
        )
        result = await self._session.execute(stmt)
        return result.scalar_one()
