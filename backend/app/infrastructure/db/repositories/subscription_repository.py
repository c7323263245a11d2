"""
Subscription Repository

Provider subscriptions, upserted on provider_subscription_id so redelivered
or reordered events converge on one row.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.billing.interfaces import ISubscriptionRepository
from app.domain.billing.models import Subscription, SubscriptionStatus
from app.infrastructure.db.models.subscription import SubscriptionModel
from app.infrastructure.db.repositories.base_repository import BaseRepository, to_row


logger = logging.getLogger(__name__)


class SubscriptionRepository(BaseRepository[SubscriptionModel, Subscription], ISubscriptionRepository):
    """Repository for provider subscriptions."""

    def __init__(self, session: AsyncSession):
        super().__init__(SubscriptionModel, Subscription, session)

    # =========================================================================
    # Query Methods
    # =========================================================================

    async def get_by_provider_id(self, provider_subscription_id: str) -> Optional[Subscription]:
        stmt = select(SubscriptionModel).where(
            SubscriptionModel.provider_subscription_id == provider_subscription_id
        )
        return await self._select_one(stmt)

    async def list_for_box(self, box_id: str) -> List[Subscription]:
        stmt = (
            select(SubscriptionModel)
            .where(SubscriptionModel.box_id == box_id)
            .order_by(SubscriptionModel.created_at.desc())
        )
        return await self._select_all(stmt)

    async def list_active(self) -> List[Subscription]:
        stmt = (
            select(SubscriptionModel)
            .where(SubscriptionModel.status == SubscriptionStatus.ACTIVE.value)
            .order_by(SubscriptionModel.current_period_end)
        )
        return await self._select_all(stmt)

    # =========================================================================
    # Command Methods
    # =========================================================================

    async def upsert(self, subscription: Subscription) -> Subscription:
        """
        Create or update a subscription by provider_subscription_id.

        Uses PostgreSQL upsert for atomicity.
        """
        now = datetime.now(timezone.utc)
        values = to_row(subscription)
        values["updated_at"] = now

        stmt = pg_insert(SubscriptionModel).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["provider_subscription_id"],
            set_={
                column: getattr(stmt.excluded, column)
                for column in values
                if column not in ("id", "created_at", "provider_subscription_id")
            },
        )
        await self._session.execute(stmt)

        stored = await self.get_by_provider_id(subscription.provider_subscription_id)
        logger.debug(f"Upserted subscription {subscription.provider_subscription_id}")
        return stored
