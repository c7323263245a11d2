"""
Box Repository

Box reads and projection updates, plus the two reconciliation queries.
"""

from datetime import datetime
from typing import List

from sqlalchemy import exists, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.billing.interfaces import IBoxRepository
from app.domain.billing.models import Box, BoxStatus, SubscriptionStatus
from app.infrastructure.db.models.box import BoxModel
from app.infrastructure.db.models.subscription import SubscriptionModel
from app.infrastructure.db.repositories.base_repository import BaseRepository


class BoxRepository(BaseRepository[BoxModel, Box], IBoxRepository):
    """Repository for tenant boxes."""

    def __init__(self, session: AsyncSession):
        super().__init__(BoxModel, Box, session)

    async def list_expired_trials(self, now: datetime) -> List[Box]:
        stmt = (
            select(BoxModel)
            .where(
                BoxModel.subscription_status == SubscriptionStatus.TRIAL.value,
                BoxModel.trial_ends_at.is_not(None),
                BoxModel.trial_ends_at < now,
                BoxModel.provider_subscription_id.is_(None),
                BoxModel.status != BoxStatus.TRIAL_EXPIRED.value,
            )
            .order_by(BoxModel.trial_ends_at)
        )
        return await self._select_all(stmt)

    async def list_active_with_ended_cancellation(self, now: datetime) -> List[Box]:
        canceled_subscription = exists().where(
            SubscriptionModel.box_id == BoxModel.id,
            SubscriptionModel.provider_subscription_id == BoxModel.provider_subscription_id,
            or_(
                SubscriptionModel.status == SubscriptionStatus.CANCELED.value,
                SubscriptionModel.cancel_at_period_end.is_(True),
            ),
        )
        stmt = (
            select(BoxModel)
            .where(
                BoxModel.status == BoxStatus.ACTIVE.value,
                BoxModel.subscription_ends_at.is_not(None),
                BoxModel.subscription_ends_at < now,
                canceled_subscription,
            )
            .order_by(BoxModel.subscription_ends_at)
        )
        return await self._select_all(stmt)
