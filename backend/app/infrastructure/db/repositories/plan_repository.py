"""
Subscription Plan Repository

Read-only access to priced tiers.
"""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.billing.interfaces import IPlanRepository
from app.domain.billing.models import SubscriptionPlan, SubscriptionTier
from app.infrastructure.db.models.subscription_plan import SubscriptionPlanModel
from app.infrastructure.db.repositories.base_repository import BaseRepository


class PlanRepository(BaseRepository[SubscriptionPlanModel, SubscriptionPlan], IPlanRepository):
    """Repository for subscription plans."""

    def __init__(self, session: AsyncSession):
        super().__init__(SubscriptionPlanModel, SubscriptionPlan, session)

    async def get_current(self, tier: SubscriptionTier) -> Optional[SubscriptionPlan]:
        stmt = select(SubscriptionPlanModel).where(
            SubscriptionPlanModel.tier == tier.value,
            SubscriptionPlanModel.is_current_version.is_(True),
        )
        return await self._select_one(stmt)

    async def get_by_product_id(self, provider_product_id: str) -> Optional[SubscriptionPlan]:
        stmt = (
            select(SubscriptionPlanModel)
            .where(SubscriptionPlanModel.provider_product_id == provider_product_id)
            .order_by(SubscriptionPlanModel.version.desc())
            .limit(1)
        )
        return await self._select_one(stmt)
