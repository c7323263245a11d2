"""
SQL Billing Store

Binds every billing repository to one AsyncSession so a handler's writes
commit or roll back together.
"""

from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.billing.interfaces import BillingStore
from app.infrastructure.db.repositories.billing_event_repository import BillingEventRepository
from app.infrastructure.db.repositories.box_repository import BoxRepository
from app.infrastructure.db.repositories.grace_period_repository import GracePeriodRepository
from app.infrastructure.db.repositories.membership_repository import MembershipRepository
from app.infrastructure.db.repositories.order_repository import OrderRepository
from app.infrastructure.db.repositories.overage_repository import OverageRepository
from app.infrastructure.db.repositories.plan_repository import PlanRepository
from app.infrastructure.db.repositories.subscription_repository import SubscriptionRepository
from app.infrastructure.db.repositories.usage_event_repository import UsageEventRepository


class SqlBillingStore(BillingStore):
    """Unit of work over a single database session."""

    def __init__(self, session: AsyncSession):
        super().__init__(
            boxes=BoxRepository(session),
            subscriptions=SubscriptionRepository(session),
            plans=PlanRepository(session),
            grace_periods=GracePeriodRepository(session),
            overages=OverageRepository(session),
            billing_events=BillingEventRepository(session),
            usage_events=UsageEventRepository(session),
            memberships=MembershipRepository(session),
            orders=OrderRepository(session),
        )
        self._session = session

    async def commit(self) -> None:
        await self._session.commit()

    async def rollback(self) -> None:
        await self._session.rollback()
