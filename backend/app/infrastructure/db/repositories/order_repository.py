"""
Order Repository

Paid invoices, upserted on provider_order_id.
"""

from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.billing.interfaces import IOrderRepository
from app.domain.billing.models import Order
from app.infrastructure.db.models.order import OrderModel
from app.infrastructure.db.repositories.base_repository import BaseRepository, to_row


class OrderRepository(BaseRepository[OrderModel, Order], IOrderRepository):
    """Repository for paid provider invoices."""

    def __init__(self, session: AsyncSession):
        super().__init__(OrderModel, Order, session)

    async def upsert(self, order: Order) -> Order:
        values = to_row(order)
        values["updated_at"] = datetime.now(timezone.utc)

        stmt = pg_insert(OrderModel).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["provider_order_id"],
            set_={
                "status": stmt.excluded.status,
                "amount": stmt.excluded.amount,
                "currency": stmt.excluded.currency,
                "billing_reason": stmt.excluded.billing_reason,
                "paid_at": stmt.excluded.paid_at,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        await self._session.execute(stmt)

        return await self._select_one(
            select(OrderModel).where(OrderModel.provider_order_id == order.provider_order_id)
        )
