"""
Membership Repository

Counts active box members by role.
"""

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.billing.interfaces import IMembershipRepository
from app.domain.billing.models import MembershipRole
from app.infrastructure.db.models.membership import BoxMembershipModel


class MembershipRepository(IMembershipRepository):

    def __init__(self, session: AsyncSession):
        self._session = session

    async def count_active(self, box_id: str, role: MembershipRole) -> int:
        stmt = select(func.count()).select_from(BoxMembershipModel).where(
            BoxMembershipModel.box_id == box_id,
            BoxMembershipModel.role == role.value,
            BoxMembershipModel.is_active.is_(True),
        )
        result = await self._session.execute(stmt)
        return result.scalar_one()
