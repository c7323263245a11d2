"""
Billing Routes

Read-only views of a box's usage, grace periods and overage history.
"""

from typing import List

from fastapi import APIRouter, Query

from app.domain.billing.models import GracePeriod, OverageBillingRecord, SubscriptionUsage
from app.infrastructure.db.dependencies import EngineDep


router = APIRouter(prefix="/boxes", tags=["billing"])


@router.get("/{box_id}/usage", response_model=SubscriptionUsage)
async def get_usage(box_id: str, engine: EngineDep):
    """Current member counts against the plan limits."""
    return await engine.usage.calculate_usage(box_id)


@router.get("/{box_id}/grace-periods", response_model=List[GracePeriod])
async def get_grace_periods(box_id: str, engine: EngineDep):
    """Grace periods still preserving access for the box."""
    return await engine.grace_periods.list_active(box_id)


@router.get("/{box_id}/overage-history", response_model=List[OverageBillingRecord])
async def get_overage_history(
    box_id: str,
    engine: EngineDep,
    limit: int = Query(default=12, ge=1, le=100),
):
    """Most recent overage records, newest period first."""
    return await engine.usage.list_overage_history(box_id, limit)
