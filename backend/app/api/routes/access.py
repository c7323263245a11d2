"""
Access Routes

Synchronous entitlement checks for access-gated features.
"""

from fastapi import APIRouter

from app.domain.billing.models import AccessDecision
from app.infrastructure.db.dependencies import EngineDep


router = APIRouter(prefix="/boxes", tags=["access"])


@router.get("/{box_id}/access", response_model=AccessDecision)
async def check_box_access(box_id: str, engine: EngineDep):
    """Whether the box may use the product right now."""
    return await engine.access.check_access(box_id)


@router.get("/{box_id}/features/{feature}", response_model=AccessDecision)
async def check_feature_access(box_id: str, feature: str, engine: EngineDep):
    """
    Whether the box may use one feature.

    Features: add_athlete, add_coach, advanced_analytics, api_access.
    """
    return await engine.access.check_feature_access(box_id, feature)
