"""
Dependency Injection Providers for the Box Billing Engine

Provides FastAPI dependencies for database sessions, the billing store and
the composed billing engine.
"""

from typing import Annotated, AsyncGenerator

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.config.settings import settings
from app.domain.billing import BillingEngine, BillingStore
from app.infrastructure.db.database import get_session
from app.infrastructure.db.repositories import SqlBillingStore


# Type alias for session dependency
SessionDep = Annotated[AsyncSession, Depends(get_session)]


async def get_billing_store(
    session: SessionDep,
) -> AsyncGenerator[BillingStore, None]:
    """
    Dependency provider for the billing unit of work.

    Usage:
        @router.get("/boxes/{box_id}/usage")
        async def get_usage(store: BillingStore = Depends(get_billing_store)):
            ...
    """
    yield SqlBillingStore(session)


BillingStoreDep = Annotated[BillingStore, Depends(get_billing_store)]


async def get_billing_engine(store: BillingStoreDep) -> BillingEngine:
    """
    Dependency provider for the billing engine bound to the request's store.
    """
    return BillingEngine.from_store(store, settings.billing_policy)


# Type alias for engine dependency
EngineDep = Annotated[BillingEngine, Depends(get_billing_engine)]
