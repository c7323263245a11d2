"""
Unit tests for Dependency Injection providers and persistence helpers.

Validates that:
- The billing store binds every repository to the request's session
- The engine provider composes all services around that store
- Database URLs are normalized for asyncpg
"""

import inspect
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from app.domain.billing import BillingEngine
from app.domain.billing.models import BoxStatus, GracePeriod, GracePeriodReason, GraceSeverity
from app.infrastructure.db.repositories import SqlBillingStore
from app.infrastructure.db.repositories.base_repository import to_row
from app.infrastructure.exceptions import ConfigurationError


class TestDIProviders:

    @pytest.mark.asyncio
    async def test_billing_store_shares_session(self):
        from app.infrastructure.db.dependencies import get_billing_store

        session = MagicMock()
        store = await get_billing_store(session).__anext__()

        assert isinstance(store, SqlBillingStore)
        assert store.boxes.session is session
        assert store.billing_events.session is session
        assert store.grace_periods.session is session

    @pytest.mark.asyncio
    async def test_store_commit_and_rollback_use_session(self):
        session = MagicMock()
        session.commit = AsyncMock()
        session.rollback = AsyncMock()
        store = SqlBillingStore(session)

        await store.commit()
        await store.rollback()

        session.commit.assert_awaited_once()
        session.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_engine_provider(self):
        from app.infrastructure.db.dependencies import get_billing_engine

        store = SqlBillingStore(MagicMock())
        engine = await get_billing_engine(store)

        assert isinstance(engine, BillingEngine)
        assert engine.store is store

    def test_stripe_service_is_singleton(self):
        from app.infrastructure.payments.stripe_service import get_stripe_service

        assert get_stripe_service() is get_stripe_service()

    def test_repositories_accept_session(self):
        """Every repository constructor takes only the session."""
        store = SqlBillingStore(MagicMock())
        for repository in (store.boxes, store.subscriptions, store.plans, store.overages, store.orders):
            params = [
                name for name in inspect.signature(type(repository).__init__).parameters
                if name != "self"
            ]
            assert params == ["session"]


class TestDatabaseUrl:

    @pytest.mark.parametrize("url", [
        "postgres://user:pw@localhost:5432/billing",
        "postgresql://user:pw@localhost:5432/billing",
        "postgresql+asyncpg://user:pw@localhost:5432/billing",
    ])
    def test_rewrites_to_asyncpg(self, url):
        from app.infrastructure.db import database

        with patch.object(database.settings, "database_url", url):
            assert database.get_database_url() == "postgresql+asyncpg://user:pw@localhost:5432/billing"

    def test_missing_url_raises(self):
        from app.infrastructure.db import database

        with patch.object(database.settings, "database_url", None):
            with pytest.raises(ConfigurationError):
                database.get_database_url()


class TestRowMapping:

    def test_enums_stored_by_value_and_timestamps_filled(self, clock):
        grace_period = GracePeriod(
            box_id="box_1",
            reason=GracePeriodReason.BILLING_ISSUE,
            severity=GraceSeverity.WARNING,
            ends_at=clock.now,
        )

        row = to_row(grace_period)

        assert row["reason"] == "billing_issue"
        assert row["severity"] == "warning"
        assert row["created_at"] is not None
        assert row["ends_at"] == clock.now

    def test_exclude(self, clock):
        from app.domain.billing.models import Box

        row = to_row(Box(status=BoxStatus.SUSPENDED), exclude=["id"])

        assert "id" not in row
        assert row["status"] == "suspended"
