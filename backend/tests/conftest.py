"""
Test configuration and fixtures for the Box Billing Engine.

Provides shared fixtures for unit and API tests. The engine runs against
the in-memory store from fakes.py with a settable clock.
"""

from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient

from app.domain.billing import BillingEngine, BillingPolicy
from app.domain.billing.models import (
    Box,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
    SubscriptionTier,
)
from fakes import FakeBillingStore, FakeClock


ADMIN_KEY = "test-admin-key"


# =============================================================================
# Engine Fixtures
# =============================================================================

@pytest.fixture
def clock():
    """Settable clock, 2026-03-01 12:00 UTC."""
    return FakeClock()


@pytest.fixture
def store():
    """Empty in-memory billing store."""
    return FakeBillingStore()


@pytest.fixture
def engine(store, clock):
    """Billing engine wired to the fake store and clock."""
    return BillingEngine.from_store(store, BillingPolicy(), clock)


@pytest.fixture
def plans(store):
    """Current plan rows for the three tiers."""
    rows = {
        SubscriptionTier.SEED: SubscriptionPlan(
            tier=SubscriptionTier.SEED, name="Seed", athlete_limit=75, coach_limit=3,
            athlete_overage_price=100, coach_overage_price=500, monthly_price=4900,
            provider_product_id="prod_seed_monthly",
        ),
        SubscriptionTier.GROW: SubscriptionPlan(
            tier=SubscriptionTier.GROW, name="Grow", athlete_limit=150, coach_limit=6,
            athlete_overage_price=80, coach_overage_price=400, monthly_price=9900,
            provider_product_id="prod_grow_monthly",
        ),
        SubscriptionTier.SCALE: SubscriptionPlan(
            tier=SubscriptionTier.SCALE, name="Scale", athlete_limit=400, coach_limit=15,
            athlete_overage_price=60, coach_overage_price=300, monthly_price=19900,
            provider_product_id="prod_scale_monthly",
        ),
    }
    for plan in rows.values():
        store.plans.add(plan)
    return rows


@pytest.fixture
def make_box(store, clock):
    """Factory for boxes stored in the fake store."""
    def _make_box(**fields) -> Box:
        defaults = {
            "name": "CrossFit Test",
            "trial_ends_at": clock.now + timedelta(days=14),
            "created_at": clock.now,
            "updated_at": clock.now,
        }
        defaults.update(fields)
        return store.boxes.add(Box(**defaults))
    return _make_box


@pytest.fixture
def make_subscribed_box(store, clock, make_box):
    """Factory for a box with an active provider subscription."""
    def _make_subscribed_box(
        provider_subscription_id: str = "sub_123",
        tier: SubscriptionTier = SubscriptionTier.SEED,
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        **box_fields,
    ):
        period_start = clock.now - timedelta(days=10)
        period_end = clock.now + timedelta(days=20)
        box_fields.setdefault("subscription_status", status)
        box = make_box(
            subscription_tier=tier,
            provider_subscription_id=provider_subscription_id,
            provider_customer_id="cus_123",
            subscription_starts_at=period_start,
            subscription_ends_at=period_end,
            next_billing_date=period_end,
            **box_fields,
        )
        subscription = store.subscriptions.add(Subscription(
            box_id=box.id,
            provider_subscription_id=provider_subscription_id,
            provider_customer_id="cus_123",
            provider_product_id=f"prod_{tier.value}_monthly",
            plan_tier=tier,
            status=status,
            current_period_start=period_start,
            current_period_end=period_end,
            amount=4900,
            created_at=period_start,
            updated_at=period_start,
        ))
        return box, subscription
    return _make_subscribed_box


# =============================================================================
# App Fixtures
# =============================================================================

@pytest.fixture
def app(engine):
    """FastAPI application with the billing engine bound to the fake store."""
    from app.main import app
    from app.infrastructure.db.dependencies import get_billing_engine

    app.dependency_overrides[get_billing_engine] = lambda: engine
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    """Get synchronous test client."""
    return TestClient(app)


@pytest.fixture
def admin_headers():
    """Headers carrying a valid admin key."""
    from app.config.settings import settings

    with patch.object(settings, "admin_api_key", ADMIN_KEY):
        yield {"X-Admin-Key": ADMIN_KEY}


@pytest.fixture
def mock_stripe_service(app):
    """Stripe service double injected in place of the singleton."""
    from app.infrastructure.payments.stripe_service import get_stripe_service

    mock = MagicMock()
    app.dependency_overrides[get_stripe_service] = lambda: mock
    return mock
