"""
Integration Tests for Webhooks

Verifies:
- Signature verification failure (400)
- Successful event processing
- Idempotency (prevent double processing)
- Admin-key protection of the pre-normalized intake
"""

from datetime import timedelta

import pytest

from app.domain.billing import NormalizedBillingEvent
from app.domain.billing.models import BillingEventStatus, SubscriptionStatus
from app.infrastructure.payments.stripe_service import StripeServiceError


def created_event(box_id, clock, event_id="evt_checkout_ok"):
    return NormalizedBillingEvent(
        type="subscription.created",
        id=event_id,
        data={
            "id": "sub_test",
            "status": "active",
            "customer_id": "cus_test",
            "product_id": "prod_seed_monthly",
            "current_period_start": clock.now.isoformat(),
            "current_period_end": (clock.now + timedelta(days=30)).isoformat(),
        },
        metadata={"box_id": box_id, "source": "stripe"},
    )


class TestStripeWebhooks:

    def test_webhook_missing_signature(self, client, mock_stripe_service):
        """Webhook without signature header should fail 400."""
        response = client.post("/api/webhooks/stripe", json={"id": "evt_123"})
        assert response.status_code == 400
        assert "Missing Stripe signature" in response.json()["detail"]
        mock_stripe_service.parse_webhook.assert_not_called()

    def test_webhook_invalid_signature(self, client, mock_stripe_service, store):
        """Webhook with invalid signature should fail 400 and store nothing."""
        mock_stripe_service.parse_webhook.side_effect = StripeServiceError("Bad sig")

        response = client.post(
            "/api/webhooks/stripe",
            json={"id": "evt_123"},
            headers={"stripe-signature": "invalid_sig"}
        )
        assert response.status_code == 400
        assert "Invalid signature" in response.json()["detail"]
        assert store.billing_events.rows == {}

    def test_webhook_success(self, client, mock_stripe_service, store, clock, plans, make_box):
        """Valid subscription event is applied and acknowledged."""
        box = make_box()
        mock_stripe_service.parse_webhook.return_value = created_event(box.id, clock)

        response = client.post(
            "/api/webhooks/stripe",
            content=b"{}",
            headers={"stripe-signature": "valid_sig"}
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "success"
        record = store.billing_events.rows[body["billing_event_id"]]
        assert record.status == BillingEventStatus.PROCESSED
        assert store.boxes.rows[box.id].subscription_status == SubscriptionStatus.ACTIVE

    def test_webhook_idempotency(self, client, mock_stripe_service, clock, plans, make_box):
        """Same event twice: second delivery is acknowledged without reprocessing."""
        box = make_box()
        mock_stripe_service.parse_webhook.return_value = created_event(box.id, clock)
        headers = {"stripe-signature": "valid_sig"}

        first = client.post("/api/webhooks/stripe", content=b"{}", headers=headers)
        second = client.post("/api/webhooks/stripe", content=b"{}", headers=headers)

        assert first.json()["status"] == "success"
        assert second.status_code == 200
        assert second.json()["status"] == "already_processed"
        assert second.json()["billing_event_id"] == first.json()["billing_event_id"]

    def test_handler_failure_still_acknowledged(self, client, mock_stripe_service, clock):
        """Failed handlers return 200 with the error; the retry drain takes over."""
        mock_stripe_service.parse_webhook.return_value = created_event("box_missing", clock)

        response = client.post(
            "/api/webhooks/stripe",
            content=b"{}",
            headers={"stripe-signature": "valid_sig"}
        )

        assert response.status_code == 200
        assert response.json()["status"] == "failed"
        assert "No box" in response.json()["message"]


class TestBillingEventIntake:

    @pytest.fixture
    def event_body(self, clock, plans, make_box):
        box = make_box()
        return created_event(box.id, clock, event_id="evt_internal").model_dump(mode="json")

    def test_requires_admin_key(self, client, admin_headers, event_body):
        response = client.post(
            "/api/webhooks/billing-events",
            json=event_body,
            headers={"X-Admin-Key": "wrong"},
        )
        assert response.status_code == 403

    def test_processes_normalized_event(self, client, admin_headers, store, event_body):
        event_body["metadata"]["source"] = None

        response = client.post("/api/webhooks/billing-events", json=event_body, headers=admin_headers)

        assert response.status_code == 200
        assert response.json()["status"] == "success"
        record = store.billing_events.rows[response.json()["billing_event_id"]]
        assert record.source == "internal"

    def test_malformed_event_is_rejected(self, client, admin_headers, store):
        response = client.post(
            "/api/webhooks/billing-events",
            json={"type": "subscription.created", "id": "evt_bad", "data": {"status": "active"}},
            headers=admin_headers,
        )

        assert response.status_code == 400
        assert response.json()["error"] == "ValidationError"
        assert store.billing_events.rows == {}
