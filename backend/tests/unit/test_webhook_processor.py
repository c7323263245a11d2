"""
Unit tests for the webhook event processor.

Tests idempotent intake, retry backoff, replay and health reporting.
"""

from datetime import timedelta

import pytest

from app.domain.billing.models import (
    BillingEvent,
    BillingEventStatus,
    BoxStatus,
    OverageBillingRecord,
    OverageStatus,
    SubscriptionStatus,
    SubscriptionTier,
)
from app.infrastructure.exceptions import NotFoundError, ValidationError


def subscription_created_event(box_id, clock, event_id="evt_created_1", sub_id="sub_new"):
    return {
        "type": "subscription.created",
        "id": event_id,
        "data": {
            "id": sub_id,
            "status": "active",
            "customer_id": "cus_new",
            "product_id": "prod_grow_monthly",
            "current_period_start": clock.now.isoformat(),
            "current_period_end": (clock.now + timedelta(days=30)).isoformat(),
        },
        "metadata": {"box_id": box_id, "source": "stripe"},
    }


class TestProcessEvent:
    """Tests for first delivery and duplicate deliveries."""

    @pytest.mark.asyncio
    async def test_subscription_created_is_processed(self, engine, store, clock, plans, make_box):
        box = make_box()

        result = await engine.webhooks.process_event(subscription_created_event(box.id, clock))

        assert result.accepted is True
        assert result.status == "processed"
        updated = await store.boxes.get(box.id)
        assert updated.subscription_status == SubscriptionStatus.ACTIVE
        assert updated.subscription_tier == SubscriptionTier.GROW
        assert updated.current_athlete_limit == 150

        record = await store.billing_events.get(result.billing_event_id)
        assert record.status == BillingEventStatus.PROCESSED
        assert record.processed_at == clock.now
        assert record.box_id == box.id

    @pytest.mark.asyncio
    async def test_duplicate_delivery_is_not_reapplied(self, engine, store, clock, plans, make_box):
        box = make_box()
        event = subscription_created_event(box.id, clock)

        first = await engine.webhooks.process_event(event)
        second = await engine.webhooks.process_event(event)

        assert second.status == "already_processed"
        assert second.already_processed is True
        assert second.billing_event_id == first.billing_event_id
        assert len(store.billing_events.rows) == 1
        assert store.usage_events.types_for(box.id).count("subscription_created") == 1

    @pytest.mark.asyncio
    async def test_deleting_replaced_subscription_keeps_box_active(
        self, engine, store, clock, plans, make_subscribed_box
    ):
        box, _ = make_subscribed_box(provider_subscription_id="sub_old")
        await engine.webhooks.process_event(subscription_created_event(box.id, clock))

        result = await engine.webhooks.process_event({
            "type": "subscription.revoked",
            "id": "evt_old_deleted",
            "data": {"id": "sub_old", "status": "canceled"},
        })

        assert result.status == "processed"
        updated = await store.boxes.get(box.id)
        assert updated.status == BoxStatus.ACTIVE
        assert updated.provider_subscription_id == "sub_new"

    @pytest.mark.asyncio
    async def test_unknown_event_type_is_acknowledged(self, engine, store):
        result = await engine.webhooks.process_event({
            "type": "customer.deleted",
            "id": "evt_unknown",
            "data": {"id": "cus_1"},
        })

        assert result.accepted is True
        assert result.status == "ignored"
        record = await store.billing_events.get(result.billing_event_id)
        assert record.status == BillingEventStatus.PROCESSED

    @pytest.mark.asyncio
    async def test_malformed_payload_raises_and_stores_nothing(self, engine, store):
        with pytest.raises(ValidationError):
            await engine.webhooks.process_event({
                "type": "subscription.created",
                "id": "evt_bad",
                "data": {"status": "active"},
            })

        assert store.billing_events.rows == {}

    @pytest.mark.asyncio
    async def test_missing_event_id_raises(self, engine):
        with pytest.raises(ValidationError):
            await engine.webhooks.process_event({"type": "invoice.paid", "data": {}})

    @pytest.mark.asyncio
    async def test_event_claimed_by_another_worker_is_in_progress(self, engine, store, clock):
        store.billing_events.add(BillingEvent(
            event_type="customer.deleted",
            provider_event_id="evt_busy",
            status=BillingEventStatus.PROCESSING,
            last_attempt_at=clock.now - timedelta(minutes=1),
        ))

        result = await engine.webhooks.process_event({
            "type": "customer.deleted", "id": "evt_busy", "data": {},
        })

        assert result.status == "in_progress"

    @pytest.mark.asyncio
    async def test_stale_processing_claim_is_taken_over(self, engine, store, clock):
        store.billing_events.add(BillingEvent(
            event_type="customer.deleted",
            provider_event_id="evt_stale",
            status=BillingEventStatus.PROCESSING,
            last_attempt_at=clock.now - timedelta(minutes=45),
        ))

        result = await engine.webhooks.process_event({
            "type": "customer.deleted", "id": "evt_stale", "data": {},
        })

        assert result.status == "ignored"

    @pytest.mark.asyncio
    async def test_overage_invoice_settles_record(self, engine, store, clock, make_subscribed_box):
        box, subscription = make_subscribed_box()
        record = store.overages.add(OverageBillingRecord(
            box_id=box.id,
            subscription_id=subscription.id,
            billing_period_start=subscription.current_period_start,
            billing_period_end=subscription.current_period_end,
            athlete_limit=75, coach_limit=3, athlete_count=80, coach_count=3,
            athlete_overage=5, athlete_overage_rate=100, coach_overage_rate=500,
            athlete_overage_amount=500, total_overage_amount=500,
        ))

        result = await engine.webhooks.process_event({
            "type": "invoice.paid",
            "id": "evt_invoice_1",
            "data": {
                "id": "in_overage_1",
                "subscription_id": "sub_123",
                "amount_paid": 500,
                "metadata": {"type": "overage", "overage_billing_id": record.id},
            },
        })

        assert result.status == "processed"
        settled = await store.overages.get(record.id)
        assert settled.status == OverageStatus.PAID
        assert settled.provider_invoice_id == "in_overage_1"
        assert "in_overage_1" in store.orders.rows


class TestRetries:
    """Tests for failure bookkeeping and exponential backoff."""

    @pytest.mark.asyncio
    async def test_handler_failure_schedules_retry(self, engine, store, clock):
        event = subscription_created_event("box_missing", clock, event_id="evt_fail")

        result = await engine.webhooks.process_event(event)

        assert result.accepted is True
        assert result.status == "failed"
        assert store.rollbacks == 1
        record = await store.billing_events.get(result.billing_event_id)
        assert record.status == BillingEventStatus.FAILED
        assert record.retry_count == 1
        assert record.next_retry_at == clock.now + timedelta(minutes=5)
        assert "No box" in record.processing_error

    @pytest.mark.asyncio
    async def test_backoff_doubles_until_exhausted(self, engine, store, clock):
        result = await engine.webhooks.process_event(
            subscription_created_event("box_missing", clock, event_id="evt_fail")
        )
        event_id = result.billing_event_id

        clock.advance(minutes=5)
        retried = await engine.webhooks.retry_due_events()
        assert [r.status for r in retried] == ["failed"]
        record = await store.billing_events.get(event_id)
        assert record.retry_count == 2
        assert record.next_retry_at == clock.now + timedelta(minutes=10)

        clock.advance(minutes=10)
        await engine.webhooks.retry_due_events()
        record = await store.billing_events.get(event_id)
        assert record.retry_count == 3
        assert record.next_retry_at is None
        assert await store.billing_events.count_terminal_failures() == 1

    @pytest.mark.asyncio
    async def test_retry_drain_skips_events_not_yet_due(self, engine, clock):
        await engine.webhooks.process_event(
            subscription_created_event("box_missing", clock, event_id="evt_fail")
        )

        clock.advance(minutes=4)
        assert await engine.webhooks.retry_due_events() == []

    @pytest.mark.asyncio
    async def test_redelivery_after_exhaustion_is_rejected(self, engine, store, clock):
        event = subscription_created_event("box_missing", clock, event_id="evt_fail")
        result = await engine.webhooks.process_event(event)
        await store.billing_events.update(result.billing_event_id, {
            "retry_count": 3,
            "next_retry_at": None,
        })

        redelivered = await engine.webhooks.process_event(event)

        assert redelivered.accepted is False
        assert redelivered.status == "failed"

    @pytest.mark.asyncio
    async def test_replay_runs_exhausted_event(self, engine, store, clock, plans, make_box):
        result = await engine.webhooks.process_event(
            subscription_created_event("box_late", clock, event_id="evt_fail")
        )
        await store.billing_events.update(result.billing_event_id, {
            "retry_count": 3,
            "next_retry_at": None,
        })
        make_box(id="box_late")

        replayed = await engine.webhooks.replay_event(result.billing_event_id)

        assert replayed.status == "processed"
        record = await store.billing_events.get(result.billing_event_id)
        assert record.status == BillingEventStatus.PROCESSED
        assert record.processing_error is None

    @pytest.mark.asyncio
    async def test_replay_of_processed_event_is_noop(self, engine, store, clock, plans, make_box):
        box = make_box()
        result = await engine.webhooks.process_event(subscription_created_event(box.id, clock))

        replayed = await engine.webhooks.replay_event(result.billing_event_id)

        assert replayed.status == "already_processed"

    @pytest.mark.asyncio
    async def test_replay_unknown_event_raises(self, engine):
        with pytest.raises(NotFoundError):
            await engine.webhooks.replay_event("does-not-exist")


class TestHealthCheck:

    @pytest.mark.asyncio
    async def test_healthy_when_nothing_stuck(self, engine):
        report = await engine.webhooks.health_check()

        assert report.healthy is True
        assert report.stuck_processing == 0

    @pytest.mark.asyncio
    async def test_reports_stuck_and_terminal_events(self, engine, store, clock):
        store.billing_events.add(BillingEvent(
            event_type="invoice.paid",
            provider_event_id="evt_stuck",
            status=BillingEventStatus.PROCESSING,
            last_attempt_at=clock.now - timedelta(hours=2),
        ))
        store.billing_events.add(BillingEvent(
            event_type="invoice.paid",
            provider_event_id="evt_dead",
            status=BillingEventStatus.FAILED,
            retry_count=3,
        ))

        report = await engine.webhooks.health_check()

        assert report.healthy is False
        assert report.stuck_processing == 1
        assert report.terminal_failures == 1
