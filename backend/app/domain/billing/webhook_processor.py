"""
Webhook Event Processor

Validates, stores, deduplicates and dispatches normalized billing events,
and owns the retry bookkeeping for failed ones.

The store's unique key on provider_event_id makes duplicate deliveries
safe even when they race. Handler work is rolled back on failure; the
failure itself is committed with its backoff schedule.
"""

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from pydantic import BaseModel

from app.domain.billing.events import (
    BillingEventType,
    EventPayload,
    NormalizedBillingEvent,
    parse_billing_event,
)
from app.domain.billing.grace_periods import is_grace_period_active
from app.domain.billing.interfaces import BillingStore
from app.domain.billing.lifecycle import SubscriptionStateMachine
from app.domain.billing.models import (
    BillingEvent,
    BillingEventStatus,
    ProcessEventResult,
    utc_now,
)
from app.domain.billing.policy import BillingPolicy
from app.domain.billing.usage import UsageCalculator
from app.infrastructure.exceptions import (
    ConfigurationError,
    ConflictError,
    FatalProcessingError,
    NotFoundError,
    ValidationError,
)


logger = logging.getLogger(__name__)


Handler = Callable[[NormalizedBillingEvent, EventPayload], Awaitable[Any]]


class BillingHealthReport(BaseModel):
    stuck_processing: int
    terminal_failures: int
    overdue_grace_periods: int

    @property
    def healthy(self) -> bool:
        return self.stuck_processing == 0 and self.terminal_failures == 0


class WebhookEventProcessor:

    def __init__(
        self,
        store: BillingStore,
        state_machine: SubscriptionStateMachine,
        usage: UsageCalculator,
        policy: BillingPolicy = BillingPolicy(),
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self._state_machine = state_machine
        self._usage = usage
        self._policy = policy
        self._clock = clock

        self._handlers: Dict[BillingEventType, Handler] = {
            BillingEventType.SUBSCRIPTION_CREATED: self._on_subscription_created,
            BillingEventType.SUBSCRIPTION_UPDATED: self._on_subscription_updated,
            BillingEventType.SUBSCRIPTION_CANCELED: self._on_subscription_canceled,
            BillingEventType.SUBSCRIPTION_REVOKED: self._on_subscription_revoked,
            BillingEventType.INVOICE_PAID: self._on_invoice_paid,
            BillingEventType.INVOICE_PAYMENT_FAILED: self._on_payment_failed,
            BillingEventType.CUSTOMER_UPDATED: self._on_customer_updated,
            BillingEventType.CHECKOUT_COMPLETED: self._on_checkout_completed,
        }
        missing = [kind.value for kind in BillingEventType if kind not in self._handlers]
        if missing:
            raise ConfigurationError("Billing event types without a handler", missing_keys=missing)

    # =========================================================================
    # Entry Points
    # =========================================================================

    async def process_event(
        self,
        raw_event: Union[Dict[str, Any], NormalizedBillingEvent],
    ) -> ProcessEventResult:
        """
        Process one inbound event.

        Raises:
            ValidationError: malformed event; nothing is stored
        """
        event, payload = parse_billing_event(raw_event)
        now = self._clock()

        record, created = await self._store.billing_events.insert_if_absent(BillingEvent(
            box_id=event.metadata.box_id or (payload.box_id if payload else None),
            event_type=event.type,
            provider_event_id=event.id,
            data=event.data,
            source=event.metadata.source,
            max_retries=self._policy.max_retries,
            created_at=now,
        ))
        await self._store.commit()

        try:
            self._ensure_not_processed(record)
        except ConflictError as e:
            logger.info(f"{e.message}, skipping")
            return self._already_processed(record)

        if not created:
            if record.status == BillingEventStatus.PROCESSING and record.last_attempt_at \
                    and now - record.last_attempt_at < self._policy.processing_stale_after:
                logger.info(f"Event {event.id} is being processed by another worker")
                return ProcessEventResult(
                    accepted=True, status="in_progress", billing_event_id=record.id,
                )
            if record.status == BillingEventStatus.FAILED and record.retries_exhausted:
                logger.error(f"Event {event.id} redelivered after exhausting retries; replay required")
                return ProcessEventResult(
                    accepted=False,
                    status="failed",
                    billing_event_id=record.id,
                    error=record.processing_error,
                )

        return await self._run(record, event, payload)

    async def retry_due_events(self, limit: Optional[int] = None) -> List[ProcessEventResult]:
        """Drain: re-run failed events whose next_retry_at has passed."""
        due = await self._store.billing_events.list_due_for_retry(
            self._clock(), limit or self._policy.retry_batch_size
        )
        results = []
        for record in due:
            results.append(await self._rerun(record))

        logger.info(f"Retried {len(results)} billing events")
        return results

    async def replay_event(self, billing_event_id: str) -> ProcessEventResult:
        """
        Operator replay, including events that exhausted their retries.

        Raises:
            NotFoundError: unknown billing event id
        """
        record = await self._store.billing_events.get(billing_event_id)
        if record is None:
            raise NotFoundError(
                f"Billing event {billing_event_id} not found",
                operation="replay",
                table="billing_events",
            )
        try:
            self._ensure_not_processed(record)
        except ConflictError:
            return self._already_processed(record)

        record = await self._store.billing_events.update(record.id, {
            "retry_count": 0,
            "next_retry_at": None,
        })
        await self._store.commit()
        logger.info(f"Replaying billing event {record.provider_event_id}")
        return await self._rerun(record)

    async def health_check(self) -> BillingHealthReport:
        now = self._clock()
        stuck = await self._store.billing_events.count_stuck_processing(
            now - self._policy.processing_stale_after
        )
        terminal = await self._store.billing_events.count_terminal_failures()
        overdue = [
            gp for gp in await self._store.grace_periods.list_unresolved()
            if not is_grace_period_active(gp, now)
        ]

        report = BillingHealthReport(
            stuck_processing=stuck,
            terminal_failures=terminal,
            overdue_grace_periods=len(overdue),
        )
        if not report.healthy:
            logger.warning(
                f"Billing health: {stuck} events stuck processing, {terminal} terminal failures"
            )
        return report

    # =========================================================================
    # Processing
    # =========================================================================

    def _ensure_not_processed(self, record: BillingEvent) -> None:
        if record.status == BillingEventStatus.PROCESSED:
            raise ConflictError(
                f"Event {record.provider_event_id} already processed",
                resource_id=record.id,
            )

    def _already_processed(self, record: BillingEvent) -> ProcessEventResult:
        return ProcessEventResult(
            accepted=True,
            already_processed=True,
            status="already_processed",
            billing_event_id=record.id,
        )

    async def _rerun(self, record: BillingEvent) -> ProcessEventResult:
        try:
            event, payload = parse_billing_event({
                "type": record.event_type,
                "id": record.provider_event_id,
                "data": record.data,
                "metadata": {"box_id": record.box_id, "source": record.source},
            })
        except ValidationError as e:
            await self._store.billing_events.update(record.id, {
                "status": BillingEventStatus.FAILED,
                "next_retry_at": None,
                "processing_error": e.message,
            })
            await self._store.commit()
            logger.error(f"Stored event {record.provider_event_id} no longer parses: {e.message}")
            return ProcessEventResult(
                accepted=False, status="failed", billing_event_id=record.id, error=e.message,
            )
        return await self._run(record, event, payload)

    async def _run(
        self,
        record: BillingEvent,
        event: NormalizedBillingEvent,
        payload: Optional[EventPayload],
    ) -> ProcessEventResult:
        now = self._clock()
        record = await self._store.billing_events.update(record.id, {
            "status": BillingEventStatus.PROCESSING,
            "last_attempt_at": now,
        })
        await self._store.commit()

        kind = event.kind
        try:
            if kind is None:
                logger.info(f"Acknowledging unhandled billing event type {event.type} ({event.id})")
            else:
                logger.info(f"Processing billing event: {event.type} ({event.id})")
                await self._handlers[kind](event, payload)
        except Exception as e:
            await self._store.rollback()
            return await self._record_failure(record, e)

        await self._store.billing_events.update(record.id, {
            "status": BillingEventStatus.PROCESSED,
            "processed_at": self._clock(),
            "processing_error": None,
            "next_retry_at": None,
        })
        await self._store.commit()

        return ProcessEventResult(
            accepted=True,
            status="processed" if kind else "ignored",
            billing_event_id=record.id,
        )

    async def _record_failure(self, record: BillingEvent, error: Exception) -> ProcessEventResult:
        now = self._clock()
        retry_count = record.retry_count + 1
        exhausted = retry_count >= record.max_retries
        next_retry_at = None if exhausted else now + self._policy.retry_delay(record.retry_count)

        await self._store.billing_events.update(record.id, {
            "status": BillingEventStatus.FAILED,
            "retry_count": retry_count,
            "next_retry_at": next_retry_at,
            "processing_error": str(error)[:1000],
        })
        await self._store.commit()

        if exhausted:
            fatal = FatalProcessingError(
                f"Billing event {record.provider_event_id} failed {retry_count} times",
                provider_event_id=record.provider_event_id,
                retry_count=retry_count,
                original_error=error,
            )
            logger.error(f"{fatal.message}, manual intervention required: {error}")
        else:
            logger.warning(
                f"Billing event {record.provider_event_id} failed "
                f"(attempt {retry_count}/{record.max_retries}), retry at {next_retry_at}: {error}"
            )

        return ProcessEventResult(
            accepted=True,
            status="failed",
            billing_event_id=record.id,
            error=str(error),
        )

    # =========================================================================
    # Handlers
    # =========================================================================

    async def _on_subscription_created(self, event, payload):
        await self._state_machine.apply_subscription_created(payload, event.metadata.box_id)

    async def _on_subscription_updated(self, event, payload):
        await self._state_machine.apply_subscription_updated(payload, event.metadata.box_id)

    async def _on_subscription_canceled(self, event, payload):
        await self._state_machine.apply_subscription_canceled(payload, event.metadata.box_id)

    async def _on_subscription_revoked(self, event, payload):
        await self._state_machine.apply_subscription_revoked(payload, event.metadata.box_id)

    async def _on_invoice_paid(self, event, payload):
        await self._state_machine.apply_invoice_paid(payload, event.metadata.box_id)
        await self._usage.settle_overage_invoice(payload)

    async def _on_payment_failed(self, event, payload):
        await self._state_machine.apply_payment_failed(payload, event.metadata.box_id)

    async def _on_customer_updated(self, event, payload):
        await self._state_machine.apply_customer_updated(payload, event.metadata.box_id)

    async def _on_checkout_completed(self, event, payload):
        await self._state_machine.apply_checkout_completed(payload, event.metadata.box_id)
