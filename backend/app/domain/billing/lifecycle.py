"""
Subscription State Machine

Applies provider events and time-driven transitions to Subscription and
Box rows. Every writer (webhook handlers, the reconciliation sweep, the
access check's lazy correction) goes through these primitives.

Subscription writes are upserts keyed on provider_subscription_id, so
replaying an event converges to the same end state. Ordering between
different events is last-write-wins.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from app.domain.billing.events import (
    CheckoutPayload,
    CustomerPayload,
    InvoicePayload,
    SubscriptionPayload,
)
from app.domain.billing.grace_periods import GracePeriodManager
from app.domain.billing.interfaces import BillingStore
from app.domain.billing.models import (
    PRODUCT_ID_TO_TIER,
    TIER_ORDER,
    Box,
    BoxStatus,
    GracePeriodReason,
    Order,
    Subscription,
    SubscriptionPlan,
    SubscriptionStatus,
    SubscriptionTier,
    UsageEvent,
    UsageEventType,
    utc_now,
)
from app.infrastructure.exceptions import NotFoundError, ValidationError


logger = logging.getLogger(__name__)


ENTITLED_STATUSES = frozenset({
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.PAST_DUE,
})

DELINQUENT_STATUSES = frozenset({
    SubscriptionStatus.PAST_DUE,
    SubscriptionStatus.UNPAID,
})

TERMINAL_STATUSES = frozenset({
    SubscriptionStatus.CANCELED,
    SubscriptionStatus.REVOKED,
    SubscriptionStatus.INCOMPLETE_EXPIRED,
})


def derive_box_status(status: SubscriptionStatus, current: BoxStatus) -> BoxStatus:
    """Box status implied by a subscription status change."""
    if status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
        return BoxStatus.ACTIVE
    if status in DELINQUENT_STATUSES:
        return BoxStatus.PAYMENT_FAILED
    if status in TERMINAL_STATUSES:
        return BoxStatus.SUSPENDED
    return current


def _earliest(*values: Optional[datetime]) -> Optional[datetime]:
    present = [v for v in values if v is not None]
    return min(present) if present else None


class SubscriptionStateMachine:
    """Event-driven and time-driven transitions for one billing store."""

    def __init__(
        self,
        store: BillingStore,
        grace_periods: GracePeriodManager,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self._grace_periods = grace_periods
        self._clock = clock

    # =========================================================================
    # Subscription Events
    # =========================================================================

    async def apply_subscription_created(
        self,
        payload: SubscriptionPayload,
        box_id: Optional[str] = None,
    ) -> Subscription:
        box = await self._resolve_box(box_id, payload.id)
        tier = await self._resolve_tier(payload)
        if tier is None:
            raise NotFoundError(
                f"No plan for product {payload.product_id!r}",
                operation="subscription_created",
                table="subscription_plans",
            )

        now = self._clock()
        subscription = await self._upsert_subscription(box, payload, tier, payload.status)
        await self._supersede_other_active(box.id, subscription)

        changes: Dict[str, Any] = {
            "status": derive_box_status(payload.status, box.status),
            "subscription_status": payload.status,
            "subscription_tier": tier,
            "provider_subscription_id": payload.id,
            "subscription_starts_at": payload.current_period_start or now,
            "subscription_ends_at": payload.current_period_end,
            "next_billing_date": payload.current_period_end,
        }
        if payload.customer_id:
            changes["provider_customer_id"] = payload.customer_id
        changes.update(self._limit_changes(await self._store.plans.get_current(tier)))
        await self._store.boxes.update(box.id, changes)

        if payload.status in ENTITLED_STATUSES:
            await self._grace_periods.resolve_for_reasons(
                box.id,
                [GracePeriodReason.TRIAL_ENDING, GracePeriodReason.SUBSCRIPTION_CANCELED],
                "subscription_started",
            )

        await self._record(box.id, UsageEventType.SUBSCRIPTION_CREATED, {
            "provider_subscription_id": payload.id,
            "tier": tier.value,
            "status": payload.status.value,
        })
        logger.info(f"Subscription {payload.id} created for box {box.id} ({tier.value})")
        return subscription

    async def apply_subscription_updated(
        self,
        payload: SubscriptionPayload,
        box_id: Optional[str] = None,
    ) -> Subscription:
        box = await self._resolve_box(box_id, payload.id)
        existing = await self._store.subscriptions.get_by_provider_id(payload.id)
        tier = (
            await self._resolve_tier(payload)
            or (existing.plan_tier if existing else box.subscription_tier)
        )

        subscription = await self._upsert_subscription(box, payload, tier, payload.status)
        if payload.status == SubscriptionStatus.ACTIVE:
            await self._supersede_other_active(box.id, subscription)

        if self._is_superseded(box, payload.id) and payload.status not in ENTITLED_STATUSES:
            logger.info(
                f"Update for superseded subscription {payload.id} of box {box.id}; box untouched"
            )
            return subscription

        ends_at = payload.current_period_end
        if payload.cancel_at_period_end:
            ends_at = _earliest(payload.current_period_end, payload.ends_at)

        changes: Dict[str, Any] = {
            "provider_subscription_id": payload.id,
            "subscription_ends_at": ends_at,
            "next_billing_date": payload.current_period_end,
        }

        previous_status = existing.status if existing else box.subscription_status
        status_changed = previous_status != payload.status
        if status_changed:
            changes["subscription_status"] = payload.status
            changes["status"] = derive_box_status(payload.status, box.status)

        tier_changed = tier != box.subscription_tier
        if tier_changed:
            changes["subscription_tier"] = tier
            changes.update(self._limit_changes(await self._store.plans.get_current(tier)))

        await self._store.boxes.update(box.id, changes)

        if tier_changed:
            event_type = (
                UsageEventType.PLAN_UPGRADED
                if TIER_ORDER[tier] > TIER_ORDER[box.subscription_tier]
                else UsageEventType.PLAN_DOWNGRADED
            )
            await self._record(box.id, event_type, {
                "from_tier": box.subscription_tier.value,
                "to_tier": tier.value,
            })

        if status_changed:
            await self._apply_status_side_effects(box.id, previous_status, payload.status)

        logger.info(
            f"Subscription {payload.id} updated for box {box.id}: "
            f"status={payload.status.value}, tier={tier.value}"
        )
        return subscription

    async def apply_subscription_canceled(
        self,
        payload: SubscriptionPayload,
        box_id: Optional[str] = None,
    ) -> Subscription:
        box = await self._resolve_box(box_id, payload.id)
        existing = await self._store.subscriptions.get_by_provider_id(payload.id)
        tier = existing.plan_tier if existing else (
            await self._resolve_tier(payload) or box.subscription_tier
        )
        now = self._clock()

        if not payload.cancel_at_period_end:
            return await self._cancel_immediately(box, payload, tier)

        if existing and existing.status in TERMINAL_STATUSES:
            logger.info(f"Subscription {payload.id} already {existing.status.value}; "
                        f"ignoring scheduled cancellation")
            return existing

        status = payload.status if payload.status in ENTITLED_STATUSES else SubscriptionStatus.ACTIVE
        subscription = await self._upsert_subscription(
            box, payload, tier, status,
            cancel_at_period_end=True,
            canceled_at=payload.canceled_at or now,
        )
        if self._is_superseded(box, payload.id):
            return subscription

        ends_at = _earliest(
            payload.current_period_end or subscription.current_period_end,
            payload.ends_at,
        )
        await self._store.boxes.update(box.id, {"subscription_ends_at": ends_at})

        await self._record(box.id, UsageEventType.SUBSCRIPTION_CANCELED, {
            "provider_subscription_id": payload.id,
            "scheduled": True,
            "ends_at": ends_at.isoformat() if ends_at else None,
            "reason": payload.cancel_reason,
        })
        logger.info(f"Subscription {payload.id} of box {box.id} cancels at {ends_at}")
        return subscription

    async def apply_subscription_revoked(
        self,
        payload: SubscriptionPayload,
        box_id: Optional[str] = None,
    ) -> Subscription:
        box = await self._resolve_box(box_id, payload.id)
        existing = await self._store.subscriptions.get_by_provider_id(payload.id)
        tier = existing.plan_tier if existing else (
            await self._resolve_tier(payload) or box.subscription_tier
        )
        now = self._clock()

        subscription = await self._upsert_subscription(
            box, payload, tier, SubscriptionStatus.CANCELED,
            cancel_at_period_end=False,
            canceled_at=(existing.canceled_at if existing else None) or payload.canceled_at or now,
        )
        if self._is_superseded(box, payload.id):
            logger.info(f"Revoked superseded subscription {payload.id} of box {box.id}; box untouched")
            return subscription

        await self._store.boxes.update(box.id, {
            "status": BoxStatus.SUSPENDED,
            "subscription_status": SubscriptionStatus.CANCELED,
            "subscription_ends_at": _earliest(box.subscription_ends_at, now),
        })

        await self._record(box.id, UsageEventType.BOX_SUSPENDED, {
            "provider_subscription_id": payload.id,
            "cause": "subscription_revoked",
        })
        logger.warning(f"Subscription {payload.id} revoked; box {box.id} suspended")
        return subscription

    # =========================================================================
    # Invoice / Customer Events
    # =========================================================================

    async def apply_invoice_paid(
        self,
        payload: InvoicePayload,
        box_id: Optional[str] = None,
    ) -> Order:
        """Record the payment. Subscription and box state are left alone."""
        box = await self._resolve_box(box_id or payload.box_id, payload.subscription_id)
        order = await self._store.orders.upsert(Order(
            box_id=box.id,
            provider_order_id=payload.id,
            provider_subscription_id=payload.subscription_id,
            status="paid",
            amount=payload.amount_paid,
            currency=payload.currency,
            billing_reason=payload.billing_reason,
            paid_at=payload.paid_at or self._clock(),
        ))

        await self._record(box.id, UsageEventType.PAYMENT_RECEIVED, {
            "provider_order_id": payload.id,
            "amount": payload.amount_paid,
            "currency": payload.currency,
        })
        logger.info(f"Invoice {payload.id} paid for box {box.id}")
        return order

    async def apply_payment_failed(
        self,
        payload: InvoicePayload,
        box_id: Optional[str] = None,
    ) -> Box:
        box = await self._resolve_box(box_id or payload.box_id, payload.subscription_id)

        provider_subscription_id = payload.subscription_id or box.provider_subscription_id
        if provider_subscription_id:
            subscription = await self._store.subscriptions.get_by_provider_id(provider_subscription_id)
            if subscription and subscription.status not in TERMINAL_STATUSES:
                await self._store.subscriptions.update(subscription.id, {
                    "status": SubscriptionStatus.PAST_DUE,
                    "updated_at": self._clock(),
                })

        if self._is_superseded(box, payload.subscription_id):
            logger.info(
                f"Payment failed on superseded subscription {payload.subscription_id} "
                f"of box {box.id}; box untouched"
            )
            return box

        updated = await self._store.boxes.update(box.id, {
            "status": BoxStatus.PAYMENT_FAILED,
            "subscription_status": SubscriptionStatus.PAST_DUE,
        })

        await self._grace_periods.trigger(
            box.id,
            GracePeriodReason.PAYMENT_FAILED,
            context_snapshot={
                "invoice_id": payload.id,
                "amount_due": payload.amount_due,
                "currency": payload.currency,
            },
        )
        await self._record(box.id, UsageEventType.PAYMENT_FAILED, {
            "invoice_id": payload.id,
            "amount_due": payload.amount_due,
        })
        logger.warning(f"Payment failed for box {box.id} (invoice {payload.id})")
        return updated

    async def apply_customer_updated(
        self,
        payload: CustomerPayload,
        box_id: Optional[str] = None,
    ) -> Optional[Box]:
        """Sync the provider customer id onto the box, when the box is known."""
        box = await self._find_box(box_id or payload.box_id, None)
        if box is None:
            logger.info(f"Customer {payload.id} updated without a known box; nothing to sync")
            return None
        return await self._store.boxes.update(box.id, {"provider_customer_id": payload.id})

    async def apply_checkout_completed(
        self,
        payload: CheckoutPayload,
        box_id: Optional[str] = None,
    ) -> Optional[Box]:
        """Checkout only links the customer; subscription events carry the state."""
        box = await self._find_box(box_id or payload.box_id, payload.subscription_id)
        if box is None:
            logger.info(f"Checkout {payload.id} completed without a known box")
            return None
        if not payload.customer_id:
            return box
        return await self._store.boxes.update(box.id, {"provider_customer_id": payload.customer_id})

    # =========================================================================
    # Time-Driven Primitives
    # =========================================================================

    async def mark_trial_expired(self, box: Box) -> Box:
        if box.status == BoxStatus.TRIAL_EXPIRED:
            return box
        updated = await self._store.boxes.update(box.id, {"status": BoxStatus.TRIAL_EXPIRED})
        await self._record(box.id, UsageEventType.TRIAL_EXPIRED, {
            "trial_ends_at": box.trial_ends_at.isoformat() if box.trial_ends_at else None,
        })
        logger.info(f"Box {box.id} trial expired")
        return updated

    async def suspend_after_cancellation(self, box: Box) -> Box:
        if box.status == BoxStatus.SUSPENDED:
            return box
        updated = await self._store.boxes.update(box.id, {"status": BoxStatus.SUSPENDED})
        await self._record(box.id, UsageEventType.BOX_SUSPENDED, {
            "cause": "cancellation_period_ended",
            "subscription_ends_at": (
                box.subscription_ends_at.isoformat() if box.subscription_ends_at else None
            ),
        })
        logger.info(f"Box {box.id} suspended after canceled subscription ended")
        return updated

    # =========================================================================
    # Manual Operations
    # =========================================================================

    async def cancel_subscription(
        self,
        box_id: str,
        cancel_at_period_end: bool = True,
        reason: Optional[str] = None,
        canceled_by: Optional[str] = None,
    ) -> Subscription:
        """Operator-initiated cancellation, applied through the event path."""
        subscription = await self.require_current_subscription(box_id)
        payload = SubscriptionPayload(
            id=subscription.provider_subscription_id,
            status=subscription.status,
            customer_id=subscription.provider_customer_id,
            product_id=subscription.provider_product_id,
            current_period_start=subscription.current_period_start,
            current_period_end=subscription.current_period_end,
            cancel_at_period_end=cancel_at_period_end,
            canceled_at=self._clock(),
            cancel_reason=reason,
            amount=subscription.amount,
            currency=subscription.currency,
            metadata={"canceled_by": canceled_by} if canceled_by else {},
        )
        return await self.apply_subscription_canceled(payload, box_id)

    async def reactivate_subscription(
        self,
        box_id: str,
        reactivated_by: Optional[str] = None,
    ) -> Subscription:
        """
        Undo a scheduled cancellation.

        Raises:
            NotFoundError: box has no subscription
            ValidationError: subscription already ended
        """
        subscription = await self.require_current_subscription(box_id)
        if subscription.status in TERMINAL_STATUSES:
            raise ValidationError(
                f"Subscription {subscription.provider_subscription_id} is "
                f"{subscription.status.value} and cannot be reactivated",
                details={"box_id": box_id},
            )

        box = await self._store.boxes.get(box_id)
        updated = await self._store.subscriptions.update(subscription.id, {
            "cancel_at_period_end": False,
            "canceled_at": None,
            "cancel_reason": None,
            "updated_at": self._clock(),
        })
        await self._store.boxes.update(box_id, {
            "status": derive_box_status(subscription.status, box.status),
            "subscription_status": subscription.status,
            "subscription_ends_at": subscription.current_period_end,
        })

        await self._grace_periods.resolve_for_reasons(
            box_id,
            [GracePeriodReason.SUBSCRIPTION_CANCELED, GracePeriodReason.BILLING_ISSUE],
            "subscription_reactivated",
            resolved_by=reactivated_by,
        )
        await self._record(box_id, UsageEventType.SUBSCRIPTION_REACTIVATED, {
            "provider_subscription_id": subscription.provider_subscription_id,
        }, user_id=reactivated_by)
        logger.info(f"Subscription {subscription.provider_subscription_id} reactivated for box {box_id}")
        return updated

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _cancel_immediately(
        self,
        box: Box,
        payload: SubscriptionPayload,
        tier: SubscriptionTier,
    ) -> Subscription:
        now = self._clock()
        subscription = await self._upsert_subscription(
            box, payload, tier, SubscriptionStatus.CANCELED,
            cancel_at_period_end=False,
            canceled_at=payload.canceled_at or now,
        )
        if self._is_superseded(box, payload.id):
            logger.info(f"Canceled superseded subscription {payload.id} of box {box.id}; box untouched")
            return subscription

        await self._store.boxes.update(box.id, {
            "status": BoxStatus.SUSPENDED,
            "subscription_status": SubscriptionStatus.CANCELED,
            "subscription_ends_at": _earliest(box.subscription_ends_at, payload.ends_at, now),
        })

        await self._grace_periods.trigger(
            box.id,
            GracePeriodReason.SUBSCRIPTION_CANCELED,
            context_snapshot={
                "provider_subscription_id": payload.id,
                "reason": payload.cancel_reason,
            },
        )
        await self._record(box.id, UsageEventType.SUBSCRIPTION_CANCELED, {
            "provider_subscription_id": payload.id,
            "scheduled": False,
            "reason": payload.cancel_reason,
        })
        logger.warning(f"Subscription {payload.id} canceled immediately; box {box.id} suspended")
        return subscription

    async def _apply_status_side_effects(
        self,
        box_id: str,
        previous: Optional[SubscriptionStatus],
        current: SubscriptionStatus,
    ) -> None:
        if current in DELINQUENT_STATUSES:
            await self._grace_periods.trigger(
                box_id,
                GracePeriodReason.PAYMENT_FAILED,
                context_snapshot={"subscription_status": current.value},
            )
        elif current == SubscriptionStatus.ACTIVE and previous in DELINQUENT_STATUSES:
            await self._grace_periods.resolve_for_reasons(
                box_id,
                [GracePeriodReason.PAYMENT_FAILED, GracePeriodReason.BILLING_ISSUE],
                "payment_recovered",
            )

    def _is_superseded(self, box: Box, provider_subscription_id: Optional[str]) -> bool:
        """Box status follows only the box's current subscription."""
        return bool(provider_subscription_id) \
            and box.provider_subscription_id not in (None, provider_subscription_id)

    async def _find_box(
        self,
        box_id: Optional[str],
        provider_subscription_id: Optional[str],
    ) -> Optional[Box]:
        if box_id:
            box = await self._store.boxes.get(box_id)
            if box:
                return box
        if provider_subscription_id:
            subscription = await self._store.subscriptions.get_by_provider_id(provider_subscription_id)
            if subscription:
                return await self._store.boxes.get(subscription.box_id)
        return None

    async def _resolve_box(
        self,
        box_id: Optional[str],
        provider_subscription_id: Optional[str],
    ) -> Box:
        box = await self._find_box(box_id, provider_subscription_id)
        if box is None:
            raise NotFoundError(
                f"No box for event (box_id={box_id}, subscription={provider_subscription_id})",
                operation="resolve_box",
                table="boxes",
            )
        return box

    async def _resolve_tier(self, payload: SubscriptionPayload) -> Optional[SubscriptionTier]:
        if payload.product_id:
            plan = await self._store.plans.get_by_product_id(payload.product_id)
            if plan:
                return plan.tier
            if payload.product_id in PRODUCT_ID_TO_TIER:
                return PRODUCT_ID_TO_TIER[payload.product_id]

        tier_value = payload.metadata.get("tier")
        if tier_value in {t.value for t in SubscriptionTier}:
            return SubscriptionTier(tier_value)
        return None

    async def require_current_subscription(self, box_id: str) -> Subscription:
        """The subscription the box points at; NotFoundError when there is none."""
        box = await self._store.boxes.get(box_id)
        if box is None:
            raise NotFoundError(f"Box {box_id} not found", operation="lookup", table="boxes")

        subscription = None
        if box.provider_subscription_id:
            subscription = await self._store.subscriptions.get_by_provider_id(
                box.provider_subscription_id
            )
        if subscription is None:
            raise NotFoundError(
                f"Box {box_id} has no subscription",
                operation="lookup",
                table="subscriptions",
            )
        return subscription

    async def _upsert_subscription(
        self,
        box: Box,
        payload: SubscriptionPayload,
        tier: SubscriptionTier,
        status: SubscriptionStatus,
        **overrides: Any,
    ) -> Subscription:
        existing = await self._store.subscriptions.get_by_provider_id(payload.id)
        now = self._clock()

        subscription = Subscription(
            box_id=box.id,
            provider_subscription_id=payload.id,
            provider_customer_id=payload.customer_id or (existing.provider_customer_id if existing else None),
            provider_product_id=payload.product_id or (existing.provider_product_id if existing else None),
            plan_tier=tier,
            status=status,
            current_period_start=payload.current_period_start or (existing.current_period_start if existing else None),
            current_period_end=payload.current_period_end or (existing.current_period_end if existing else None),
            cancel_at_period_end=payload.cancel_at_period_end,
            canceled_at=payload.canceled_at or (existing.canceled_at if existing else None),
            cancel_reason=payload.cancel_reason or (existing.cancel_reason if existing else None),
            amount=payload.amount if payload.amount is not None else (existing.amount if existing else None),
            currency=payload.currency,
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        if existing:
            subscription = subscription.model_copy(update={"id": existing.id})
        if overrides:
            subscription = subscription.model_copy(update=overrides)

        return await self._store.subscriptions.upsert(subscription)

    async def _supersede_other_active(self, box_id: str, keep: Subscription) -> None:
        """A box holds at most one active subscription; the newest one wins."""
        for other in await self._store.subscriptions.list_for_box(box_id):
            if other.id == keep.id or other.status != SubscriptionStatus.ACTIVE:
                continue
            await self._store.subscriptions.update(other.id, {
                "status": SubscriptionStatus.CANCELED,
                "canceled_at": self._clock(),
                "cancel_reason": "superseded",
            })
            logger.warning(
                f"Subscription {other.provider_subscription_id} superseded by "
                f"{keep.provider_subscription_id} for box {box_id}"
            )

    def _limit_changes(self, plan: Optional[SubscriptionPlan]) -> Dict[str, Any]:
        if plan is None:
            return {}
        return {
            "current_athlete_limit": plan.athlete_limit,
            "current_coach_limit": plan.coach_limit,
        }

    async def _record(
        self,
        box_id: str,
        event_type: UsageEventType,
        metadata: Dict[str, Any],
        user_id: Optional[str] = None,
    ) -> None:
        await self._store.usage_events.append(UsageEvent(
            box_id=box_id,
            event_type=event_type,
            user_id=user_id,
            event_metadata=metadata,
            created_at=self._clock(),
        ))
