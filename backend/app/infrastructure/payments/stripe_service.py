"""
Stripe Payment Service

Infrastructure adapter between Stripe and the billing engine:
- Verifies webhook signatures
- Normalizes Stripe events into the provider-neutral billing envelope
- Issues the few subscription commands operators trigger (cancel, resume)
"""

import asyncio
import json
import logging
from typing import Any, Callable, Dict, Optional

import stripe
from stripe import StripeError

from app.config.settings import get_settings
from app.domain.billing.events import BillingEventType, NormalizedBillingEvent
from app.infrastructure.exceptions import ExternalServiceError


logger = logging.getLogger(__name__)


class StripeServiceError(ExternalServiceError):
    """Base exception for Stripe service errors."""

    def __init__(self, message: str, operation: Optional[str] = None, original_error: Optional[Exception] = None):
        super().__init__(message, provider="stripe", operation=operation, original_error=original_error)


# Stripe event type -> engine event type. customer.subscription.updated is
# special-cased in normalize_event.
STRIPE_EVENT_MAP: Dict[str, BillingEventType] = {
    "customer.subscription.created": BillingEventType.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": BillingEventType.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": BillingEventType.SUBSCRIPTION_REVOKED,
    "invoice.paid": BillingEventType.INVOICE_PAID,
    "invoice.payment_succeeded": BillingEventType.INVOICE_PAID,
    "invoice.payment_failed": BillingEventType.INVOICE_PAYMENT_FAILED,
    "customer.updated": BillingEventType.CUSTOMER_UPDATED,
    "checkout.session.completed": BillingEventType.CHECKOUT_COMPLETED,
}


def _first_item(obj: Dict[str, Any]) -> Dict[str, Any]:
    items = (obj.get("items") or {}).get("data") or []
    return items[0] if items else {}


def _id_of(value: Any) -> Optional[str]:
    """Stripe fields are either an id string or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value


def _flatten_subscription(obj: Dict[str, Any]) -> Dict[str, Any]:
    item = _first_item(obj)
    price = item.get("price") or {}
    cancellation = obj.get("cancellation_details") or {}

    return {
        "id": obj.get("id"),
        "status": obj.get("status"),
        "customer_id": _id_of(obj.get("customer")),
        "product_id": _id_of(price.get("product")),
        # Newer API versions report the period on the item
        "current_period_start": obj.get("current_period_start") or item.get("current_period_start"),
        "current_period_end": obj.get("current_period_end") or item.get("current_period_end"),
        "cancel_at_period_end": bool(obj.get("cancel_at_period_end")),
        "canceled_at": obj.get("canceled_at"),
        "ends_at": obj.get("cancel_at") or obj.get("ended_at"),
        "cancel_reason": cancellation.get("reason") or cancellation.get("feedback"),
        "amount": price.get("unit_amount"),
        "currency": price.get("currency") or obj.get("currency") or "usd",
        "metadata": obj.get("metadata") or {},
    }


def _flatten_invoice(obj: Dict[str, Any]) -> Dict[str, Any]:
    subscription_id = _id_of(obj.get("subscription"))
    if not subscription_id:
        parent = obj.get("parent") or {}
        subscription_id = _id_of((parent.get("subscription_details") or {}).get("subscription"))

    transitions = obj.get("status_transitions") or {}
    return {
        "id": obj.get("id"),
        "subscription_id": subscription_id,
        "customer_id": _id_of(obj.get("customer")),
        "status": obj.get("status"),
        "amount_due": obj.get("amount_due") or 0,
        "amount_paid": obj.get("amount_paid") or 0,
        "currency": obj.get("currency") or "usd",
        "billing_reason": obj.get("billing_reason"),
        "paid_at": transitions.get("paid_at"),
        "metadata": obj.get("metadata") or {},
    }


def _flatten_customer(obj: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": obj.get("id"),
        "email": obj.get("email"),
        "metadata": obj.get("metadata") or {},
    }


def _flatten_checkout(obj: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": obj.get("id"),
        "customer_id": _id_of(obj.get("customer")),
        "subscription_id": _id_of(obj.get("subscription")),
        "metadata": obj.get("metadata") or {},
    }


FLATTENERS: Dict[BillingEventType, Callable[[Dict[str, Any]], Dict[str, Any]]] = {
    BillingEventType.SUBSCRIPTION_CREATED: _flatten_subscription,
    BillingEventType.SUBSCRIPTION_UPDATED: _flatten_subscription,
    BillingEventType.SUBSCRIPTION_CANCELED: _flatten_subscription,
    BillingEventType.SUBSCRIPTION_REVOKED: _flatten_subscription,
    BillingEventType.INVOICE_PAID: _flatten_invoice,
    BillingEventType.INVOICE_PAYMENT_FAILED: _flatten_invoice,
    BillingEventType.CUSTOMER_UPDATED: _flatten_customer,
    BillingEventType.CHECKOUT_COMPLETED: _flatten_checkout,
}


def normalize_event(stripe_event: Dict[str, Any]) -> NormalizedBillingEvent:
    """
    Convert a Stripe event into the engine's `{type, id, data, metadata}`
    envelope.

    Unknown Stripe types pass through under their own name so the processor
    can record and ignore them.
    """
    stripe_type = stripe_event.get("type") or ""
    data = stripe_event.get("data") or {}
    obj = data.get("object") or {}

    kind = STRIPE_EVENT_MAP.get(stripe_type)

    # A scheduled cancellation arrives as an update that flips
    # cancel_at_period_end on.
    if kind == BillingEventType.SUBSCRIPTION_UPDATED:
        previous = data.get("previous_attributes") or {}
        if obj.get("cancel_at_period_end") and previous.get("cancel_at_period_end") is False:
            kind = BillingEventType.SUBSCRIPTION_CANCELED

    if kind is None:
        body = obj
        event_type = stripe_type
    else:
        body = FLATTENERS[kind](obj)
        event_type = kind.value

    metadata = obj.get("metadata") or {}
    return NormalizedBillingEvent(
        type=event_type or "unknown",
        id=stripe_event.get("id") or "",
        data=body,
        metadata={"box_id": metadata.get("box_id"), "source": "stripe"},
    )


class StripeService:
    """
    Stripe payment processing service.

    Stripe's client is synchronous; calls run in a worker thread with a
    hard timeout so a slow provider cannot hold a request open.
    """

    def __init__(self):
        """Initialize Stripe with API key from settings."""
        settings = get_settings()
        self._api_key = settings.stripe_secret_key
        self._webhook_secret = settings.stripe_webhook_secret
        self._timeout = settings.stripe_timeout_seconds

        if self._api_key:
            stripe.api_key = self._api_key
        stripe.max_network_retries = settings.stripe_max_network_retries

    async def _call(self, operation: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
        if not self._api_key:
            raise StripeServiceError("STRIPE_SECRET_KEY is not configured", operation=operation)
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(fn, *args, **kwargs),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"Stripe {operation} timed out after {self._timeout}s")
            raise StripeServiceError(f"Stripe {operation} timed out", operation=operation, original_error=e)
        except StripeError as e:
            logger.error(f"Stripe {operation} failed: {e}")
            raise StripeServiceError(
                f"Failed to {operation}: {e.user_message or e}",
                operation=operation,
                original_error=e,
            )

    # =========================================================================
    # Subscription Commands
    # =========================================================================

    async def cancel_subscription(
        self,
        subscription_id: str,
        cancel_at_period_end: bool = True,
    ) -> Dict[str, Any]:
        """
        Cancel a subscription.

        Args:
            subscription_id: Stripe subscription ID
            cancel_at_period_end: If True, cancel at end of billing period

        Returns:
            The updated subscription as a dict
        """
        if cancel_at_period_end:
            subscription = await self._call(
                "cancel subscription",
                stripe.Subscription.modify,
                subscription_id,
                cancel_at_period_end=True,
            )
        else:
            subscription = await self._call(
                "cancel subscription",
                stripe.Subscription.cancel,
                subscription_id,
            )

        logger.info(
            f"Cancelled subscription {subscription_id}, "
            f"at_period_end={cancel_at_period_end}"
        )
        return subscription

    async def resume_subscription(self, subscription_id: str) -> Dict[str, Any]:
        """Undo a scheduled cancellation."""
        subscription = await self._call(
            "resume subscription",
            stripe.Subscription.modify,
            subscription_id,
            cancel_at_period_end=False,
        )
        logger.info(f"Resumed subscription {subscription_id}")
        return subscription

    # =========================================================================
    # Webhook Verification
    # =========================================================================

    def verify_webhook_signature(
        self,
        payload: bytes,
        signature: str,
    ) -> Dict[str, Any]:
        """
        Verify webhook signature and decode the event.

        Args:
            payload: Raw request body
            signature: Stripe-Signature header

        Returns:
            The event as a plain dict

        Raises:
            StripeServiceError if the secret is missing or the signature invalid
        """
        if not self._webhook_secret:
            raise StripeServiceError("STRIPE_WEBHOOK_SECRET is not configured", operation="verify webhook")

        try:
            stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
        except ValueError as e:
            raise StripeServiceError(f"Invalid payload: {e}", operation="verify webhook")
        except stripe.SignatureVerificationError as e:
            raise StripeServiceError(f"Invalid signature: {e}", operation="verify webhook")

        return json.loads(payload)

    def parse_webhook(self, payload: bytes, signature: str) -> NormalizedBillingEvent:
        """Verify a Stripe webhook and normalize it for the engine."""
        return normalize_event(self.verify_webhook_signature(payload, signature))


# =============================================================================
# Singleton Instance (Dependency Injection Ready)
# =============================================================================

_stripe_service_instance: Optional[StripeService] = None


def get_stripe_service() -> StripeService:
    """Get or create Stripe service singleton."""
    global _stripe_service_instance

    if _stripe_service_instance is None:
        _stripe_service_instance = StripeService()

    return _stripe_service_instance
