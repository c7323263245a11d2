"""
Normalized Billing Events

Provider-neutral shape of an inbound billing event plus the typed payload
for each event kind. Provider adapters (Stripe, internal forwarders) build
these; the webhook processor consumes them.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple, Type, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from app.domain.billing.models import SubscriptionStatus
from app.infrastructure.exceptions import ValidationError


class BillingEventType(str, Enum):
    """Closed set of event kinds the engine reacts to."""
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_CANCELED = "subscription.canceled"
    SUBSCRIPTION_REVOKED = "subscription.revoked"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    CUSTOMER_UPDATED = "customer.updated"
    CHECKOUT_COMPLETED = "checkout.session.completed"

    @classmethod
    def parse(cls, value: str) -> Optional["BillingEventType"]:
        """Return the matching kind, or None for types we do not handle."""
        try:
            return cls(value)
        except ValueError:
            return None


# =============================================================================
# Typed Payloads
# =============================================================================

class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def box_id(self) -> Optional[str]:
        return self.metadata.get("box_id")


class SubscriptionPayload(_Payload):
    """Subscription state as reported by the provider."""
    id: str = Field(min_length=1)
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    customer_id: Optional[str] = None
    product_id: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    # Date the cancellation takes effect, when the provider sends one
    ends_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    amount: Optional[int] = None
    currency: str = "USD"

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()


class InvoicePayload(_Payload):
    id: str = Field(min_length=1)
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    status: Optional[str] = None
    amount_due: int = 0
    amount_paid: int = 0
    currency: str = "USD"
    billing_reason: Optional[str] = None
    paid_at: Optional[datetime] = None

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()

    @property
    def is_overage_invoice(self) -> bool:
        return self.metadata.get("type") == "overage"


class CustomerPayload(_Payload):
    id: str = Field(min_length=1)
    email: Optional[str] = None


class CheckoutPayload(_Payload):
    id: str = Field(min_length=1)
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None


EventPayload = Union[SubscriptionPayload, InvoicePayload, CustomerPayload, CheckoutPayload]

PAYLOAD_MODELS: Dict[BillingEventType, Type[_Payload]] = {
    BillingEventType.SUBSCRIPTION_CREATED: SubscriptionPayload,
    BillingEventType.SUBSCRIPTION_UPDATED: SubscriptionPayload,
    BillingEventType.SUBSCRIPTION_CANCELED: SubscriptionPayload,
    BillingEventType.SUBSCRIPTION_REVOKED: SubscriptionPayload,
    BillingEventType.INVOICE_PAID: InvoicePayload,
    BillingEventType.INVOICE_PAYMENT_FAILED: InvoicePayload,
    BillingEventType.CUSTOMER_UPDATED: CustomerPayload,
    BillingEventType.CHECKOUT_COMPLETED: CheckoutPayload,
}


# =============================================================================
# Envelope
# =============================================================================

class EventMetadata(BaseModel):
    model_config = ConfigDict(extra="allow")

    box_id: Optional[str] = None
    source: Optional[str] = None


class NormalizedBillingEvent(BaseModel):
    """`{type, id, data, metadata}` envelope; `id` is the idempotency key."""
    type: str = Field(min_length=1)
    id: str = Field(min_length=1)
    data: Dict[str, Any] = Field(default_factory=dict)
    metadata: EventMetadata = Field(default_factory=EventMetadata)

    @property
    def kind(self) -> Optional[BillingEventType]:
        return BillingEventType.parse(self.type)

    @property
    def body(self) -> Dict[str, Any]:
        """Provider payloads may nest the resource under `object`."""
        inner = self.data.get("object")
        if isinstance(inner, dict):
            return inner
        return self.data

    def payload(self) -> Optional[EventPayload]:
        kind = self.kind
        if kind is None:
            return None
        return PAYLOAD_MODELS[kind].model_validate(self.body)


def parse_billing_event(
    raw: Union[Dict[str, Any], NormalizedBillingEvent],
) -> Tuple[NormalizedBillingEvent, Optional[EventPayload]]:
    """
    Validate an inbound event and its payload.

    Raises:
        ValidationError: envelope or payload is malformed
    """
    try:
        event = (
            raw if isinstance(raw, NormalizedBillingEvent)
            else NormalizedBillingEvent.model_validate(raw)
        )
        return event, event.payload()
    except PydanticValidationError as e:
        raise ValidationError(
            "Malformed billing event",
            details={"errors": e.errors(include_url=False, include_context=False)},
            original_error=e,
        )
