"""
Billing Domain Models

Enums, entities and result types for the box subscription bounded context.
Entities are immutable snapshots; repositories return fresh copies on update.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    """Default clock for the billing engine."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


# =============================================================================
# Enums
# =============================================================================

class SubscriptionTier(str, Enum):
    """Plan tiers sold to boxes."""
    SEED = "seed"
    GROW = "grow"
    SCALE = "scale"


class SubscriptionStatus(str, Enum):
    """
    Subscription lifecycle status.

    TRIAL is the box-level status before any provider subscription exists;
    the remaining values mirror provider subscription states.
    """
    TRIAL = "trial"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELED = "canceled"
    REVOKED = "revoked"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    PAUSED = "paused"


class BoxStatus(str, Enum):
    """Derived box status, written only by engine primitives."""
    ACTIVE = "active"
    SUSPENDED = "suspended"
    TRIAL_EXPIRED = "trial_expired"
    PAYMENT_FAILED = "payment_failed"


class GracePeriodReason(str, Enum):
    ATHLETE_LIMIT_EXCEEDED = "athlete_limit_exceeded"
    COACH_LIMIT_EXCEEDED = "coach_limit_exceeded"
    TRIAL_ENDING = "trial_ending"
    PAYMENT_FAILED = "payment_failed"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    BILLING_ISSUE = "billing_issue"


class GraceSeverity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"
    BLOCKING = "blocking"


class BillingEventStatus(str, Enum):
    """Processing status of a stored provider event."""
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"


class OverageStatus(str, Enum):
    CALCULATED = "calculated"
    INVOICED = "invoiced"
    PAID = "paid"
    FAILED = "failed"
    WAIVED = "waived"


class MembershipRole(str, Enum):
    OWNER = "owner"
    HEAD_COACH = "head_coach"
    COACH = "coach"
    ATHLETE = "athlete"


class UsageEventType(str, Enum):
    """Audit trail event types (append-only usage log)."""
    ATHLETE_ADDED = "athlete_added"
    ATHLETE_REMOVED = "athlete_removed"
    COACH_ADDED = "coach_added"
    COACH_REMOVED = "coach_removed"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    SUBSCRIPTION_REACTIVATED = "subscription_reactivated"
    GRACE_PERIOD_TRIGGERED = "grace_period_triggered"
    GRACE_PERIOD_RESOLVED = "grace_period_resolved"
    PLAN_UPGRADED = "plan_upgraded"
    PLAN_DOWNGRADED = "plan_downgraded"
    OVERAGE_BILLED = "overage_billed"
    OVERAGE_ENABLED = "overage_enabled"
    OVERAGE_DISABLED = "overage_disabled"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_RECEIVED = "payment_received"
    TRIAL_EXPIRED = "trial_expired"
    BOX_SUSPENDED = "box_suspended"


TIER_ORDER = {
    SubscriptionTier.SEED: 1,
    SubscriptionTier.GROW: 2,
    SubscriptionTier.SCALE: 3,
}


# =============================================================================
# Domain Entities
# =============================================================================

class Box(BaseModel):
    """A tenant gym and its billing projection."""
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=new_id)
    name: str = ""
    status: BoxStatus = BoxStatus.ACTIVE
    subscription_status: Optional[SubscriptionStatus] = SubscriptionStatus.TRIAL
    subscription_tier: SubscriptionTier = SubscriptionTier.SEED
    trial_ends_at: Optional[datetime] = None
    subscription_starts_at: Optional[datetime] = None
    subscription_ends_at: Optional[datetime] = None
    next_billing_date: Optional[datetime] = None
    provider_subscription_id: Optional[str] = None
    provider_customer_id: Optional[str] = None
    is_overage_enabled: bool = False
    current_athlete_count: int = 0
    current_athlete_limit: int = 75
    current_coach_count: int = 0
    current_coach_limit: int = 3
    current_athlete_overage: int = 0
    current_coach_overage: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SubscriptionPlan(BaseModel):
    """A priced tier. Prices are minor currency units."""
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=new_id)
    tier: SubscriptionTier
    name: str = ""
    athlete_limit: int
    coach_limit: int
    athlete_overage_price: Optional[int] = None
    coach_overage_price: Optional[int] = None
    monthly_price: int = 0
    version: int = 1
    is_current_version: bool = True
    provider_product_id: Optional[str] = None


class Subscription(BaseModel):
    """One provider subscription for a box."""
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=new_id)
    box_id: str
    provider_subscription_id: str
    provider_customer_id: Optional[str] = None
    provider_product_id: Optional[str] = None
    plan_tier: SubscriptionTier = SubscriptionTier.SEED
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    amount: Optional[int] = None
    currency: str = "USD"
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class GracePeriod(BaseModel):
    """A temporary access-preserving exception for a box."""
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=new_id)
    box_id: str
    reason: GracePeriodReason
    severity: GraceSeverity
    ends_at: datetime
    resolved: bool = False
    resolved_at: Optional[datetime] = None
    resolution: Optional[str] = None
    resolved_by_user_id: Optional[str] = None
    auto_resolve: bool = False
    auto_resolved: bool = False
    custom_message: Optional[str] = None
    context_snapshot: Dict[str, Any] = Field(default_factory=dict)
    created_at: Optional[datetime] = None


class OverageBillingRecord(BaseModel):
    """A computed overage charge for one billing period."""
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=new_id)
    box_id: str
    subscription_id: str
    billing_period_start: datetime
    billing_period_end: datetime
    athlete_limit: int
    coach_limit: int
    athlete_count: int
    coach_count: int
    athlete_overage: int = 0
    coach_overage: int = 0
    athlete_overage_rate: int
    coach_overage_rate: int
    athlete_overage_amount: int = 0
    coach_overage_amount: int = 0
    total_overage_amount: int = 0
    status: OverageStatus = OverageStatus.CALCULATED
    provider_invoice_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class BillingEvent(BaseModel):
    """A received provider event, kept for audit and retry."""
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=new_id)
    box_id: Optional[str] = None
    event_type: str
    provider_event_id: str
    data: Dict[str, Any] = Field(default_factory=dict)
    source: Optional[str] = None
    status: BillingEventStatus = BillingEventStatus.PENDING
    retry_count: int = 0
    max_retries: int = 3
    next_retry_at: Optional[datetime] = None
    processing_error: Optional[str] = None
    last_attempt_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @property
    def retries_exhausted(self) -> bool:
        return self.retry_count >= self.max_retries


class UsageEvent(BaseModel):
    """Append-only billable or informational occurrence."""
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=new_id)
    box_id: str
    event_type: UsageEventType
    quantity: int = 1
    billable: bool = False
    user_id: Optional[str] = None
    event_metadata: Dict[str, Any] = Field(default_factory=dict)
    billing_period_start: Optional[datetime] = None
    billing_period_end: Optional[datetime] = None
    created_at: Optional[datetime] = None


class Order(BaseModel):
    """A paid provider invoice."""
    model_config = ConfigDict(from_attributes=True)

    id: str = Field(default_factory=new_id)
    box_id: str
    provider_order_id: str
    provider_subscription_id: Optional[str] = None
    status: str = "paid"
    amount: int = 0
    currency: str = "USD"
    billing_reason: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


# =============================================================================
# Result Types
# =============================================================================

class SubscriptionUsage(BaseModel):
    """Current usage of a box against its plan limits."""
    athletes: int
    coaches: int
    athlete_limit: int
    coach_limit: int
    athlete_percentage: float
    coach_percentage: float
    is_athlete_over_limit: bool
    is_coach_over_limit: bool
    athlete_overage: int
    coach_overage: int
    athlete_overage_rate: int
    coach_overage_rate: int
    has_overage_enabled: bool
    next_billing_date: Optional[datetime] = None
    estimated_overage_amount: int = 0


class AccessDecision(BaseModel):
    """Answer to "can this box act now". Denial is a value, never an error."""
    has_access: bool
    reason: Optional[str] = None


class GracePeriodTriggerResult(BaseModel):
    grace_period: GracePeriod
    was_existing: bool


class NoOverage(BaseModel):
    """Returned instead of a record when nothing is billed for the period."""
    overage: int = 0
    reason: str


class OverageRunResult(BaseModel):
    """Per-box outcome of a period overage run."""
    box_id: str
    success: bool
    billed: bool = False
    record_id: Optional[str] = None
    total_overage_amount: int = 0
    message: str = ""


class ProcessEventResult(BaseModel):
    """Outcome of handing one event to the webhook processor."""
    accepted: bool
    already_processed: bool = False
    status: str
    billing_event_id: Optional[str] = None
    error: Optional[str] = None


@dataclass
class GracePeriodConfig:
    """Duration and default severity for one grace period reason."""
    days: int
    severity: GraceSeverity


GRACE_PERIOD_CONFIG: Dict[GracePeriodReason, GracePeriodConfig] = {
    GracePeriodReason.ATHLETE_LIMIT_EXCEEDED: GracePeriodConfig(14, GraceSeverity.WARNING),
    GracePeriodReason.COACH_LIMIT_EXCEEDED: GracePeriodConfig(14, GraceSeverity.WARNING),
    GracePeriodReason.TRIAL_ENDING: GracePeriodConfig(7, GraceSeverity.CRITICAL),
    GracePeriodReason.PAYMENT_FAILED: GracePeriodConfig(3, GraceSeverity.CRITICAL),
    GracePeriodReason.SUBSCRIPTION_CANCELED: GracePeriodConfig(0, GraceSeverity.BLOCKING),
    GracePeriodReason.BILLING_ISSUE: GracePeriodConfig(7, GraceSeverity.WARNING),
}


# Fallback when no plan row carries the provider product id
PRODUCT_ID_TO_TIER: Dict[str, SubscriptionTier] = {
    "prod_seed_monthly": SubscriptionTier.SEED,
    "prod_seed_annual": SubscriptionTier.SEED,
    "prod_grow_monthly": SubscriptionTier.GROW,
    "prod_grow_annual": SubscriptionTier.GROW,
    "prod_scale_monthly": SubscriptionTier.SCALE,
    "prod_scale_annual": SubscriptionTier.SCALE,
}
