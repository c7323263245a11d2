"""
Billing Repository Interfaces

Ports the billing services depend on. The SQL adapters live in
app.infrastructure.db.repositories; tests use in-memory fakes.

Uniqueness is enforced by the store: inserts that hit a unique key raise
DuplicateError so callers can re-read instead of relying on a prior lookup.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from app.domain.billing.models import (
    BillingEvent,
    Box,
    GracePeriod,
    GracePeriodReason,
    MembershipRole,
    Order,
    OverageBillingRecord,
    Subscription,
    SubscriptionPlan,
    SubscriptionTier,
    UsageEvent,
)


class IBoxRepository(ABC):

    @abstractmethod
    async def get(self, box_id: str) -> Optional[Box]:
        pass

    @abstractmethod
    async def update(self, box_id: str, changes: Dict[str, Any]) -> Box:
        """Apply field changes. Raises NotFoundError for unknown boxes."""
        pass

    @abstractmethod
    async def list_expired_trials(self, now: datetime) -> List[Box]:
        """
        Boxes with subscription_status trial, trial_ends_at < now, no provider
        subscription and status not yet trial_expired.
        """
        pass

    @abstractmethod
    async def list_active_with_ended_cancellation(self, now: datetime) -> List[Box]:
        """
        Active boxes whose subscription_ends_at < now and whose current
        subscription is either canceled or set to cancel at period end.
        """
        pass


class ISubscriptionRepository(ABC):

    @abstractmethod
    async def get_by_provider_id(self, provider_subscription_id: str) -> Optional[Subscription]:
        pass

    @abstractmethod
    async def list_for_box(self, box_id: str) -> List[Subscription]:
        pass

    @abstractmethod
    async def upsert(self, subscription: Subscription) -> Subscription:
        """Insert or update keyed on provider_subscription_id."""
        pass

    @abstractmethod
    async def update(self, subscription_id: str, changes: Dict[str, Any]) -> Subscription:
        pass

    @abstractmethod
    async def list_active(self) -> List[Subscription]:
        pass


class IPlanRepository(ABC):

    @abstractmethod
    async def get_current(self, tier: SubscriptionTier) -> Optional[SubscriptionPlan]:
        pass

    @abstractmethod
    async def get_by_product_id(self, provider_product_id: str) -> Optional[SubscriptionPlan]:
        pass


class IGracePeriodRepository(ABC):

    @abstractmethod
    async def get(self, grace_period_id: str) -> Optional[GracePeriod]:
        pass

    @abstractmethod
    async def list_unresolved(
        self,
        box_id: Optional[str] = None,
        reason: Optional[GracePeriodReason] = None,
    ) -> List[GracePeriod]:
        pass

    @abstractmethod
    async def insert(self, grace_period: GracePeriod) -> GracePeriod:
        """Raises DuplicateError when an unresolved row exists for (box, reason)."""
        pass

    @abstractmethod
    async def update(self, grace_period_id: str, changes: Dict[str, Any]) -> GracePeriod:
        pass

    @abstractmethod
    async def list_ending_between(self, start: datetime, end: datetime) -> List[GracePeriod]:
        """Unresolved grace periods with start <= ends_at < end."""
        pass


class IOverageRepository(ABC):

    @abstractmethod
    async def get(self, record_id: str) -> Optional[OverageBillingRecord]:
        pass

    @abstractmethod
    async def get_for_period(
        self,
        box_id: str,
        period_start: datetime,
        period_end: datetime,
    ) -> Optional[OverageBillingRecord]:
        pass

    @abstractmethod
    async def insert(self, record: OverageBillingRecord) -> OverageBillingRecord:
        """Raises DuplicateError when the period key already exists."""
        pass

    @abstractmethod
    async def update(self, record_id: str, changes: Dict[str, Any]) -> OverageBillingRecord:
        pass

    @abstractmethod
    async def list_for_box(self, box_id: str, limit: int = 12) -> List[OverageBillingRecord]:
        pass


class IBillingEventRepository(ABC):

    @abstractmethod
    async def get(self, billing_event_id: str) -> Optional[BillingEvent]:
        pass

    @abstractmethod
    async def get_by_provider_event_id(self, provider_event_id: str) -> Optional[BillingEvent]:
        pass

    @abstractmethod
    async def insert_if_absent(self, event: BillingEvent) -> Tuple[BillingEvent, bool]:
        """
        Atomically store an event unless its provider_event_id exists.

        Returns:
            (stored row, True if this call created it)
        """
        pass

    @abstractmethod
    async def update(self, billing_event_id: str, changes: Dict[str, Any]) -> BillingEvent:
        pass

    @abstractmethod
    async def list_due_for_retry(self, now: datetime, limit: int) -> List[BillingEvent]:
        """Failed rows with next_retry_at <= now, oldest first."""
        pass

    @abstractmethod
    async def count_stuck_processing(self, older_than: datetime) -> int:
        pass

    @abstractmethod
    async def count_terminal_failures(self) -> int:
        """Failed rows with no retry scheduled."""
        pass


class IUsageEventRepository(ABC):

    @abstractmethod
    async def append(self, event: UsageEvent) -> UsageEvent:
        pass


class IMembershipRepository(ABC):

    @abstractmethod
    async def count_active(self, box_id: str, role: MembershipRole) -> int:
        pass


class IOrderRepository(ABC):

    @abstractmethod
    async def upsert(self, order: Order) -> Order:
        """Insert or update keyed on provider_order_id."""
        pass


@dataclass
class BillingStore:
    """
    Unit of work handed to every billing service.

    Subclasses bind the repositories to one transaction and implement
    commit/rollback for it.
    """
    boxes: IBoxRepository
    subscriptions: ISubscriptionRepository
    plans: IPlanRepository
    grace_periods: IGracePeriodRepository
    overages: IOverageRepository
    billing_events: IBillingEventRepository
    usage_events: IUsageEventRepository
    memberships: IMembershipRepository
    orders: IOrderRepository

    async def commit(self) -> None:
        pass

    async def rollback(self) -> None:
        pass
