"""
Billing Store Contract

Abstract persistence interface shared by every backend (managed cloud store,
relational store, in-memory store). Split into narrow interfaces so each
concern can be read on its own, combined into ``BillingStore``.

Contract every implementation honours:
- Inserts detect uniqueness violations and raise ``ConflictError``
  (duplicate phone, second active subscription, second live upgrade session,
  duplicate external subscription id, duplicate usage period).
- Conditional updates are compare-and-swap on ``status``: they return the
  updated entity, or ``None`` when the record is missing or its status was
  not one of the expected ones.
- Counter increments happen at the storage layer, never read-modify-write.
- Driver failures surface as ``DatabaseError`` (an ``UpstreamError``).
"""

from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from billing_core.domain.jurisdiction import MeteredDimension
from billing_core.domain.subscription import (
    Plan,
    Subscriber,
    Subscription,
    SubscriptionStatus,
    SyncStatus,
    UsagePeriod,
)
from billing_core.domain.upgrade import UpgradeAttempt, UpgradeSession, UpgradeSessionStatus


def plain_value(value: Any) -> Any:
    """Unwrap enums so changes can be written by any driver."""
    if isinstance(value, Enum):
        return value.value
    return value


def plain_changes(changes: Dict[str, Any]) -> Dict[str, Any]:
    return {key: plain_value(value) for key, value in changes.items()}


def status_values(statuses: Iterable[Enum]) -> List[str]:
    return [plain_value(status) for status in statuses]


class ISubscriberStore(ABC):
    """Subscriber persistence."""

    @abstractmethod
    async def get_subscriber(self, subscriber_id: str) -> Optional[Subscriber]:
        pass

    @abstractmethod
    async def find_subscriber_by_phone(self, phone: str) -> Optional[Subscriber]:
        pass

    @abstractmethod
    async def insert_subscriber(self, subscriber: Subscriber) -> Subscriber:
        """Insert; ``ConflictError`` when the phone is already registered."""
        pass

    @abstractmethod
    async def set_subscriber_active(
        self,
        subscriber_id: str,
        is_active: bool,
    ) -> Optional[Subscriber]:
        pass


class IPlanStore(ABC):
    """Plan catalog persistence. Read-only for the core apart from seeding."""

    @abstractmethod
    async def get_plan(self, plan_id: str) -> Optional[Plan]:
        pass

    @abstractmethod
    async def find_plan(self, name: str, jurisdiction: str) -> Optional[Plan]:
        pass

    @abstractmethod
    async def list_plans(self, jurisdiction: str, active_only: bool = True) -> List[Plan]:
        pass

    @abstractmethod
    async def insert_plan(self, plan: Plan) -> Plan:
        pass


class ISubscriptionStore(ABC):
    """Subscription persistence."""

    @abstractmethod
    async def insert_subscription(self, subscription: Subscription) -> Subscription:
        """Insert; ``ConflictError`` when an active one exists for the subscriber."""
        pass

    @abstractmethod
    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        pass

    @abstractmethod
    async def find_active_subscription(self, subscriber_id: str) -> Optional[Subscription]:
        pass

    @abstractmethod
    async def find_subscription_by_external_id(
        self,
        external_subscription_id: str,
    ) -> Optional[Subscription]:
        pass

    @abstractmethod
    async def list_subscriptions(
        self,
        subscriber_id: Optional[str] = None,
        status: Optional[SubscriptionStatus] = None,
        sync_status: Optional[SyncStatus] = None,
        jurisdiction: Optional[str] = None,
        limit: int = 100,
    ) -> List[Subscription]:
        pass

    @abstractmethod
    async def update_subscription(
        self,
        subscription_id: str,
        expected_statuses: Iterable[SubscriptionStatus],
        changes: Dict[str, Any],
    ) -> Optional[Subscription]:
        """Compare-and-swap update; ``None`` when the swap did not apply."""
        pass

    @abstractmethod
    async def list_overdue_subscriptions(
        self,
        now: datetime,
        jurisdiction: Optional[str] = None,
        limit: int = 500,
    ) -> List[Subscription]:
        """Active subscriptions with ``current_period_end <= now``."""
        pass


class IUsageStore(ABC):
    """Usage period persistence."""

    @abstractmethod
    async def get_usage_period(
        self,
        subscription_id: str,
        period_start: datetime,
        period_end: datetime,
    ) -> Optional[UsagePeriod]:
        pass

    @abstractmethod
    async def insert_usage_period(self, period: UsagePeriod) -> UsagePeriod:
        """Insert; ``ConflictError`` when the period already exists."""
        pass

    @abstractmethod
    async def increment_usage(
        self,
        subscription_id: str,
        period_start: datetime,
        period_end: datetime,
        dimension: MeteredDimension,
        amount: int = 1,
    ) -> bool:
        """Atomic ``counter += amount``; False when the period row is missing."""
        pass


class IUpgradeSessionStore(ABC):
    """Upgrade session and attempt log persistence."""

    @abstractmethod
    async def insert_upgrade_session(self, session: UpgradeSession) -> UpgradeSession:
        """Insert; ``ConflictError`` when a live session exists for the subscriber."""
        pass

    @abstractmethod
    async def get_upgrade_session(self, session_id: str) -> Optional[UpgradeSession]:
        pass

    @abstractmethod
    async def find_live_upgrade_session(self, subscriber_id: str) -> Optional[UpgradeSession]:
        pass

    @abstractmethod
    async def find_upgrade_session_by_checkout(
        self,
        external_checkout_id: str,
    ) -> Optional[UpgradeSession]:
        pass

    @abstractmethod
    async def list_upgrade_sessions(
        self,
        subscriber_id: str,
        limit: int = 50,
    ) -> List[UpgradeSession]:
        pass

    @abstractmethod
    async def update_upgrade_session(
        self,
        session_id: str,
        expected_statuses: Iterable[UpgradeSessionStatus],
        changes: Dict[str, Any],
    ) -> Optional[UpgradeSession]:
        """Compare-and-swap update; ``None`` when the swap did not apply."""
        pass

    @abstractmethod
    async def increment_upgrade_attempts(self, session_id: str, at: datetime) -> bool:
        pass

    @abstractmethod
    async def insert_upgrade_attempt(self, attempt: UpgradeAttempt) -> UpgradeAttempt:
        pass

    @abstractmethod
    async def list_upgrade_attempts(self, session_id: str) -> List[UpgradeAttempt]:
        pass

    @abstractmethod
    async def expire_upgrade_sessions(self, now: datetime, jurisdiction: Optional[str] = None) -> int:
        """Bulk ``live AND expires_at < now -> expired``; returns rows changed."""
        pass


class IEventLedger(ABC):
    """Processed provider events (dedupe fast path)."""

    @abstractmethod
    async def is_event_processed(self, event_id: str) -> bool:
        pass

    @abstractmethod
    async def mark_event_processed(self, event_id: str, event_type: str) -> bool:
        """Record the event; False when it was already recorded."""
        pass


class BillingStore(
    ISubscriberStore,
    IPlanStore,
    ISubscriptionStore,
    IUsageStore,
    IUpgradeSessionStore,
    IEventLedger,
):
    """Complete persistence contract for one backend."""

    name: str = "store"

    async def close(self) -> None:
        """Release backend resources. Default is a no-op."""
        return None
