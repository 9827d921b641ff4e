"""
Subscription Domain Models

Domain models for subscription management following Clean Architecture.
Enums, entities, the subscription state diagram and provider status mapping.
"""

import calendar
import logging
from datetime import datetime
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple

from pydantic import BaseModel, Field

from billing_core.domain.jurisdiction import MeteredDimension


logger = logging.getLogger(__name__)


class SubscriptionStatus(str, Enum):
    """Subscription lifecycle status."""
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    UNPAID = "unpaid"


class BillingCycle(str, Enum):
    """Billing cycle for subscriptions."""
    MONTHLY = "monthly"
    YEARLY = "yearly"


class SyncStatus(str, Enum):
    """Reconciliation bookkeeping against the payment provider."""
    SYNCED = "synced"
    PENDING = "pending"
    ERROR = "error"


# =============================================================================
# Domain Entities
# =============================================================================

class Subscriber(BaseModel):
    """A person the product bills, keyed by user id and normalized phone."""
    id: Optional[str] = None
    phone: str
    name: Optional[str] = None
    jurisdiction: str
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class Plan(BaseModel):
    """A purchasable plan in one jurisdiction. Read-only for the core."""
    id: Optional[str] = None
    name: str
    jurisdiction: str
    description: Optional[str] = None
    monthly_price: float = 0.0
    yearly_price: float = 0.0
    consultation_limit: Optional[int] = None
    document_analysis_limit: Optional[int] = None
    message_limit: Optional[int] = None
    is_unlimited: bool = False
    is_active: bool = True
    external_product_id: Optional[str] = None
    external_price_id_monthly: Optional[str] = None
    external_price_id_yearly: Optional[str] = None
    features: List[str] = Field(default_factory=list)

    class Config:
        from_attributes = True

    @property
    def is_free(self) -> bool:
        return self.monthly_price <= 0 and self.yearly_price <= 0

    def limit_for(self, dimension: MeteredDimension) -> Optional[int]:
        """Limit for a metered dimension. None means unlimited."""
        if self.is_unlimited:
            return None
        return {
            MeteredDimension.CONSULTATIONS: self.consultation_limit,
            MeteredDimension.DOCUMENT_ANALYSES: self.document_analysis_limit,
            MeteredDimension.MESSAGES: self.message_limit,
        }[dimension]

    def price_for(self, cycle: "BillingCycle") -> float:
        return self.monthly_price if cycle == BillingCycle.MONTHLY else self.yearly_price

    def price_ref_for(self, cycle: "BillingCycle") -> Optional[str]:
        if cycle == BillingCycle.MONTHLY:
            return self.external_price_id_monthly
        return self.external_price_id_yearly


class Subscription(BaseModel):
    """Core subscription domain entity."""
    id: Optional[str] = None
    subscriber_id: str
    plan_id: str
    plan_name: Optional[str] = None
    jurisdiction: str
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    current_period_start: datetime
    current_period_end: datetime
    external_subscription_id: Optional[str] = None
    external_customer_id: Optional[str] = None
    sync_status: SyncStatus = SyncStatus.SYNCED
    last_sync_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class UsagePeriod(BaseModel):
    """Per-period usage counters for one subscription."""
    id: Optional[str] = None
    subscription_id: str
    subscriber_id: str
    jurisdiction: str
    period_start: datetime
    period_end: datetime
    consultations_count: int = 0
    document_analyses_count: int = 0
    messages_count: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    def count_for(self, dimension: MeteredDimension) -> int:
        return getattr(self, USAGE_COUNTER_COLUMNS[dimension])


USAGE_COUNTER_COLUMNS: Dict[MeteredDimension, str] = {
    MeteredDimension.CONSULTATIONS: "consultations_count",
    MeteredDimension.DOCUMENT_ANALYSES: "document_analyses_count",
    MeteredDimension.MESSAGES: "messages_count",
}


# =============================================================================
# State Diagram (Business Logic)
# =============================================================================

ALLOWED_TRANSITIONS: Dict[SubscriptionStatus, FrozenSet[SubscriptionStatus]] = {
    SubscriptionStatus.ACTIVE: frozenset({
        SubscriptionStatus.PAST_DUE,
        SubscriptionStatus.CANCELLED,
        SubscriptionStatus.EXPIRED,
    }),
    SubscriptionStatus.PAST_DUE: frozenset({
        SubscriptionStatus.ACTIVE,
        SubscriptionStatus.UNPAID,
        SubscriptionStatus.CANCELLED,
    }),
    SubscriptionStatus.UNPAID: frozenset({
        SubscriptionStatus.EXPIRED,
        SubscriptionStatus.CANCELLED,
    }),
    SubscriptionStatus.CANCELLED: frozenset(),
    SubscriptionStatus.EXPIRED: frozenset(),
}

TERMINAL_SUBSCRIPTION_STATUSES = frozenset(
    status for status, targets in ALLOWED_TRANSITIONS.items() if not targets
)


def is_legal_transition(current: SubscriptionStatus, target: SubscriptionStatus) -> bool:
    """Same-status transitions are legal no-ops."""
    return current == target or target in ALLOWED_TRANSITIONS[current]


# Provider (Stripe) vocabulary -> internal status
EXTERNAL_STATUS_MAP: Dict[str, SubscriptionStatus] = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELLED,
    "cancelled": SubscriptionStatus.CANCELLED,
    "unpaid": SubscriptionStatus.UNPAID,
    "incomplete": SubscriptionStatus.EXPIRED,
    "incomplete_expired": SubscriptionStatus.EXPIRED,
}


def map_external_status(external_status: Optional[str]) -> SubscriptionStatus:
    """
    Map a provider status onto the internal enum.

    Unknown statuses map to EXPIRED. This is a conservative policy choice:
    an unrecognized state never grants entitlements.
    """
    status = EXTERNAL_STATUS_MAP.get((external_status or "").lower())
    if status is None:
        logger.warning(
            f"Unknown external subscription status {external_status!r}, "
            f"mapping to {SubscriptionStatus.EXPIRED.value}"
        )
        return SubscriptionStatus.EXPIRED
    return status


# =============================================================================
# Billing Periods
# =============================================================================

def add_months(moment: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def compute_period(
    start: datetime,
    cycle: BillingCycle,
) -> Tuple[datetime, datetime]:
    """Half-open billing period starting at ``start``."""
    months = 1 if cycle == BillingCycle.MONTHLY else 12
    return start, add_months(start, months)


def cycle_from_interval(interval: Optional[str]) -> Optional[BillingCycle]:
    """Map a provider price interval ("month"/"year") to a billing cycle."""
    if interval == "month":
        return BillingCycle.MONTHLY
    if interval == "year":
        return BillingCycle.YEARLY
    return None


# =============================================================================
# Request/Response DTOs
# =============================================================================

class CreateSubscriptionRequest(BaseModel):
    """Request DTO for creating a subscription directly."""
    subscriber_id: str
    plan_name: str
    billing_cycle: BillingCycle = BillingCycle.MONTHLY


class TransitionRequest(BaseModel):
    """Request DTO for an operator-driven status change."""
    target_status: SubscriptionStatus


class EnsureSubscriberRequest(BaseModel):
    """Request DTO for registering a subscriber on first contact."""
    phone: str
    name: Optional[str] = None


class SubscriptionListResponse(BaseModel):
    """Response DTO for subscription listings."""
    jurisdiction: str
    subscriptions: List[Subscription]
