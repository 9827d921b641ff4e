"""
Payment Event Domain Models

Provider events after signature verification and decoding. The core only
ever sees these, never raw provider payloads.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class PaymentEventType(str, Enum):
    """Provider event types the reconciliation processor understands."""
    CHECKOUT_COMPLETED = "checkout.session.completed"
    CHECKOUT_ASYNC_PAYMENT_SUCCEEDED = "checkout.session.async_payment_succeeded"
    CHECKOUT_ASYNC_PAYMENT_FAILED = "checkout.session.async_payment_failed"
    CHECKOUT_EXPIRED = "checkout.session.expired"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"


class PaymentEvent(BaseModel):
    """
    A decoded provider event.

    ``object_id`` is the provider id of the event's subject (checkout session,
    subscription or invoice). ``data`` is the subject object itself.
    """
    id: str
    type: str
    object_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    timestamp: Optional[datetime] = None
    data: Dict[str, Any] = Field(default_factory=dict)

    @property
    def known_type(self) -> Optional[PaymentEventType]:
        try:
            return PaymentEventType(self.type)
        except ValueError:
            return None


class CheckoutSession(BaseModel):
    """Provider checkout session handle."""
    id: str
    url: Optional[str] = None


class ExternalSubscription(BaseModel):
    """Subset of a provider subscription used for reconciliation."""
    id: str
    status: str
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    customer_id: Optional[str] = None
    interval: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)


class WebhookResult(BaseModel):
    """Outcome of processing one event."""
    event_id: str
    event_type: str
    status: str
    jurisdiction: Optional[str] = None
    detail: Optional[str] = None
