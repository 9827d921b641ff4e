"""
SQLModel ORM Models for the Billing Core

Exports all database models for Alembic and application use.
Import models here to register them with SQLModel.metadata.
"""

from billing_core.infrastructure.db.models.base import (
    IdMixin,
    TimestampMixin,
    as_utc,
    utc_now,
)
from billing_core.infrastructure.db.models.plan import PlanModel
from billing_core.infrastructure.db.models.subscriber import SubscriberModel
from billing_core.infrastructure.db.models.subscription import SubscriptionModel
from billing_core.infrastructure.db.models.usage_period import UsagePeriodModel
from billing_core.infrastructure.db.models.upgrade_session import (
    UpgradeAttemptModel,
    UpgradeSessionModel,
)
from billing_core.infrastructure.db.models.webhook_event import ProcessedWebhookEventModel


__all__ = [
    # Base
    "IdMixin",
    "TimestampMixin",
    "as_utc",
    "utc_now",
    # Catalog
    "PlanModel",
    # Subscribers and subscriptions
    "SubscriberModel",
    "SubscriptionModel",
    "UsagePeriodModel",
    # Upgrade workflow
    "UpgradeSessionModel",
    "UpgradeAttemptModel",
    # Webhooks
    "ProcessedWebhookEventModel",
]
