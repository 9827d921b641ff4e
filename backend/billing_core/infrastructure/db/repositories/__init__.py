"""
Store Layer for the Billing Core

Exports the store contract and its implementations.
"""

from billing_core.infrastructure.db.repositories.base_repository import (
    BillingStore,
    IEventLedger,
    IPlanStore,
    ISubscriberStore,
    ISubscriptionStore,
    IUpgradeSessionStore,
    IUsageStore,
)
from billing_core.infrastructure.db.repositories.memory_store import InMemoryBillingStore
from billing_core.infrastructure.db.repositories.sql_store import SqlBillingStore


__all__ = [
    # Contract
    "BillingStore",
    "IEventLedger",
    "IPlanStore",
    "ISubscriberStore",
    "ISubscriptionStore",
    "IUpgradeSessionStore",
    "IUsageStore",
    # Implementations
    "InMemoryBillingStore",
    "SqlBillingStore",
]
