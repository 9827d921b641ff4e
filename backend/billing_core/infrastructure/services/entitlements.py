"""
Entitlement Core

Composition root for the billing services. A jurisdiction is resolved once
and bound to the single store that governs it; everything downstream
works against that ``JurisdictionScope`` without knowing which backend it is.
"""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import List, Optional

from billing_core.domain.jurisdiction import JurisdictionResolver, ResolvedJurisdiction, normalize_phone
from billing_core.domain.subscription import Subscriber
from billing_core.infrastructure.db.registry import BackendRegistry
from billing_core.infrastructure.db.repositories.base_repository import BillingStore
from billing_core.infrastructure.exceptions import ConfigurationError, ConflictError, NotFoundError
from billing_core.infrastructure.services.plan_catalog import PlanCache, PlanCatalog
from billing_core.infrastructure.services.quota_service import QuotaTracker
from billing_core.infrastructure.services.subscription_service import SubscriptionStateMachine
from billing_core.infrastructure.services.upgrade_session_service import UpgradeSessionMachine


logger = logging.getLogger(__name__)


@dataclass
class JurisdictionScope:
    """Services bound to one jurisdiction and its store."""
    jurisdiction: ResolvedJurisdiction
    store: BillingStore
    catalog: PlanCatalog
    subscriptions: SubscriptionStateMachine
    upgrades: UpgradeSessionMachine
    quotas: QuotaTracker

    @property
    def code(self) -> str:
        return self.jurisdiction.code

    async def get_subscriber(self, subscriber_id: str) -> Subscriber:
        subscriber = await self.store.get_subscriber(subscriber_id)
        if subscriber is None:
            raise NotFoundError(
                f"Subscriber {subscriber_id} not found",
                entity="subscriber",
                key=subscriber_id,
            )
        return subscriber

    async def ensure_subscriber(self, phone: str, name: Optional[str] = None) -> Subscriber:
        """Get or create the subscriber for a phone number (first contact)."""
        digits = normalize_phone(phone)
        existing = await self.store.find_subscriber_by_phone(digits)
        if existing is not None:
            return existing
        try:
            subscriber = await self.store.insert_subscriber(Subscriber(
                phone=digits,
                name=name,
                jurisdiction=self.code,
            ))
        except ConflictError:
            existing = await self.store.find_subscriber_by_phone(digits)
            if existing is None:
                raise
            return existing
        logger.info(f"Registered subscriber {subscriber.id} in {self.code}")
        return subscriber

    async def deactivate_subscriber(self, subscriber_id: str) -> Subscriber:
        subscriber = await self.store.set_subscriber_active(subscriber_id, False)
        if subscriber is None:
            raise NotFoundError(
                f"Subscriber {subscriber_id} not found",
                entity="subscriber",
                key=subscriber_id,
            )
        logger.info(f"Deactivated subscriber {subscriber_id}")
        return subscriber


class EntitlementCore:
    """
    Resolves jurisdictions to scopes.

    The plan cache is owned here and shared by every scope this core hands
    out; call ``invalidate_plans`` after catalog changes.
    """

    def __init__(
        self,
        resolver: JurisdictionResolver,
        registry: BackendRegistry,
        payment_client=None,
        plan_cache: Optional[PlanCache] = None,
        free_plan_name: str = "Fremium",
        upgrade_session_ttl: timedelta = timedelta(minutes=60),
        quota_fail_open: bool = True,
    ):
        self.resolver = resolver
        self.registry = registry
        self.payment_client = payment_client
        self.plan_cache = plan_cache or PlanCache()
        self._free_plan_name = free_plan_name
        self._ttl = upgrade_session_ttl
        self._quota_fail_open = quota_fail_open

    @classmethod
    def from_settings(cls, settings, registry: BackendRegistry, payment_client=None) -> "EntitlementCore":
        return cls(
            resolver=JurisdictionResolver.from_settings(settings),
            registry=registry,
            payment_client=payment_client,
            plan_cache=PlanCache(ttl_seconds=settings.plan_cache_ttl_seconds),
            free_plan_name=settings.free_plan_name,
            upgrade_session_ttl=timedelta(minutes=settings.upgrade_session_ttl_minutes),
            quota_fail_open=settings.quota_fail_open,
        )

    def scope(self, jurisdiction: ResolvedJurisdiction) -> JurisdictionScope:
        store = self.registry.for_backend(jurisdiction.backend)
        catalog = PlanCatalog(store, self.plan_cache, self._free_plan_name)
        subscriptions = SubscriptionStateMachine(store, catalog, jurisdiction.code)
        return JurisdictionScope(
            jurisdiction=jurisdiction,
            store=store,
            catalog=catalog,
            subscriptions=subscriptions,
            upgrades=UpgradeSessionMachine(
                store,
                catalog,
                jurisdiction.code,
                ttl=self._ttl,
                payment_client=self.payment_client,
            ),
            quotas=QuotaTracker(
                store,
                subscriptions,
                catalog,
                jurisdiction,
                fail_open=self._quota_fail_open,
            ),
        )

    def for_phone(self, phone: str) -> JurisdictionScope:
        return self.scope(self.resolver.resolve(phone))

    def for_jurisdiction(self, code: str) -> JurisdictionScope:
        return self.scope(self.resolver.for_code(code))

    def scopes(self) -> List[JurisdictionScope]:
        """One scope per supported jurisdiction whose backend is configured."""
        configured = set(self.registry.configured())
        scopes = []
        for config in self.resolver.supported():
            if config.backend in configured:
                scopes.append(self.for_jurisdiction(config.code))
        return scopes

    def invalidate_plans(self) -> None:
        self.plan_cache.clear()


def require_payment_client(core: EntitlementCore):
    if core.payment_client is None:
        raise ConfigurationError("No payment client configured", missing_keys=["STRIPE_SECRET_KEY"])
    return core.payment_client
