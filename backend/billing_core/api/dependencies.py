"""
API Dependencies

FastAPI dependency providers for the billing core. Every long-lived object
(backend registry, entitlement core, processor, sweeper) is built once from
settings and cached; tests replace them through ``app.dependency_overrides``.
"""

import logging
from functools import lru_cache
from typing import Annotated, Optional

from fastapi import Depends, Query

from billing_core.config.settings import get_settings
from billing_core.infrastructure.db.registry import BackendRegistry
from billing_core.infrastructure.payments.stripe_service import StripeService, get_stripe_service
from billing_core.infrastructure.services.entitlements import EntitlementCore, JurisdictionScope
from billing_core.infrastructure.services.expiry_sweeper import ExpirySweeper
from billing_core.infrastructure.services.webhook_processor import WebhookReconciliationProcessor


logger = logging.getLogger(__name__)


@lru_cache
def get_registry() -> BackendRegistry:
    return BackendRegistry.from_settings(get_settings())


@lru_cache
def get_entitlement_core() -> EntitlementCore:
    stripe_service = get_stripe_service()
    return EntitlementCore.from_settings(
        get_settings(),
        get_registry(),
        payment_client=stripe_service if stripe_service.is_configured else None,
    )


@lru_cache
def get_webhook_processor() -> WebhookReconciliationProcessor:
    return WebhookReconciliationProcessor.from_settings(get_settings(), get_entitlement_core())


@lru_cache
def get_expiry_sweeper() -> ExpirySweeper:
    return ExpirySweeper.from_settings(get_settings(), get_entitlement_core())


def get_payment_service() -> StripeService:
    return get_stripe_service()


def get_scope(
    core: Annotated[EntitlementCore, Depends(get_entitlement_core)],
    phone: Optional[str] = Query(default=None, description="Subscriber phone number"),
    jurisdiction: Optional[str] = Query(default=None, description="Jurisdiction code, e.g. PT"),
) -> JurisdictionScope:
    """
    Resolve the jurisdiction scope for a request.

    A phone number wins over an explicit jurisdiction code; with neither,
    the configured default jurisdiction is used.
    """
    if phone:
        return core.for_phone(phone)
    if jurisdiction:
        return core.for_jurisdiction(jurisdiction)
    return core.for_jurisdiction(core.resolver.default_code)


# Type aliases for route signatures
CoreDep = Annotated[EntitlementCore, Depends(get_entitlement_core)]
ScopeDep = Annotated[JurisdictionScope, Depends(get_scope)]
ProcessorDep = Annotated[WebhookReconciliationProcessor, Depends(get_webhook_processor)]
SweeperDep = Annotated[ExpirySweeper, Depends(get_expiry_sweeper)]
PaymentServiceDep = Annotated[StripeService, Depends(get_payment_service)]
