"""
Test configuration and fixtures for the Billing Core.

Provides shared fixtures for unit and integration tests. State machines run
against in-memory stores: one standing in for the managed cloud store (BR)
and one for the relational store (PT/ES).
"""

import pytest
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

from billing_core.domain.events import CheckoutSession, ExternalSubscription, PaymentEvent
from billing_core.domain.jurisdiction import BackendKind, JurisdictionResolver
from billing_core.domain.subscription import Plan
from billing_core.infrastructure.db.registry import BackendRegistry
from billing_core.infrastructure.db.repositories.memory_store import InMemoryBillingStore
from billing_core.infrastructure.services.entitlements import EntitlementCore
from billing_core.infrastructure.services.expiry_sweeper import ExpirySweeper
from billing_core.infrastructure.services.plan_catalog import PlanCache
from billing_core.infrastructure.services.webhook_processor import WebhookReconciliationProcessor


PT_PHONE = "+351911111111"
BR_PHONE = "+5511987654321"
ES_PHONE = "+34612345678"


def build_plans(jurisdiction: str, pro_price: float, premium_price: float):
    code = jurisdiction.lower()
    return [
        Plan(
            name="Fremium",
            jurisdiction=jurisdiction,
            consultation_limit=1,
            document_analysis_limit=1,
            message_limit=2,
        ),
        Plan(
            name="Pro",
            jurisdiction=jurisdiction,
            monthly_price=pro_price,
            yearly_price=round(pro_price * 10, 2),
            consultation_limit=20,
            document_analysis_limit=10,
            message_limit=500,
            external_product_id=f"prod_{code}_pro",
            external_price_id_monthly=f"price_{code}_pro_monthly",
            external_price_id_yearly=f"price_{code}_pro_yearly",
        ),
        Plan(
            name="Premium",
            jurisdiction=jurisdiction,
            monthly_price=premium_price,
            yearly_price=round(premium_price * 10, 2),
            is_unlimited=True,
            external_product_id=f"prod_{code}_premium",
            external_price_id_monthly=f"price_{code}_premium_monthly",
            external_price_id_yearly=f"price_{code}_premium_yearly",
        ),
    ]


# =============================================================================
# Store Fixtures
# =============================================================================

@pytest.fixture
async def cloud_store() -> InMemoryBillingStore:
    """Stand-in for the managed cloud store (BR)."""
    store = InMemoryBillingStore(name="cloud")
    for plan in build_plans("BR", pro_price=49.90, premium_price=99.90):
        await store.insert_plan(plan)
    return store


@pytest.fixture
async def relational_store() -> InMemoryBillingStore:
    """Stand-in for the relational store (PT and ES)."""
    store = InMemoryBillingStore(name="relational")
    for plan in build_plans("PT", pro_price=19.90, premium_price=39.90):
        await store.insert_plan(plan)
    for plan in build_plans("ES", pro_price=19.90, premium_price=39.90):
        await store.insert_plan(plan)
    return store


@pytest.fixture
def registry(cloud_store, relational_store) -> BackendRegistry:
    return BackendRegistry({
        BackendKind.SUPABASE: cloud_store,
        BackendKind.RELATIONAL: relational_store,
    })


# =============================================================================
# Service Fixtures
# =============================================================================

@pytest.fixture
def payment_client():
    """Mock payment-provider client."""
    mock = MagicMock()
    mock.create_checkout_session = AsyncMock(
        return_value=CheckoutSession(id="cs_test_123", url="https://checkout.stripe.test/cs_test_123")
    )
    mock.get_subscription = AsyncMock(
        return_value=ExternalSubscription(id="sub_test_123", status="active")
    )
    return mock


@pytest.fixture
def core(registry, payment_client) -> EntitlementCore:
    return EntitlementCore(
        resolver=JurisdictionResolver(
            default_jurisdiction="BR",
            supported_jurisdictions=["BR", "PT", "ES"],
        ),
        registry=registry,
        payment_client=payment_client,
        plan_cache=PlanCache(ttl_seconds=300),
    )


@pytest.fixture
def processor(core) -> WebhookReconciliationProcessor:
    return WebhookReconciliationProcessor(core, max_retries=2, base_delay=0, sleep=AsyncMock())


@pytest.fixture
def sweeper(core) -> ExpirySweeper:
    return ExpirySweeper(core)


@pytest.fixture
def pt_scope(core):
    return core.for_phone(PT_PHONE)


@pytest.fixture
def br_scope(core):
    return core.for_phone(BR_PHONE)


@pytest.fixture
async def pt_subscriber(pt_scope):
    return await pt_scope.ensure_subscriber(PT_PHONE, "Ana")


@pytest.fixture
async def br_subscriber(br_scope):
    return await br_scope.ensure_subscriber(BR_PHONE, "Bruno")


def make_event(event_id: str, event_type: str, data: dict, **metadata) -> PaymentEvent:
    """Build a decoded provider event for the processor."""
    return PaymentEvent(
        id=event_id,
        type=event_type,
        object_id=data.get("id"),
        metadata={k: str(v) for k, v in metadata.items()},
        data=data,
    )


# =============================================================================
# App Fixtures
# =============================================================================

@pytest.fixture
def stripe_service():
    """Mock for StripeService."""
    mock = MagicMock()
    mock.is_configured = True
    mock.decode_webhook = MagicMock()
    return mock


@pytest.fixture
def app(core, processor, sweeper, stripe_service):
    """Get the FastAPI application wired to the in-memory stores."""
    from billing_core.api.dependencies import (
        get_entitlement_core,
        get_expiry_sweeper,
        get_payment_service,
        get_webhook_processor,
    )
    from billing_core.main import app

    app.dependency_overrides[get_entitlement_core] = lambda: core
    app.dependency_overrides[get_webhook_processor] = lambda: processor
    app.dependency_overrides[get_expiry_sweeper] = lambda: sweeper
    app.dependency_overrides[get_payment_service] = lambda: stripe_service
    yield app
    app.dependency_overrides.clear()


@pytest.fixture
def client(app):
    """Get synchronous test client."""
    return TestClient(app)


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Get async test client."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
