"""
Integration tests for the billing API endpoints.

Tests the full request/response cycle against the in-memory stores.
"""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from httpx import AsyncClient

from conftest import BR_PHONE, ES_PHONE, PT_PHONE


async def _register(client: AsyncClient, phone: str, name: str = "Test") -> dict:
    response = await client.post("/api/subscribers", json={"phone": phone, "name": name})
    assert response.status_code == 200
    return response.json()


class TestHealthEndpoints:
    """Tests for health check endpoints."""

    def test_root_endpoint(self, client: TestClient):
        """Root endpoint should return welcome message."""
        response = client.get("/")
        assert response.status_code == 200
        assert "message" in response.json()

    def test_health_endpoint(self, client: TestClient):
        """Health endpoint should return healthy status."""
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestJurisdictionEndpoints:

    @pytest.mark.asyncio
    async def test_resolve_portuguese_number(self, async_client: AsyncClient):
        response = await async_client.get("/api/jurisdictions/resolve", params={"phone": PT_PHONE})

        assert response.status_code == 200
        data = response.json()
        assert data["code"] == "PT"
        assert data["backend"] == "relational"
        assert data["currency"] == "EUR"

    @pytest.mark.asyncio
    async def test_resolve_requires_phone(self, async_client: AsyncClient):
        response = await async_client.get("/api/jurisdictions/resolve")
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_list_jurisdictions(self, async_client: AsyncClient):
        response = await async_client.get("/api/jurisdictions")
        assert [j["code"] for j in response.json()] == ["BR", "PT", "ES"]


class TestSubscriberEndpoints:

    @pytest.mark.asyncio
    async def test_first_contact_starts_free_tier(self, async_client: AsyncClient):
        subscriber = await _register(async_client, BR_PHONE, "Bruno")

        assert subscriber["jurisdiction"] == "BR"
        response = await async_client.get(
            f"/api/subscribers/{subscriber['id']}/subscription", params={"phone": BR_PHONE},
        )
        assert response.status_code == 200
        assert response.json()["plan_name"] == "Fremium"

    @pytest.mark.asyncio
    async def test_registration_is_idempotent(self, async_client: AsyncClient):
        first = await _register(async_client, PT_PHONE)
        second = await _register(async_client, "+351 911 111 111")
        assert first["id"] == second["id"]

    @pytest.mark.asyncio
    async def test_subscriber_in_other_store_is_not_found(self, async_client: AsyncClient):
        subscriber = await _register(async_client, PT_PHONE)

        response = await async_client.get(f"/api/subscribers/{subscriber['id']}", params={"jurisdiction": "BR"})

        assert response.status_code == 404
        assert response.json()["error"] == "NotFoundError"

    @pytest.mark.asyncio
    async def test_deactivate(self, async_client: AsyncClient):
        subscriber = await _register(async_client, ES_PHONE)

        response = await async_client.post(
            f"/api/subscribers/{subscriber['id']}/deactivate", params={"jurisdiction": "ES"},
        )

        assert response.status_code == 200
        assert response.json()["is_active"] is False


class TestSubscriptionEndpoints:

    @pytest.mark.asyncio
    async def test_plans_per_jurisdiction(self, async_client: AsyncClient):
        pt = (await async_client.get("/api/plans", params={"jurisdiction": "PT"})).json()
        upgrades = (await async_client.get("/api/plans/upgrades", params={"phone": BR_PHONE})).json()

        assert [p["name"] for p in pt] == ["Fremium", "Pro", "Premium"]
        assert [p["name"] for p in upgrades] == ["Pro", "Premium"]
        assert upgrades[0]["monthly_price"] == pytest.approx(49.90)

    @pytest.mark.asyncio
    async def test_create_conflict_and_transition(self, async_client: AsyncClient):
        subscriber = await _register(async_client, PT_PHONE)
        params = {"phone": PT_PHONE}

        conflict = await async_client.post(
            "/api/subscriptions", params=params,
            json={"subscriber_id": subscriber["id"], "plan_name": "Pro"},
        )
        assert conflict.status_code == 409

        active = (await async_client.get(f"/api/subscribers/{subscriber['id']}/subscription", params=params)).json()
        cancelled = await async_client.post(
            f"/api/subscriptions/{active['id']}/transition", params=params,
            json={"target_status": "cancelled"},
        )
        assert cancelled.json()["status"] == "cancelled"

        created = await async_client.post(
            "/api/subscriptions", params=params,
            json={"subscriber_id": subscriber["id"], "plan_name": "Pro", "billing_cycle": "yearly"},
        )
        assert created.status_code == 201
        assert created.json()["billing_cycle"] == "yearly"

        history = (await async_client.get(f"/api/subscribers/{subscriber['id']}/subscriptions", params=params)).json()
        assert len(history["subscriptions"]) == 2

    @pytest.mark.asyncio
    async def test_illegal_transition_is_409(self, async_client: AsyncClient):
        subscriber = await _register(async_client, PT_PHONE)
        params = {"phone": PT_PHONE}
        active = (await async_client.get(f"/api/subscribers/{subscriber['id']}/subscription", params=params)).json()

        await async_client.post(
            f"/api/subscriptions/{active['id']}/transition", params=params, json={"target_status": "expired"},
        )
        response = await async_client.post(
            f"/api/subscriptions/{active['id']}/transition", params=params, json={"target_status": "active"},
        )

        assert response.status_code == 409
        assert response.json()["error"] == "InvalidTransitionError"

    @pytest.mark.asyncio
    async def test_list_by_status(self, async_client: AsyncClient):
        await _register(async_client, PT_PHONE)
        await _register(async_client, ES_PHONE)

        response = await async_client.get("/api/subscriptions", params={"jurisdiction": "ES", "status": "active"})

        data = response.json()
        assert data["jurisdiction"] == "ES"
        assert [s["jurisdiction"] for s in data["subscriptions"]] == ["ES"]


class TestUpgradeSessionEndpoints:

    @pytest.mark.asyncio
    async def test_upgrade_flow(self, async_client: AsyncClient, payment_client):
        subscriber = await _register(async_client, PT_PHONE, "Ana")
        params = {"phone": PT_PHONE}

        created = await async_client.post(
            "/api/upgrade-sessions", params=params,
            json={"subscriber_id": subscriber["id"], "plan_name": "Pro"},
        )
        assert created.status_code == 201
        session = created.json()
        assert session["amount"] == pytest.approx(19.90)
        assert session["phone"] == "351911111111"

        duplicate = await async_client.post(
            "/api/upgrade-sessions", params=params,
            json={"subscriber_id": subscriber["id"], "plan_name": "Premium"},
        )
        assert duplicate.status_code == 409

        step = await async_client.post(
            f"/api/upgrade-sessions/{session['id']}/step", params=params, json={"step": "payment_info"},
        )
        assert step.json()["current_step"] == "payment_info"

        backwards = await async_client.post(
            f"/api/upgrade-sessions/{session['id']}/step", params=params, json={"step": "plan_selection"},
        )
        assert backwards.status_code == 409

        attempt = await async_client.post(
            f"/api/upgrade-sessions/{session['id']}/attempts", params=params,
            json={"step": "payment_info", "success": False, "error_message": "card declined"},
        )
        assert attempt.status_code == 201

        checkout = await async_client.post(
            f"/api/upgrade-sessions/{session['id']}/checkout", params=params,
            json={"customer_email": "ana@example.pt"},
        )
        assert checkout.json()["status"] == "payment_processing"
        assert checkout.json()["checkout_url"] == "https://checkout.stripe.test/cs_test_123"

        detail = (await async_client.get(f"/api/upgrade-sessions/{session['id']}", params=params)).json()
        assert detail["session"]["attempts_count"] == 2
        assert [a["success"] for a in detail["attempts"]] == [False, True]

    @pytest.mark.asyncio
    async def test_live_session_lookup_and_cancel(self, async_client: AsyncClient):
        subscriber = await _register(async_client, BR_PHONE)
        params = {"phone": BR_PHONE}

        missing = await async_client.get(f"/api/subscribers/{subscriber['id']}/upgrade-session", params=params)
        assert missing.status_code == 404

        session = (await async_client.post(
            "/api/upgrade-sessions", params=params,
            json={"subscriber_id": subscriber["id"], "plan_name": "Premium", "billing_cycle": "yearly"},
        )).json()
        live = await async_client.get(f"/api/subscribers/{subscriber['id']}/upgrade-session", params=params)
        assert live.json()["id"] == session["id"]

        cancelled = await async_client.post(f"/api/upgrade-sessions/{session['id']}/cancel", params=params)
        assert cancelled.json()["status"] == "cancelled"

    @pytest.mark.asyncio
    async def test_checkout_provider_failure_is_503(self, async_client: AsyncClient, payment_client):
        from billing_core.infrastructure.exceptions import PaymentProviderError

        payment_client.create_checkout_session.side_effect = PaymentProviderError("stripe down")
        subscriber = await _register(async_client, PT_PHONE)
        session = (await async_client.post(
            "/api/upgrade-sessions", params={"phone": PT_PHONE},
            json={"subscriber_id": subscriber["id"], "plan_name": "Pro"},
        )).json()

        response = await async_client.post(
            f"/api/upgrade-sessions/{session['id']}/checkout", params={"phone": PT_PHONE}, json={},
        )

        assert response.status_code == 503


class TestUsageEndpoints:

    @pytest.mark.asyncio
    async def test_quota_gate(self, async_client: AsyncClient):
        subscriber = await _register(async_client, BR_PHONE)
        base = f"/api/subscribers/{subscriber['id']}/usage"
        params = {"phone": BR_PHONE}

        for _ in range(2):
            counted = await async_client.post(base, params=params, json={"dimension": "messages"})
            assert counted.json() == {"counted": True, "dimension": "messages"}

        check = (await async_client.get(f"{base}/messages/check", params=params)).json()
        assert check["allowed"] is False
        assert check["current"] == 2
        assert check["limit"] == 2

        unmetered = (await async_client.get(f"{base}/consultations/check", params=params)).json()
        assert unmetered["allowed"] is True
        assert unmetered["metered"] is False

        summary = (await async_client.get(base, params=params)).json()
        assert summary["usage"]["messages"]["current"] == 2

    @pytest.mark.asyncio
    async def test_unknown_dimension(self, async_client: AsyncClient):
        subscriber = await _register(async_client, BR_PHONE)
        response = await async_client.get(
            f"/api/subscribers/{subscriber['id']}/usage/minutes/check", params={"phone": BR_PHONE},
        )
        assert response.status_code == 422


class TestMaintenanceEndpoints:

    @pytest.mark.asyncio
    async def test_sweep(self, async_client: AsyncClient):
        subscriber = await _register(async_client, PT_PHONE)
        await async_client.post(
            "/api/upgrade-sessions", params={"phone": PT_PHONE},
            json={"subscriber_id": subscriber["id"], "plan_name": "Pro"},
        )
        later = (datetime.now(timezone.utc) + timedelta(days=62)).isoformat()

        first = (await async_client.post("/api/maintenance/sweep", params={"now": later})).json()
        second = (await async_client.post("/api/maintenance/sweep", params={"now": later})).json()

        assert first["total"] == 2
        assert first["report"]["expired_sessions"]["PT"] == 1
        assert second["total"] == 0

    @pytest.mark.asyncio
    async def test_sync(self, async_client: AsyncClient, core, payment_client):
        scope = core.for_phone(PT_PHONE)
        subscriber = await scope.ensure_subscriber(PT_PHONE)
        await scope.subscriptions.activate_plan(subscriber.id, "Pro", external_subscription_id="sub_test_123")

        response = await async_client.post("/api/maintenance/sync")

        reports = {r["jurisdiction"]: r for r in response.json()}
        assert reports["PT"]["synced"] == 1
        assert reports["BR"]["checked"] == 0
        payment_client.get_subscription.assert_awaited_with("sub_test_123")

    @pytest.mark.asyncio
    async def test_invalidate_plans(self, async_client: AsyncClient):
        response = await async_client.post("/api/maintenance/plans/invalidate")
        assert response.json() == {"status": "invalidated"}
