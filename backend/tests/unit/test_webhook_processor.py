"""
Unit tests for the webhook reconciliation processor.

Events are fed in decoded form; signature handling is covered by the
Stripe service and route tests.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock

import pytest

from billing_core.domain.jurisdiction import MeteredDimension
from billing_core.domain.subscription import BillingCycle, Subscription, SubscriptionStatus, SyncStatus
from billing_core.domain.upgrade import UpgradeSessionStatus
from billing_core.infrastructure.exceptions import DatabaseError
from conftest import PT_PHONE, make_event


def _epoch(moment: datetime) -> int:
    return int(moment.timestamp())


async def _checkout_session(scope, subscriber, plan_name="Pro"):
    session = await scope.upgrades.create_session(subscriber.id, plan_name, phone=PT_PHONE)
    return await scope.upgrades.start_checkout(session.id)


def _checkout_event(event_id, session, subscriber, event_type="checkout.session.completed", **data):
    payload = {
        "id": session.external_checkout_id,
        "customer": "cus_pt_1",
        "subscription": "sub_pt_1",
        "payment_status": "paid",
    }
    payload.update(data)
    return make_event(
        event_id,
        event_type,
        payload,
        session_id=session.id,
        subscriber_id=subscriber.id,
        plan_name=session.plan_name,
        billing_cycle=session.billing_cycle.value,
        jurisdiction=session.jurisdiction,
        phone=PT_PHONE,
    )


def _subscription_event(event_id, event_type, subscriber, status="active", **data):
    payload = {
        "id": "sub_pt_1",
        "status": status,
        "customer": "cus_pt_1",
        "current_period_start": _epoch(datetime(2026, 6, 1, tzinfo=timezone.utc)),
        "current_period_end": _epoch(datetime(2026, 7, 1, tzinfo=timezone.utc)),
        "items": {"data": [{"price": {"recurring": {"interval": "month"}}}]},
    }
    payload.update(data)
    return make_event(
        event_id,
        event_type,
        payload,
        subscriber_id=subscriber.id,
        plan_name="Pro",
        jurisdiction="PT",
    )


class TestCheckoutEvents:

    @pytest.mark.asyncio
    async def test_portuguese_pro_monthly_checkout(self, processor, pt_scope, pt_subscriber):
        """+351911111111 buys Pro monthly at 19.90 and the checkout completes."""
        await pt_scope.subscriptions.ensure_entitlements(pt_subscriber.id)
        session = await _checkout_session(pt_scope, pt_subscriber)
        assert session.amount == pytest.approx(19.90)
        assert session.billing_cycle == BillingCycle.MONTHLY

        result = await processor.process(_checkout_event("evt_1", session, pt_subscriber))

        assert result.status == "processed"
        assert result.jurisdiction == "PT"
        active = await pt_scope.subscriptions.find_active(pt_subscriber.id)
        assert active.plan_name == "Pro"
        assert active.external_subscription_id == "sub_pt_1"
        assert active.external_customer_id == "cus_pt_1"
        finished = await pt_scope.upgrades.get(session.id)
        assert finished.status == UpgradeSessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_replay_is_idempotent(self, processor, pt_scope, pt_subscriber):
        session = await _checkout_session(pt_scope, pt_subscriber)
        event = _checkout_event("evt_replay", session, pt_subscriber)

        first = await processor.process(event)
        second = await processor.process(event)

        assert first.status == "processed"
        assert second.status == "already_processed"
        subscriptions = await pt_scope.subscriptions.list_for_subscriber(pt_subscriber.id)
        assert len([s for s in subscriptions if s.status == SubscriptionStatus.ACTIVE]) == 1

    @pytest.mark.asyncio
    async def test_redelivery_under_new_event_id_is_harmless(self, processor, pt_scope, pt_subscriber):
        session = await _checkout_session(pt_scope, pt_subscriber)

        await processor.process(_checkout_event("evt_a", session, pt_subscriber))
        result = await processor.process(_checkout_event("evt_b", session, pt_subscriber))

        assert result.status == "processed"
        assert "already completed" in result.detail
        active = await pt_scope.subscriptions.list_by_status(SubscriptionStatus.ACTIVE)
        assert len([s for s in active if s.subscriber_id == pt_subscriber.id]) == 1

    @pytest.mark.asyncio
    async def test_unpaid_checkout_waits_for_async_payment(self, processor, pt_scope, pt_subscriber):
        session = await _checkout_session(pt_scope, pt_subscriber)

        pending = await processor.process(
            _checkout_event("evt_c1", session, pt_subscriber, payment_status="unpaid")
        )
        assert pending.detail == "awaiting asynchronous payment"
        assert (await pt_scope.upgrades.get(session.id)).status == UpgradeSessionStatus.PAYMENT_PROCESSING

        await processor.process(_checkout_event(
            "evt_c2", session, pt_subscriber, event_type="checkout.session.async_payment_succeeded",
        ))

        assert (await pt_scope.upgrades.get(session.id)).status == UpgradeSessionStatus.PAYMENT_CONFIRMED
        assert (await pt_scope.subscriptions.find_active(pt_subscriber.id)).plan_name == "Pro"

    @pytest.mark.asyncio
    async def test_async_payment_failure(self, processor, pt_scope, pt_subscriber):
        session = await _checkout_session(pt_scope, pt_subscriber)

        await processor.process(_checkout_event(
            "evt_f", session, pt_subscriber, event_type="checkout.session.async_payment_failed",
        ))

        assert (await pt_scope.upgrades.get(session.id)).status == UpgradeSessionStatus.PAYMENT_FAILED

    @pytest.mark.asyncio
    async def test_checkout_expired_then_completed_is_a_noop(self, processor, pt_scope, pt_subscriber):
        session = await _checkout_session(pt_scope, pt_subscriber)

        await processor.process(_checkout_event(
            "evt_x", session, pt_subscriber, event_type="checkout.session.expired",
        ))
        late = await processor.process(_checkout_event("evt_y", session, pt_subscriber))

        assert (await pt_scope.upgrades.get(session.id)).status == UpgradeSessionStatus.EXPIRED
        assert late.detail == "session already expired"
        assert await pt_scope.store.find_active_subscription(pt_subscriber.id) is None

    @pytest.mark.asyncio
    async def test_session_located_by_checkout_id_without_metadata(self, processor, pt_scope, pt_subscriber):
        session = await _checkout_session(pt_scope, pt_subscriber)
        event = make_event(
            "evt_bare",
            "checkout.session.completed",
            {"id": session.external_checkout_id, "subscription": "sub_bare", "payment_status": "paid"},
        )

        result = await processor.process(event)

        assert result.jurisdiction == "PT"
        assert (await pt_scope.upgrades.get(session.id)).status == UpgradeSessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_checkout_without_subscription_ref_is_attached_later(self, processor, pt_scope, pt_subscriber):
        """Checkout activates Pro locally; the subscription event then correlates that same record."""
        session = await _checkout_session(pt_scope, pt_subscriber)
        await processor.process(_checkout_event("evt_n1", session, pt_subscriber, subscription=None))
        local = await pt_scope.subscriptions.find_active(pt_subscriber.id)
        assert local.plan_name == "Pro"
        assert local.external_subscription_id is None
        await pt_scope.quotas.increment(pt_subscriber.id, MeteredDimension.MESSAGES)

        result = await processor.process(
            _subscription_event("evt_n2", "customer.subscription.updated", pt_subscriber)
        )

        assert result.status == "processed"
        subscriptions = await pt_scope.subscriptions.list_for_subscriber(pt_subscriber.id)
        pro = [s for s in subscriptions if s.plan_name == "Pro"]
        assert len(pro) == 1
        assert pro[0].id == local.id
        assert pro[0].status == SubscriptionStatus.ACTIVE
        assert pro[0].external_subscription_id == "sub_pt_1"
        assert pro[0].current_period_end == datetime(2026, 7, 1, tzinfo=timezone.utc)
        assert pro[0].sync_status == SyncStatus.SYNCED

        check = await pt_scope.quotas.check_limit(pt_subscriber.id, MeteredDimension.MESSAGES)
        assert check.current == 1


class TestSubscriptionEvents:

    @pytest.mark.asyncio
    async def test_subscription_created_before_checkout_completed(self, processor, pt_scope, pt_subscriber):
        """Out of order: the subscription event creates the record, checkout then reuses it."""
        session = await _checkout_session(pt_scope, pt_subscriber)

        created = await processor.process(
            _subscription_event("evt_s1", "customer.subscription.created", pt_subscriber)
        )
        assert created.status == "processed"
        active = await pt_scope.subscriptions.find_active(pt_subscriber.id)
        assert active.external_subscription_id == "sub_pt_1"
        assert active.current_period_end == datetime(2026, 7, 1, tzinfo=timezone.utc)

        await processor.process(_checkout_event("evt_s2", session, pt_subscriber))

        again = await pt_scope.subscriptions.find_active(pt_subscriber.id)
        assert again.id == active.id
        assert (await pt_scope.upgrades.get(session.id)).status == UpgradeSessionStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_subscription_deleted(self, processor, pt_scope, pt_subscriber):
        await processor.process(_subscription_event("evt_d1", "customer.subscription.created", pt_subscriber))

        await processor.process(_subscription_event("evt_d2", "customer.subscription.deleted", pt_subscriber))

        subscription = await pt_scope.store.find_subscription_by_external_id("sub_pt_1")
        assert subscription.status == SubscriptionStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_stale_update_after_cancellation_is_noop(self, processor, pt_scope, pt_subscriber):
        await processor.process(_subscription_event("evt_u1", "customer.subscription.created", pt_subscriber))
        await processor.process(_subscription_event("evt_u2", "customer.subscription.deleted", pt_subscriber))

        result = await processor.process(
            _subscription_event("evt_u3", "customer.subscription.updated", pt_subscriber, status="active")
        )

        assert result.status == "processed"
        assert result.detail.startswith("no-op")
        subscription = await pt_scope.store.find_subscription_by_external_id("sub_pt_1")
        assert subscription.status == SubscriptionStatus.CANCELLED


class TestInvoiceEvents:

    def _invoice(self, event_id, event_type, **data):
        payload = {"id": f"in_{event_id}", "subscription": "sub_pt_1"}
        payload.update(data)
        return make_event(event_id, event_type, payload, jurisdiction="PT")

    @pytest.mark.asyncio
    async def test_payment_failed_with_retry_goes_past_due(self, processor, pt_scope, pt_subscriber):
        await processor.process(_subscription_event("evt_i0", "customer.subscription.created", pt_subscriber))

        await processor.process(self._invoice("evt_i1", "invoice.payment_failed", next_payment_attempt=1780000000))

        subscription = await pt_scope.store.find_subscription_by_external_id("sub_pt_1")
        assert subscription.status == SubscriptionStatus.PAST_DUE

        await processor.process(self._invoice("evt_i2", "invoice.payment_succeeded"))
        subscription = await pt_scope.store.find_subscription_by_external_id("sub_pt_1")
        assert subscription.status == SubscriptionStatus.ACTIVE

    @pytest.mark.asyncio
    async def test_final_payment_failure_goes_unpaid(self, processor, pt_scope, pt_subscriber):
        await processor.process(_subscription_event("evt_j0", "customer.subscription.created", pt_subscriber))

        await processor.process(self._invoice("evt_j1", "invoice.payment_failed", next_payment_attempt=None))

        subscription = await pt_scope.store.find_subscription_by_external_id("sub_pt_1")
        assert subscription.status == SubscriptionStatus.UNPAID

    @pytest.mark.asyncio
    async def test_payment_failed_without_retry_field_stays_past_due(self, processor, pt_scope, pt_subscriber):
        await processor.process(_subscription_event("evt_m0", "customer.subscription.created", pt_subscriber))

        await processor.process(self._invoice("evt_m1", "invoice.payment_failed"))

        subscription = await pt_scope.store.find_subscription_by_external_id("sub_pt_1")
        assert subscription.status == SubscriptionStatus.PAST_DUE

    @pytest.mark.asyncio
    async def test_past_due_keeps_paid_entitlements_and_recovers(self, processor, pt_scope, pt_subscriber):
        """A quota check during the retry window keeps Pro; the recovery payment then succeeds."""
        await processor.process(_subscription_event("evt_r0", "customer.subscription.created", pt_subscriber))
        await processor.process(self._invoice("evt_r1", "invoice.payment_failed", next_payment_attempt=1780000000))

        check = await pt_scope.quotas.check_limit(pt_subscriber.id, MeteredDimension.MESSAGES)
        assert check.plan_name == "Pro"
        assert check.degraded is False
        assert await pt_scope.store.find_active_subscription(pt_subscriber.id) is None

        result = await processor.process(self._invoice("evt_r2", "invoice.payment_succeeded"))

        assert result.status == "processed"
        active = await pt_scope.subscriptions.list_by_status(SubscriptionStatus.ACTIVE)
        mine = [s for s in active if s.subscriber_id == pt_subscriber.id]
        assert len(mine) == 1
        assert mine[0].plan_name == "Pro"

    @pytest.mark.asyncio
    async def test_recovery_cancels_free_tier_started_while_past_due(self, processor, pt_scope, pt_subscriber):
        await processor.process(_subscription_event("evt_q0", "customer.subscription.created", pt_subscriber))
        await processor.process(self._invoice("evt_q1", "invoice.payment_failed", next_payment_attempt=1780000000))
        free_plan = await pt_scope.catalog.get_free_plan("PT")
        free = await pt_scope.store.insert_subscription(Subscription(
            subscriber_id=pt_subscriber.id,
            plan_id=free_plan.id,
            plan_name=free_plan.name,
            jurisdiction="PT",
            current_period_start=datetime(2026, 6, 10, tzinfo=timezone.utc),
            current_period_end=datetime(2026, 7, 10, tzinfo=timezone.utc),
        ))

        result = await processor.process(self._invoice("evt_q2", "invoice.payment_succeeded"))

        assert result.status == "processed"
        assert (await pt_scope.subscriptions.find_active(pt_subscriber.id)).plan_name == "Pro"
        assert (await pt_scope.subscriptions.get(free.id)).status == SubscriptionStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_invoice_for_unknown_subscription(self, processor):
        result = await processor.process(self._invoice("evt_k", "invoice.payment_succeeded"))
        assert result.detail == "no local subscription"

    @pytest.mark.asyncio
    async def test_invoice_subscription_from_parent_details(self, processor, pt_scope, pt_subscriber):
        await processor.process(_subscription_event("evt_p0", "customer.subscription.created", pt_subscriber))
        event = make_event(
            "evt_p1",
            "invoice.payment_failed",
            {
                "id": "in_p1",
                "parent": {"subscription_details": {"subscription": "sub_pt_1"}},
                "next_payment_attempt": 1780000000,
            },
        )

        result = await processor.process(event)

        assert result.jurisdiction == "PT"
        subscription = await pt_scope.store.find_subscription_by_external_id("sub_pt_1")
        assert subscription.status == SubscriptionStatus.PAST_DUE


class TestProcessorFailures:

    @pytest.mark.asyncio
    async def test_unknown_event_type_is_ignored_and_recorded(self, processor, br_scope):
        result = await processor.process(make_event("evt_unknown", "customer.created", {"id": "cus_1"}))

        assert result.status == "ignored"
        assert result.jurisdiction == "BR"
        assert await br_scope.store.is_event_processed("evt_unknown")

    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, processor, pt_scope, pt_subscriber):
        await processor.process(_subscription_event("evt_r0", "customer.subscription.created", pt_subscriber))
        store = pt_scope.store
        original = store.find_subscription_by_external_id
        store.find_subscription_by_external_id = AsyncMock(side_effect=[
            DatabaseError("timeout", operation="select", table="subscriptions"),
            await original("sub_pt_1"),
        ])

        result = await processor.process(
            TestInvoiceEvents()._invoice("evt_r1", "invoice.payment_succeeded")
        )

        assert result.status == "processed"
        assert store.find_subscription_by_external_id.await_count == 2

    @pytest.mark.asyncio
    async def test_persistent_failure_is_not_marked_processed(self, processor, pt_scope):
        pt_scope.store.find_subscription_by_external_id = AsyncMock(
            side_effect=DatabaseError("down", operation="select", table="subscriptions")
        )

        with pytest.raises(DatabaseError):
            await processor.process(TestInvoiceEvents()._invoice("evt_down", "invoice.payment_failed"))

        assert not await pt_scope.store.is_event_processed("evt_down")
