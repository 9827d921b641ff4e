"""
Webhook Reconciliation Processor

Applies decoded payment-provider events to the subscription and upgrade
session state machines.

Events arrive at least once and in any order, so every handler is safe to
re-run from scratch: it looks records up by their correlation ids and only
moves state through the machines' own transitions. The processed-event
ledger is a fast path for redeliveries, not what correctness rests on.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

from billing_core.domain.events import PaymentEvent, PaymentEventType, WebhookResult
from billing_core.domain.subscription import (
    BillingCycle,
    SubscriptionStatus,
    cycle_from_interval,
)
from billing_core.domain.upgrade import SUCCESS_SESSION_STATUSES, UpgradeSession
from billing_core.infrastructure.exceptions import InvalidTransitionError
from billing_core.infrastructure.services.entitlements import EntitlementCore, JurisdictionScope
from billing_core.infrastructure.services.retry import retry_with_backoff


logger = logging.getLogger(__name__)

Handler = Callable[[JurisdictionScope, PaymentEvent], Awaitable[str]]


def _from_epoch(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _first_item(data: Dict[str, Any]) -> Dict[str, Any]:
    items = (data.get("items") or {}).get("data") or []
    return items[0] if items else {}


def _period_bound(data: Dict[str, Any], key: str) -> Optional[datetime]:
    """Period bounds live on the subscription or, in newer API versions, on its items."""
    value = data.get(key)
    if value is None:
        value = _first_item(data).get(key)
    return _from_epoch(value)


def _ref(value: Any) -> Optional[str]:
    """Provider references are either an id or an expanded object."""
    if isinstance(value, dict):
        return value.get("id")
    return value


def _invoice_subscription(data: Dict[str, Any]) -> Optional[str]:
    ref = _ref(data.get("subscription"))
    if ref:
        return ref
    details = (data.get("parent") or {}).get("subscription_details") or {}
    return _ref(details.get("subscription"))


def _billing_cycle(event: PaymentEvent) -> Optional[BillingCycle]:
    raw = event.metadata.get("billing_cycle")
    if raw:
        try:
            return BillingCycle(raw)
        except ValueError:
            logger.warning(f"Unknown billing_cycle {raw!r} in event {event.id}")
    price = _first_item(event.data).get("price") or {}
    return cycle_from_interval((price.get("recurring") or {}).get("interval"))


class WebhookReconciliationProcessor:
    """Idempotent application of provider events."""

    def __init__(
        self,
        core: EntitlementCore,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 10.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._core = core
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._max_delay = max_delay
        self._sleep = sleep
        self._handlers: Dict[PaymentEventType, Handler] = {
            PaymentEventType.CHECKOUT_COMPLETED: self._on_checkout_completed,
            PaymentEventType.CHECKOUT_ASYNC_PAYMENT_SUCCEEDED: self._on_checkout_async_succeeded,
            PaymentEventType.CHECKOUT_ASYNC_PAYMENT_FAILED: self._on_checkout_async_failed,
            PaymentEventType.CHECKOUT_EXPIRED: self._on_checkout_expired,
            PaymentEventType.SUBSCRIPTION_CREATED: self._on_subscription_changed,
            PaymentEventType.SUBSCRIPTION_UPDATED: self._on_subscription_changed,
            PaymentEventType.SUBSCRIPTION_DELETED: self._on_subscription_deleted,
            PaymentEventType.INVOICE_PAYMENT_FAILED: self._on_invoice_payment_failed,
            PaymentEventType.INVOICE_PAYMENT_SUCCEEDED: self._on_invoice_payment_succeeded,
        }

    @classmethod
    def from_settings(cls, settings, core: EntitlementCore) -> "WebhookReconciliationProcessor":
        return cls(
            core,
            max_retries=settings.max_retries,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
        )

    async def process(self, event: PaymentEvent) -> WebhookResult:
        """
        Apply one event.

        Raises:
            UpstreamError: storage kept failing after retries; the provider
                should redeliver.
        """
        scope = await self._locate_scope(event)

        if await scope.store.is_event_processed(event.id):
            logger.info(f"Event {event.id} already processed, skipping")
            return WebhookResult(
                event_id=event.id,
                event_type=event.type,
                status="already_processed",
                jurisdiction=scope.code,
            )

        handler = self._handlers.get(event.known_type)
        if handler is None:
            logger.info(f"Unhandled event type: {event.type}")
            await scope.store.mark_event_processed(event.id, event.type)
            return WebhookResult(
                event_id=event.id,
                event_type=event.type,
                status="ignored",
                jurisdiction=scope.code,
            )

        try:
            detail = await retry_with_backoff(
                lambda: handler(scope, event),
                f"Webhook {event.type} ({event.id})",
                max_retries=self._max_retries,
                base_delay=self._base_delay,
                max_delay=self._max_delay,
                sleep=self._sleep,
            )
        except InvalidTransitionError as e:
            logger.info(f"Event {event.id} ({event.type}) is a no-op: {e.message}")
            detail = f"no-op: {e.message}"

        await scope.store.mark_event_processed(event.id, event.type)
        logger.info(f"Processed {event.type} {event.id} in {scope.code}: {detail}")
        return WebhookResult(
            event_id=event.id,
            event_type=event.type,
            status="processed",
            jurisdiction=scope.code,
            detail=detail,
        )

    # =========================================================================
    # Scope Location
    # =========================================================================

    async def _locate_scope(self, event: PaymentEvent) -> JurisdictionScope:
        """Pick the store that governs the event's subject."""
        supported = {config.code for config in self._core.resolver.supported()}
        code = (event.metadata.get("jurisdiction") or "").upper()
        if code in supported:
            return self._core.for_jurisdiction(code)

        phone = event.metadata.get("phone")
        if phone:
            return self._core.for_phone(phone)

        for scope in self._core.scopes():
            if await self._owns(scope, event):
                return scope

        logger.warning(
            f"Could not locate jurisdiction for event {event.id}; "
            f"using default {self._core.resolver.default_code}"
        )
        return self._core.for_jurisdiction(self._core.resolver.default_code)

    async def _owns(self, scope: JurisdictionScope, event: PaymentEvent) -> bool:
        session_id = event.metadata.get("session_id")
        if session_id and await scope.store.get_upgrade_session(session_id):
            return True
        if event.type.startswith("checkout.") and event.object_id:
            if await scope.store.find_upgrade_session_by_checkout(event.object_id):
                return True
        external_id = self._subscription_ref(event)
        if external_id and await scope.store.find_subscription_by_external_id(external_id):
            return True
        return False

    @staticmethod
    def _subscription_ref(event: PaymentEvent) -> Optional[str]:
        if event.type.startswith("customer.subscription."):
            return event.object_id
        if event.type.startswith("invoice."):
            return _invoice_subscription(event.data)
        return _ref(event.data.get("subscription"))

    async def _find_session(self, scope: JurisdictionScope, event: PaymentEvent) -> Optional[UpgradeSession]:
        session_id = event.metadata.get("session_id")
        if session_id:
            session = await scope.store.get_upgrade_session(session_id)
            if session is not None:
                return session
        if event.object_id:
            return await scope.upgrades.find_by_checkout(event.object_id)
        return None

    # =========================================================================
    # Checkout Handlers
    # =========================================================================

    async def _settle_checkout(
        self,
        scope: JurisdictionScope,
        event: PaymentEvent,
        confirmed_async: bool,
    ) -> str:
        session = await self._find_session(scope, event)
        if session is None:
            logger.warning(f"No upgrade session for checkout {event.object_id} (event {event.id})")
            return "no matching upgrade session"

        if session.status in SUCCESS_SESSION_STATUSES:
            return f"session already {session.status.value}"
        if session.is_terminal:
            logger.warning(
                f"Checkout {event.object_id} settled for session {session.id} "
                f"which is already {session.status.value}"
            )
            return f"session already {session.status.value}"

        if not confirmed_async and event.data.get("payment_status") == "unpaid":
            return "awaiting asynchronous payment"

        # Subscription before session: a completed session implies an active plan
        subscription = await scope.subscriptions.activate_plan(
            subscriber_id=session.subscriber_id,
            plan_name=session.plan_name,
            billing_cycle=session.billing_cycle,
            external_subscription_id=_ref(event.data.get("subscription")),
            external_customer_id=_ref(event.data.get("customer")),
        )
        if confirmed_async:
            session = await scope.upgrades.confirm_payment(session.id)
        else:
            session = await scope.upgrades.complete(session.id)
        return f"subscription {subscription.id} active; session {session.status.value}"

    async def _on_checkout_completed(self, scope: JurisdictionScope, event: PaymentEvent) -> str:
        return await self._settle_checkout(scope, event, confirmed_async=False)

    async def _on_checkout_async_succeeded(self, scope: JurisdictionScope, event: PaymentEvent) -> str:
        return await self._settle_checkout(scope, event, confirmed_async=True)

    async def _on_checkout_async_failed(self, scope: JurisdictionScope, event: PaymentEvent) -> str:
        session = await self._find_session(scope, event)
        if session is None:
            return "no matching upgrade session"
        session = await scope.upgrades.mark_payment_failed(session.id)
        return f"session {session.status.value}"

    async def _on_checkout_expired(self, scope: JurisdictionScope, event: PaymentEvent) -> str:
        session = await self._find_session(scope, event)
        if session is None:
            return "no matching upgrade session"
        session = await scope.upgrades.expire_now(session.id)
        return f"session {session.status.value}"

    # =========================================================================
    # Subscription Handlers
    # =========================================================================

    async def _reconcile(self, scope: JurisdictionScope, event: PaymentEvent, status: str) -> str:
        subscription = await scope.subscriptions.reconcile_from_external(
            subscriber_id=event.metadata.get("subscriber_id"),
            external_subscription_id=event.object_id,
            external_status=status,
            period_end=_period_bound(event.data, "current_period_end"),
            period_start=_period_bound(event.data, "current_period_start"),
            plan_name=event.metadata.get("plan_name"),
            billing_cycle=_billing_cycle(event),
            external_customer_id=_ref(event.data.get("customer")),
        )
        if subscription is None:
            return "no local subscription"
        return f"subscription {subscription.id} {subscription.status.value}"

    async def _on_subscription_changed(self, scope: JurisdictionScope, event: PaymentEvent) -> str:
        return await self._reconcile(scope, event, event.data.get("status", ""))

    async def _on_subscription_deleted(self, scope: JurisdictionScope, event: PaymentEvent) -> str:
        return await self._reconcile(scope, event, "canceled")

    # =========================================================================
    # Invoice Handlers
    # =========================================================================

    async def _on_invoice_payment_failed(self, scope: JurisdictionScope, event: PaymentEvent) -> str:
        external_id = _invoice_subscription(event.data)
        local = await scope.store.find_subscription_by_external_id(external_id) if external_id else None
        if local is None:
            return "no local subscription"

        if local.status == SubscriptionStatus.ACTIVE:
            local = await scope.subscriptions.transition(local.id, SubscriptionStatus.PAST_DUE)

        # An explicit null means the provider has given up retrying
        if "next_payment_attempt" in event.data and event.data["next_payment_attempt"] is None:
            local = await scope.subscriptions.transition(local.id, SubscriptionStatus.UNPAID)

        return f"subscription {local.id} {local.status.value}"

    async def _on_invoice_payment_succeeded(self, scope: JurisdictionScope, event: PaymentEvent) -> str:
        external_id = _invoice_subscription(event.data)
        local = await scope.store.find_subscription_by_external_id(external_id) if external_id else None
        if local is None:
            return "no local subscription"
        local = await scope.subscriptions.transition(local.id, SubscriptionStatus.ACTIVE)
        return f"subscription {local.id} {local.status.value}"
