"""
Stripe Payment Service

Thin payment-provider client for the billing core. It creates hosted
checkout sessions, verifies and decodes webhooks into ``PaymentEvent``
objects, and fetches subscriptions for the sync pass. Nothing here touches
billing state; the webhook processor owns that.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import stripe
from stripe import StripeError

from billing_core.config.settings import get_settings
from billing_core.domain.events import CheckoutSession, ExternalSubscription, PaymentEvent
from billing_core.infrastructure.exceptions import (
    ConfigurationError,
    PaymentProviderError,
    SignatureError,
)


logger = logging.getLogger(__name__)


def _epoch(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _string_metadata(raw: Optional[Dict[str, Any]]) -> Dict[str, str]:
    return {str(k): str(v) for k, v in (raw or {}).items() if v is not None}


def event_metadata(obj: Dict[str, Any]) -> Dict[str, str]:
    """
    Correlation metadata for an event subject.

    Invoices carry none of their own; their subscription's metadata is
    copied onto them under ``subscription_details`` (or
    ``parent.subscription_details`` in newer API versions).
    """
    metadata = _string_metadata(obj.get("metadata"))
    for details in (
        obj.get("subscription_details"),
        (obj.get("parent") or {}).get("subscription_details"),
    ):
        if details:
            for key, value in _string_metadata(details.get("metadata")).items():
                metadata.setdefault(key, value)
    return metadata


class StripeService:
    """
    Stripe payment processing service.

    Stripe's SDK is synchronous; calls run in a worker thread so the event
    loop stays free.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        success_url: Optional[str] = None,
        cancel_url: Optional[str] = None,
    ):
        settings = get_settings()
        self._api_key = api_key or settings.stripe_secret_key
        self._webhook_secret = webhook_secret or settings.stripe_webhook_secret
        self._success_url = success_url or settings.checkout_success_url
        self._cancel_url = cancel_url or settings.checkout_cancel_url

        if self._api_key:
            stripe.api_key = self._api_key

    @property
    def is_configured(self) -> bool:
        return bool(self._api_key)

    def _require_api_key(self) -> None:
        if not self._api_key:
            raise ConfigurationError(
                "Stripe is not configured",
                missing_keys=["STRIPE_SECRET_KEY"],
            )

    # =========================================================================
    # Checkout Session
    # =========================================================================

    async def create_checkout_session(
        self,
        price_ref: str,
        customer_email: Optional[str] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> CheckoutSession:
        """
        Create a hosted Checkout Session for a subscription.

        ``metadata`` is attached to both the checkout session and the
        subscription it creates, so later subscription and invoice events
        can be correlated back to the subscriber.

        Raises:
            ConfigurationError: no API key
            PaymentProviderError: Stripe rejected or failed the call
        """
        self._require_api_key()
        metadata = dict(metadata or {})

        params: Dict[str, Any] = {
            "line_items": [{"price": price_ref, "quantity": 1}],
            "mode": "subscription",
            "success_url": f"{self._success_url}?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": self._cancel_url,
            "allow_promotion_codes": True,
            "billing_address_collection": "auto",
            "metadata": metadata,
            "subscription_data": {"metadata": metadata},
        }
        if customer_email:
            params["customer_email"] = customer_email

        try:
            session = await asyncio.to_thread(stripe.checkout.Session.create, **params)
        except StripeError as e:
            logger.error(f"Failed to create checkout session: {e}")
            raise PaymentProviderError(
                f"Failed to create checkout: {e.user_message or e}",
                details={"price_ref": price_ref},
                original_error=e,
            )

        logger.info(
            f"Created checkout session {session.id} for subscriber "
            f"{metadata.get('subscriber_id')} ({metadata.get('plan_name')})"
        )
        return CheckoutSession(id=session.id, url=session.url)

    # =========================================================================
    # Subscription Queries
    # =========================================================================

    async def get_subscription(self, subscription_id: str) -> ExternalSubscription:
        """
        Retrieve a subscription by ID.

        Raises:
            PaymentProviderError: Stripe call failed
        """
        self._require_api_key()
        try:
            raw = await asyncio.to_thread(stripe.Subscription.retrieve, subscription_id)
        except StripeError as e:
            logger.warning(f"Failed to retrieve subscription {subscription_id}: {e}")
            raise PaymentProviderError(
                f"Failed to retrieve subscription {subscription_id}",
                details={"subscription_id": subscription_id},
                original_error=e,
            )
        return self.to_external_subscription(raw)

    @staticmethod
    def to_external_subscription(raw: Any) -> ExternalSubscription:
        """Map a Stripe subscription object (or plain dict) to the core's view."""
        data = raw.to_dict() if hasattr(raw, "to_dict") else dict(raw)
        items = (data.get("items") or {}).get("data") or []
        item = items[0] if items else {}
        price = item.get("price") or {}

        customer = data.get("customer")
        if isinstance(customer, dict):
            customer = customer.get("id")

        return ExternalSubscription(
            id=data["id"],
            status=data.get("status", ""),
            current_period_start=_epoch(
                data.get("current_period_start", item.get("current_period_start"))
            ),
            current_period_end=_epoch(
                data.get("current_period_end", item.get("current_period_end"))
            ),
            customer_id=customer,
            interval=(price.get("recurring") or {}).get("interval"),
            metadata=_string_metadata(data.get("metadata")),
        )

    # =========================================================================
    # Webhook Verification
    # =========================================================================

    def decode_webhook(self, payload: bytes, signature: str) -> PaymentEvent:
        """
        Verify a webhook signature and decode the event.

        Raises:
            ConfigurationError: no webhook secret
            SignatureError: bad signature or malformed payload
        """
        if not self._webhook_secret:
            raise ConfigurationError(
                "Stripe webhook secret is not configured",
                missing_keys=["STRIPE_WEBHOOK_SECRET"],
            )

        try:
            stripe.Webhook.construct_event(payload, signature, self._webhook_secret)
            raw = json.loads(payload)
        except ValueError as e:
            logger.error(f"SECURITY: rejected webhook with invalid payload: {e}")
            raise SignatureError(f"Invalid payload: {e}", original_error=e)
        except stripe.SignatureVerificationError as e:
            logger.error(f"SECURITY: rejected webhook with invalid signature: {e}")
            raise SignatureError("Invalid signature", original_error=e)

        return self.to_payment_event(raw)

    @staticmethod
    def to_payment_event(raw: Dict[str, Any]) -> PaymentEvent:
        obj = (raw.get("data") or {}).get("object") or {}
        return PaymentEvent(
            id=raw["id"],
            type=raw.get("type", ""),
            object_id=obj.get("id"),
            metadata=event_metadata(obj),
            timestamp=_epoch(raw.get("created")),
            data=obj,
        )


# =============================================================================
# Singleton Instance (Dependency Injection Ready)
# =============================================================================

_stripe_service_instance: Optional[StripeService] = None


def get_stripe_service() -> StripeService:
    """Get or create Stripe service singleton."""
    global _stripe_service_instance

    if _stripe_service_instance is None:
        _stripe_service_instance = StripeService()

    return _stripe_service_instance
