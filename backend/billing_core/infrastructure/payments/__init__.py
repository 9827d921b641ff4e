"""
Payments Infrastructure Module

Stripe checkout, webhook decoding and subscription lookups.
"""

from billing_core.infrastructure.payments.stripe_service import (
    StripeService,
    get_stripe_service,
)

__all__ = ["StripeService", "get_stripe_service"]
