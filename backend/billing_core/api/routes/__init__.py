# API Routes Module
from billing_core.api.routes import (
    jurisdictions,
    subscribers,
    subscriptions,
    upgrade_sessions,
    usage,
    webhooks,
    maintenance,
)

__all__ = [
    "jurisdictions",
    "subscribers",
    "subscriptions",
    "upgrade_sessions",
    "usage",
    "webhooks",
    "maintenance",
]
