"""
Subscription API Routes

Plan catalog, active-subscription lookups and operator-driven status
changes. All writes go through the subscription state machine.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Query, status

from billing_core.api.dependencies import ScopeDep
from billing_core.domain.subscription import (
    CreateSubscriptionRequest,
    Plan,
    Subscription,
    SubscriptionListResponse,
    SubscriptionStatus,
    TransitionRequest,
)


logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# Plan Catalog
# =============================================================================

@router.get("/plans", response_model=List[Plan])
async def list_plans(scope: ScopeDep):
    return await scope.catalog.list_plans(scope.code)


@router.get("/plans/upgrades", response_model=List[Plan])
async def list_upgrade_plans(scope: ScopeDep):
    """Paid plans a subscriber can upgrade to."""
    return await scope.catalog.list_upgrade_plans(scope.code)


# =============================================================================
# Subscription Endpoints
# =============================================================================

@router.get("/subscribers/{subscriber_id}/subscription", response_model=Subscription)
async def get_active_subscription(subscriber_id: str, scope: ScopeDep):
    """
    Get the subscriber's active subscription.

    Starts the free tier if the subscriber has none.
    """
    await scope.get_subscriber(subscriber_id)
    return await scope.subscriptions.ensure_entitlements(subscriber_id)


@router.get("/subscribers/{subscriber_id}/subscriptions", response_model=SubscriptionListResponse)
async def list_subscriptions(
    subscriber_id: str,
    scope: ScopeDep,
    limit: int = Query(default=50, ge=1, le=500),
):
    subscriptions = await scope.subscriptions.list_for_subscriber(subscriber_id, limit=limit)
    return SubscriptionListResponse(jurisdiction=scope.code, subscriptions=subscriptions)


@router.get("/subscriptions", response_model=SubscriptionListResponse)
async def list_subscriptions_by_status(
    scope: ScopeDep,
    status_filter: Optional[SubscriptionStatus] = Query(default=None, alias="status"),
    limit: int = Query(default=100, ge=1, le=500),
):
    subscriptions = await scope.subscriptions.list_by_status(
        status_filter or SubscriptionStatus.ACTIVE, limit=limit,
    )
    return SubscriptionListResponse(jurisdiction=scope.code, subscriptions=subscriptions)


@router.post("/subscriptions", response_model=Subscription, status_code=status.HTTP_201_CREATED)
async def create_subscription(request: CreateSubscriptionRequest, scope: ScopeDep):
    """Create an active subscription. 409 if the subscriber already has one."""
    await scope.get_subscriber(request.subscriber_id)
    plan = await scope.catalog.require_plan(request.plan_name, scope.code)
    return await scope.subscriptions.create_subscription(
        subscriber_id=request.subscriber_id,
        plan_id=plan.id,
        billing_cycle=request.billing_cycle,
    )


@router.get("/subscriptions/{subscription_id}", response_model=Subscription)
async def get_subscription(subscription_id: str, scope: ScopeDep):
    return await scope.subscriptions.get(subscription_id)


@router.post("/subscriptions/{subscription_id}/transition", response_model=Subscription)
async def transition_subscription(
    subscription_id: str,
    request: TransitionRequest,
    scope: ScopeDep,
):
    """Move a subscription to a new status. 409 on an illegal transition."""
    return await scope.subscriptions.transition(subscription_id, request.target_status)
