"""
Subscriber API Routes

First-contact registration and subscriber lookups. The subscriber's phone
number decides which store it lives in.
"""

import logging

from fastapi import APIRouter, status

from billing_core.api.dependencies import CoreDep, ScopeDep
from billing_core.domain.subscription import EnsureSubscriberRequest, Subscriber


logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/subscribers", response_model=Subscriber, status_code=status.HTTP_200_OK)
async def ensure_subscriber(request: EnsureSubscriberRequest, core: CoreDep):
    """Get or create the subscriber for a phone number and start its free tier."""
    scope = core.for_phone(request.phone)
    subscriber = await scope.ensure_subscriber(request.phone, request.name)
    await scope.subscriptions.ensure_entitlements(subscriber.id)
    return subscriber


@router.get("/subscribers/{subscriber_id}", response_model=Subscriber)
async def get_subscriber(subscriber_id: str, scope: ScopeDep):
    return await scope.get_subscriber(subscriber_id)


@router.post("/subscribers/{subscriber_id}/deactivate", response_model=Subscriber)
async def deactivate_subscriber(subscriber_id: str, scope: ScopeDep):
    return await scope.deactivate_subscriber(subscriber_id)
