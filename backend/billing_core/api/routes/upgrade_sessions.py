"""
Upgrade Session API Routes

The user-driven half of the plan-change workflow. Payment confirmation
arrives separately through the Stripe webhook.
"""

import logging

from fastapi import APIRouter, status

from billing_core.api.dependencies import ScopeDep
from billing_core.domain.upgrade import (
    AdvanceStepRequest,
    CreateUpgradeSessionRequest,
    RecordAttemptRequest,
    StartCheckoutRequest,
    UpgradeAttempt,
    UpgradeSession,
    UpgradeSessionDetail,
)
from billing_core.infrastructure.exceptions import BillingCoreError, NotFoundError


logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/upgrade-sessions", response_model=UpgradeSession, status_code=status.HTTP_201_CREATED)
async def create_upgrade_session(request: CreateUpgradeSessionRequest, scope: ScopeDep):
    """Open an upgrade session. 409 if the subscriber already has a live one."""
    subscriber = await scope.get_subscriber(request.subscriber_id)
    return await scope.upgrades.create_session(
        subscriber_id=subscriber.id,
        plan_name=request.plan_name,
        billing_cycle=request.billing_cycle,
        amount=request.amount,
        phone=request.phone or subscriber.phone,
        step=request.step,
    )


@router.get("/upgrade-sessions/{session_id}", response_model=UpgradeSessionDetail)
async def get_upgrade_session(session_id: str, scope: ScopeDep):
    session = await scope.upgrades.get(session_id)
    attempts = await scope.upgrades.list_attempts(session_id)
    return UpgradeSessionDetail(session=session, attempts=attempts)


@router.get("/subscribers/{subscriber_id}/upgrade-session", response_model=UpgradeSession)
async def get_live_upgrade_session(subscriber_id: str, scope: ScopeDep):
    """The subscriber's live session, if any."""
    session = await scope.upgrades.find_live(subscriber_id)
    if session is None:
        raise NotFoundError(
            f"No live upgrade session for subscriber {subscriber_id}",
            entity="upgrade_session",
            key=subscriber_id,
        )
    return session


@router.post("/upgrade-sessions/{session_id}/step", response_model=UpgradeSession)
async def advance_upgrade_step(session_id: str, request: AdvanceStepRequest, scope: ScopeDep):
    return await scope.upgrades.advance_step(session_id, request.step)


@router.post(
    "/upgrade-sessions/{session_id}/attempts",
    response_model=UpgradeAttempt,
    status_code=status.HTTP_201_CREATED,
)
async def record_upgrade_attempt(session_id: str, request: RecordAttemptRequest, scope: ScopeDep):
    await scope.upgrades.get(session_id)
    attempt = await scope.upgrades.record_attempt(
        session_id, request.step, request.success, request.error_message,
    )
    if attempt is None:
        raise BillingCoreError(
            f"Could not record attempt for upgrade session {session_id}",
            details={"session_id": session_id},
        )
    return attempt


@router.post("/upgrade-sessions/{session_id}/checkout", response_model=UpgradeSession)
async def start_upgrade_checkout(session_id: str, request: StartCheckoutRequest, scope: ScopeDep):
    """Create the Stripe checkout and move the session to payment processing."""
    return await scope.upgrades.start_checkout(session_id, request.customer_email)


@router.post("/upgrade-sessions/{session_id}/cancel", response_model=UpgradeSession)
async def cancel_upgrade_session(session_id: str, scope: ScopeDep):
    return await scope.upgrades.cancel(session_id)
