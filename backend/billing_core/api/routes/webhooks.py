"""
Stripe Webhook Handler

Verifies Stripe webhook signatures and hands decoded events to the
reconciliation processor.

Responses:
- 200 with the processing outcome (including redeliveries and ignored types)
- 400 on a missing or invalid signature (Stripe does not retry these)
- 503 when storage kept failing (Stripe redelivers later)
"""

import logging

from fastapi import APIRouter, HTTPException, Request, status

from billing_core.api.dependencies import PaymentServiceDep, ProcessorDep
from billing_core.domain.events import WebhookResult
from billing_core.infrastructure.exceptions import SignatureError


logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/webhooks/stripe", response_model=WebhookResult)
async def stripe_webhook(
    request: Request,
    stripe_service: PaymentServiceDep,
    processor: ProcessorDep,
):
    """
    Handle Stripe webhook events.

    Every event is acknowledged once applied; redeliveries of an event that
    was already applied return ``already_processed``.
    """
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    if not signature:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing Stripe signature"
        )

    try:
        event = stripe_service.decode_webhook(payload, signature)
    except SignatureError as e:
        logger.error(f"Webhook signature verification failed: {e.message}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid signature"
        )

    logger.info(f"Processing webhook event: {event.type} ({event.id})")
    return await processor.process(event)
