"""
Usage API Routes

Quota gate and usage counters for metered actions. Callers check before
the action and increment after it.
"""

from fastapi import APIRouter

from billing_core.api.dependencies import ScopeDep
from billing_core.domain.jurisdiction import MeteredDimension
from billing_core.domain.usage import IncrementUsageRequest, QuotaCheck, UsageSummary


router = APIRouter()


@router.get("/subscribers/{subscriber_id}/usage", response_model=UsageSummary)
async def get_usage_summary(subscriber_id: str, scope: ScopeDep):
    await scope.get_subscriber(subscriber_id)
    return await scope.quotas.usage_summary(subscriber_id)


@router.get("/subscribers/{subscriber_id}/usage/{dimension}/check", response_model=QuotaCheck)
async def check_quota(subscriber_id: str, dimension: MeteredDimension, scope: ScopeDep):
    """Whether one more ``dimension`` action is allowed this period."""
    return await scope.quotas.check_limit(subscriber_id, dimension)


@router.post("/subscribers/{subscriber_id}/usage")
async def increment_usage(subscriber_id: str, request: IncrementUsageRequest, scope: ScopeDep):
    """Count a performed action. Never fails the caller."""
    counted = await scope.quotas.increment(subscriber_id, request.dimension, request.amount)
    return {"counted": counted, "dimension": request.dimension.value}
