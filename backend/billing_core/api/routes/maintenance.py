"""
Maintenance Routes

The operations a scheduler calls: expiry sweep and provider sync. Running
them more often than needed is harmless.
"""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Query
from pydantic import BaseModel

from billing_core.api.dependencies import CoreDep, SweeperDep
from billing_core.infrastructure.services.entitlements import require_payment_client
from billing_core.infrastructure.services.expiry_sweeper import SweepReport
from billing_core.infrastructure.services.subscription_service import SyncReport


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/maintenance")


class SweepResponse(BaseModel):
    report: SweepReport
    total: int


@router.post("/sweep", response_model=SweepResponse)
async def run_expiry_sweep(
    sweeper: SweeperDep,
    now: Optional[datetime] = Query(default=None, description="Override the sweep clock"),
):
    """Expire stale upgrade sessions and lapsed subscriptions in every backend."""
    report = await sweeper.run_once(now)
    return SweepResponse(report=report, total=report.total)


@router.post("/sync", response_model=List[SyncReport])
async def run_provider_sync(
    core: CoreDep,
    limit: int = Query(default=100, ge=1, le=1000),
):
    """Re-fetch Stripe state for subscriptions awaiting correlation."""
    payment_client = require_payment_client(core)
    reports = []
    for scope in core.scopes():
        reports.append(await scope.subscriptions.sync_pending(payment_client, limit=limit))
    return reports


@router.post("/plans/invalidate")
async def invalidate_plan_cache(core: CoreDep):
    """Drop cached plan lists after catalog changes."""
    core.invalidate_plans()
    logger.info("Plan cache invalidated")
    return {"status": "invalidated"}
