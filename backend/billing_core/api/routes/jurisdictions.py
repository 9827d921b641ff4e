"""
Jurisdiction API Routes

Read-only views of jurisdiction routing.
"""

from typing import List

from fastapi import APIRouter, Query

from billing_core.api.dependencies import CoreDep
from billing_core.domain.jurisdiction import JurisdictionConfig, ResolvedJurisdiction


router = APIRouter()


@router.get("/jurisdictions", response_model=List[JurisdictionConfig])
async def list_jurisdictions(core: CoreDep):
    """Supported jurisdictions and the backend governing each."""
    return core.resolver.supported()


@router.get("/jurisdictions/resolve", response_model=ResolvedJurisdiction)
async def resolve_jurisdiction(
    core: CoreDep,
    phone: str = Query(..., min_length=1, description="Phone number in any format"),
):
    """Resolve a phone number. Unknown prefixes fall back to the default."""
    return core.resolver.resolve(phone)
