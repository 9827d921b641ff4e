"""
Usage Quota Domain Models

Results of quota checks and per-period usage summaries.
"""

from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, Field

from billing_core.domain.jurisdiction import MeteredDimension


class QuotaCheck(BaseModel):
    """Answer to "may this subscriber perform one more metered action?"."""
    allowed: bool
    dimension: MeteredDimension
    current: int = 0
    limit: Optional[int] = None
    plan_name: Optional[str] = None
    jurisdiction: str
    metered: bool = True
    # Set when the check could not complete and the configured fail-open/closed answer was used
    degraded: bool = False

    @property
    def remaining(self) -> Optional[int]:
        if self.limit is None:
            return None
        return max(self.limit - self.current, 0)


class DimensionUsage(BaseModel):
    current: int = 0
    limit: Optional[int] = None
    metered: bool = True


class UsageSummary(BaseModel):
    """Usage for the current billing period across every dimension."""
    subscriber_id: str
    jurisdiction: str
    plan_name: Optional[str] = None
    period_start: datetime
    period_end: datetime
    usage: Dict[MeteredDimension, DimensionUsage] = Field(default_factory=dict)


class IncrementUsageRequest(BaseModel):
    dimension: MeteredDimension
    amount: int = Field(default=1, ge=1)
