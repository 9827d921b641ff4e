"""
Expiry Sweeper

The operation a scheduler calls periodically: time out stale upgrade
sessions and lapsed subscriptions in every configured backend. All changes
go through the state machines' compare-and-swap writes, so overlapping runs
are harmless.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from pydantic import BaseModel, Field

from billing_core.infrastructure.services.entitlements import EntitlementCore


logger = logging.getLogger(__name__)


class SweepReport(BaseModel):
    """Counts of records changed by one sweep, per jurisdiction."""
    ran_at: datetime
    expired_sessions: Dict[str, int] = Field(default_factory=dict)
    expired_subscriptions: Dict[str, int] = Field(default_factory=dict)

    @property
    def total(self) -> int:
        return sum(self.expired_sessions.values()) + sum(self.expired_subscriptions.values())


class ExpirySweeper:
    """Runs expiry across every jurisdiction with a configured backend."""

    def __init__(
        self,
        core: EntitlementCore,
        grace_period: timedelta = timedelta(hours=72),
    ):
        self._core = core
        self._grace = grace_period

    @classmethod
    def from_settings(cls, settings, core: EntitlementCore) -> "ExpirySweeper":
        return cls(core, grace_period=timedelta(hours=settings.subscription_grace_period_hours))

    async def run_once(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or datetime.now(timezone.utc)
        report = SweepReport(ran_at=now)

        for scope in self._core.scopes():
            report.expired_sessions[scope.code] = await scope.upgrades.sweep_expired(now)
            report.expired_subscriptions[scope.code] = await scope.subscriptions.expire_overdue(
                now, grace=self._grace,
            )

        if report.total:
            logger.info(
                f"Expiry sweep: sessions={report.expired_sessions} "
                f"subscriptions={report.expired_subscriptions}"
            )
        return report
