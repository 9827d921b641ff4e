"""
Usage Quota Tracker

Gates metered actions against the active plan's per-period limits.
Counters live in one ``UsagePeriod`` row per subscription billing period,
created lazily on first use and incremented atomically by the store.
"""

import logging
from typing import Tuple

from billing_core.domain.jurisdiction import MeteredDimension, ResolvedJurisdiction
from billing_core.domain.subscription import Plan, Subscription, UsagePeriod
from billing_core.domain.usage import DimensionUsage, QuotaCheck, UsageSummary
from billing_core.infrastructure.db.repositories.base_repository import BillingStore
from billing_core.infrastructure.exceptions import BillingCoreError, ConflictError, NotFoundError
from billing_core.infrastructure.services.plan_catalog import PlanCatalog
from billing_core.infrastructure.services.subscription_service import SubscriptionStateMachine


logger = logging.getLogger(__name__)


class QuotaTracker:
    """
    Quota checks and usage counters for one jurisdiction.

    ``fail_open`` decides the answer when a check cannot be completed
    (storage unavailable, plan catalog incomplete): True lets the action
    through, False blocks it.
    """

    def __init__(
        self,
        store: BillingStore,
        subscriptions: SubscriptionStateMachine,
        catalog: PlanCatalog,
        jurisdiction: ResolvedJurisdiction,
        fail_open: bool = True,
    ):
        self._store = store
        self._subscriptions = subscriptions
        self._catalog = catalog
        self._jurisdiction = jurisdiction
        self._fail_open = fail_open

    async def _current_period(
        self,
        subscriber_id: str,
    ) -> Tuple[Subscription, Plan, UsagePeriod]:
        subscription = await self._subscriptions.ensure_entitlements(subscriber_id)
        plan = await self._catalog.get_plan(subscription.plan_id)
        if plan is None:
            raise NotFoundError(
                f"Plan {subscription.plan_id} of subscription {subscription.id} not found",
                entity="plan",
                key=subscription.plan_id,
            )

        start = subscription.current_period_start
        end = subscription.current_period_end
        period = await self._store.get_usage_period(subscription.id, start, end)
        if period is None:
            try:
                period = await self._store.insert_usage_period(UsagePeriod(
                    subscription_id=subscription.id,
                    subscriber_id=subscriber_id,
                    jurisdiction=self._jurisdiction.code,
                    period_start=start,
                    period_end=end,
                ))
            except ConflictError:
                # Created concurrently
                period = await self._store.get_usage_period(subscription.id, start, end)
                if period is None:
                    raise
        return subscription, plan, period

    async def check_limit(self, subscriber_id: str, dimension: MeteredDimension) -> QuotaCheck:
        """May the subscriber perform one more ``dimension`` action this period?"""
        if not self._jurisdiction.meters(dimension):
            return QuotaCheck(
                allowed=True,
                dimension=dimension,
                jurisdiction=self._jurisdiction.code,
                metered=False,
            )

        try:
            subscription, plan, period = await self._current_period(subscriber_id)
        except BillingCoreError as e:
            logger.warning(
                f"Quota check for {subscriber_id}/{dimension.value} degraded "
                f"(fail_open={self._fail_open}): {e.message}"
            )
            return QuotaCheck(
                allowed=self._fail_open,
                dimension=dimension,
                jurisdiction=self._jurisdiction.code,
                degraded=True,
            )

        limit = plan.limit_for(dimension)
        current = period.count_for(dimension)
        allowed = limit is None or current < limit
        if not allowed:
            logger.info(
                f"Quota exhausted for {subscriber_id}: {dimension.value} {current}/{limit} "
                f"on {plan.name}"
            )
        return QuotaCheck(
            allowed=allowed,
            dimension=dimension,
            current=current,
            limit=limit,
            plan_name=plan.name,
            jurisdiction=self._jurisdiction.code,
        )

    async def increment(
        self,
        subscriber_id: str,
        dimension: MeteredDimension,
        amount: int = 1,
    ) -> bool:
        """Count a performed action. Best-effort: failures are logged, never raised."""
        if not self._jurisdiction.meters(dimension):
            return False
        try:
            subscription, _, _ = await self._current_period(subscriber_id)
            return await self._store.increment_usage(
                subscription.id,
                subscription.current_period_start,
                subscription.current_period_end,
                dimension,
                amount,
            )
        except Exception as e:
            logger.warning(f"Failed to meter {dimension.value} for {subscriber_id}: {e}")
            return False

    async def usage_summary(self, subscriber_id: str) -> UsageSummary:
        """Current-period usage and limits for every dimension."""
        subscription, plan, period = await self._current_period(subscriber_id)
        usage = {}
        for dimension in MeteredDimension:
            metered = self._jurisdiction.meters(dimension)
            usage[dimension] = DimensionUsage(
                current=period.count_for(dimension),
                limit=plan.limit_for(dimension) if metered else None,
                metered=metered,
            )
        return UsageSummary(
            subscriber_id=subscriber_id,
            jurisdiction=self._jurisdiction.code,
            plan_name=plan.name,
            period_start=period.period_start,
            period_end=period.period_end,
            usage=usage,
        )

