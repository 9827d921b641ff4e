"""
Subscription State Machine

Owns the canonical subscription record per subscriber in one store.
Every status change goes through ``transition``, which validates the edge
against ``ALLOWED_TRANSITIONS`` and writes with compare-and-swap on the
current status, so concurrent writers never both win.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel

from billing_core.domain.subscription import (
    BillingCycle,
    Subscription,
    SubscriptionStatus,
    SyncStatus,
    UsagePeriod,
    compute_period,
    is_legal_transition,
    map_external_status,
)
from billing_core.infrastructure.db.repositories.base_repository import BillingStore
from billing_core.infrastructure.exceptions import (
    BillingCoreError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
)
from billing_core.infrastructure.services.plan_catalog import PlanCatalog


logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# Paid subscriptions still owed a payment; they keep their entitlements
DELINQUENT_STATUSES = frozenset({SubscriptionStatus.PAST_DUE, SubscriptionStatus.UNPAID})


class SyncReport(BaseModel):
    """Outcome of one provider sync pass."""
    jurisdiction: str
    checked: int = 0
    synced: int = 0
    failed: int = 0


class SubscriptionStateMachine:
    """
    Subscription lifecycle for one jurisdiction.

    States: active, past_due, cancelled, expired, unpaid. cancelled and
    expired are terminal. A same-status transition is a no-op that still
    applies any bookkeeping effects.
    """

    def __init__(
        self,
        store: BillingStore,
        catalog: PlanCatalog,
        jurisdiction: str,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self._catalog = catalog
        self._jurisdiction = jurisdiction
        self._clock = clock

    # =========================================================================
    # Queries
    # =========================================================================

    async def get(self, subscription_id: str) -> Subscription:
        subscription = await self._store.get_subscription(subscription_id)
        if subscription is None:
            raise NotFoundError(
                f"Subscription {subscription_id} not found",
                entity="subscription",
                key=subscription_id,
            )
        return subscription

    async def find_active(self, subscriber_id: str) -> Subscription:
        subscription = await self._store.find_active_subscription(subscriber_id)
        if subscription is None:
            raise NotFoundError(
                f"No active subscription for subscriber {subscriber_id}",
                entity="subscription",
                key=subscriber_id,
            )
        return subscription

    async def list_for_subscriber(self, subscriber_id: str, limit: int = 100) -> List[Subscription]:
        return await self._store.list_subscriptions(subscriber_id=subscriber_id, limit=limit)

    async def list_by_status(self, status: SubscriptionStatus, limit: int = 100) -> List[Subscription]:
        return await self._store.list_subscriptions(
            status=status, jurisdiction=self._jurisdiction, limit=limit,
        )

    # =========================================================================
    # Commands
    # =========================================================================

    async def create_subscription(
        self,
        subscriber_id: str,
        plan_id: str,
        billing_cycle: BillingCycle = BillingCycle.MONTHLY,
        external_subscription_id: Optional[str] = None,
        external_customer_id: Optional[str] = None,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
    ) -> Subscription:
        """
        Create an active subscription.

        Raises:
            NotFoundError: plan does not exist
            ConflictError: subscriber already has an active subscription
        """
        plan = await self._catalog.get_plan(plan_id)
        if plan is None:
            raise NotFoundError(f"Plan {plan_id} not found", entity="plan", key=plan_id)

        existing = await self._store.find_active_subscription(subscriber_id)
        if existing is not None:
            raise ConflictError(
                f"Subscriber {subscriber_id} already has an active subscription",
                details={"subscription_id": existing.id},
            )

        start = period_start or self._clock()
        end = period_end or compute_period(start, billing_cycle)[1]
        # Paid subscriptions stay pending until the provider confirms the period
        needs_sync = not plan.is_free and (not external_subscription_id or period_end is None)

        subscription = await self._store.insert_subscription(Subscription(
            subscriber_id=subscriber_id,
            plan_id=plan.id,
            plan_name=plan.name,
            jurisdiction=self._jurisdiction,
            status=SubscriptionStatus.ACTIVE,
            billing_cycle=billing_cycle,
            current_period_start=start,
            current_period_end=end,
            external_subscription_id=external_subscription_id,
            external_customer_id=external_customer_id,
            sync_status=SyncStatus.PENDING if needs_sync else SyncStatus.SYNCED,
            last_sync_at=None if needs_sync else self._clock(),
        ))
        logger.info(
            f"Created subscription {subscription.id} ({plan.name}/{billing_cycle.value}) "
            f"for subscriber {subscriber_id} in {self._jurisdiction}"
        )
        return subscription

    async def transition(
        self,
        subscription_id: str,
        target_status: SubscriptionStatus,
        effects: Optional[Dict[str, Any]] = None,
    ) -> Subscription:
        """
        Move a subscription to ``target_status``.

        Raises:
            NotFoundError: no such subscription
            InvalidTransitionError: the edge is not allowed
            ConflictError: lost the compare-and-swap twice
        """
        for _ in range(2):
            current = await self.get(subscription_id)

            if not is_legal_transition(current.status, target_status):
                logger.warning(
                    f"Illegal subscription transition {current.status.value} -> "
                    f"{target_status.value} for {subscription_id}"
                )
                raise InvalidTransitionError(
                    f"Cannot move subscription from {current.status.value} to {target_status.value}",
                    entity="subscription",
                    current=current.status.value,
                    target=target_status.value,
                )

            if current.status == target_status and not effects:
                return current

            if target_status == SubscriptionStatus.ACTIVE and current.status != target_status:
                await self._release_free_tier(current)

            changes: Dict[str, Any] = dict(effects or {})
            changes["status"] = target_status
            if target_status == SubscriptionStatus.CANCELLED and current.status != target_status:
                changes.setdefault("cancelled_at", self._clock())

            updated = await self._store.update_subscription(
                subscription_id, [current.status], changes,
            )
            if updated is not None:
                if current.status != target_status:
                    logger.info(
                        f"Subscription {subscription_id}: "
                        f"{current.status.value} -> {target_status.value}"
                    )
                return updated

            logger.info(f"Subscription {subscription_id} changed concurrently, re-reading")

        raise ConflictError(
            f"Subscription {subscription_id} is being modified concurrently",
            details={"subscription_id": subscription_id},
        )

    async def activate_plan(
        self,
        subscriber_id: str,
        plan_name: str,
        billing_cycle: BillingCycle = BillingCycle.MONTHLY,
        external_subscription_id: Optional[str] = None,
        external_customer_id: Optional[str] = None,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
    ) -> Subscription:
        """
        Make ``plan_name`` the subscriber's active plan. Re-runnable.

        The previous active subscription (typically the free tier) is
        cancelled first. A subscription already recorded for
        ``external_subscription_id`` is returned as-is, and an active
        subscription on the same plan with no provider id yet (activated
        from a checkout) is attached to ``external_subscription_id``.
        """
        plan = await self._catalog.require_plan(plan_name, self._jurisdiction)

        for _ in range(2):
            if external_subscription_id:
                known = await self._store.find_subscription_by_external_id(external_subscription_id)
                if known is not None:
                    if known.status != SubscriptionStatus.ACTIVE and is_legal_transition(
                        known.status, SubscriptionStatus.ACTIVE
                    ):
                        return await self.transition(known.id, SubscriptionStatus.ACTIVE)
                    return known

            current = await self._store.find_active_subscription(subscriber_id)
            if current is not None:
                if current.plan_id == plan.id:
                    if (
                        not external_subscription_id
                        or current.external_subscription_id == external_subscription_id
                    ):
                        return current
                    if current.external_subscription_id is None:
                        return await self._attach_external(
                            current,
                            external_subscription_id,
                            external_customer_id=external_customer_id,
                            period_start=period_start,
                            period_end=period_end,
                        )
                try:
                    await self.transition(current.id, SubscriptionStatus.CANCELLED)
                except InvalidTransitionError:
                    pass

            try:
                return await self.create_subscription(
                    subscriber_id=subscriber_id,
                    plan_id=plan.id,
                    billing_cycle=billing_cycle,
                    external_subscription_id=external_subscription_id,
                    external_customer_id=external_customer_id,
                    period_start=period_start,
                    period_end=period_end,
                )
            except ConflictError:
                logger.info(f"Concurrent activation for subscriber {subscriber_id}, re-reading")

        raise ConflictError(
            f"Could not activate plan {plan_name} for subscriber {subscriber_id}",
            details={"subscriber_id": subscriber_id, "plan_name": plan_name},
        )

    async def ensure_entitlements(self, subscriber_id: str) -> Subscription:
        """
        Return the subscription that currently grants entitlements.

        That is the active one, else a delinquent (past_due or unpaid) paid
        subscription, else a newly started free tier.
        """
        active = await self._store.find_active_subscription(subscriber_id)
        if active is not None:
            return active

        delinquent = await self._find_delinquent(subscriber_id)
        if delinquent is not None:
            return delinquent

        free_plan = await self._catalog.get_free_plan(self._jurisdiction)
        try:
            return await self.create_subscription(subscriber_id, free_plan.id)
        except ConflictError:
            active = await self._store.find_active_subscription(subscriber_id)
            if active is not None:
                return active
            raise

    async def reconcile_from_external(
        self,
        subscriber_id: Optional[str],
        external_subscription_id: str,
        external_status: str,
        period_end: Optional[datetime] = None,
        period_start: Optional[datetime] = None,
        plan_name: Optional[str] = None,
        billing_cycle: Optional[BillingCycle] = None,
        external_customer_id: Optional[str] = None,
    ) -> Optional[Subscription]:
        """
        Bring the local record in line with the provider's view.

        A provider-confirmed active subscription with no local record is
        created from the event metadata. Returns None when there is nothing
        to reconcile against.
        """
        target = map_external_status(external_status)
        local = await self._store.find_subscription_by_external_id(external_subscription_id)

        if local is None:
            if target == SubscriptionStatus.ACTIVE and subscriber_id and plan_name:
                return await self.activate_plan(
                    subscriber_id=subscriber_id,
                    plan_name=plan_name,
                    billing_cycle=billing_cycle or BillingCycle.MONTHLY,
                    external_subscription_id=external_subscription_id,
                    external_customer_id=external_customer_id,
                    period_start=period_start,
                    period_end=period_end,
                )
            logger.info(
                f"No local subscription for {external_subscription_id} "
                f"(status={external_status}); nothing to reconcile"
            )
            return None

        effects: Dict[str, Any] = {
            "sync_status": SyncStatus.SYNCED,
            "last_sync_at": self._clock(),
        }
        if period_start is not None:
            effects["current_period_start"] = period_start
        if period_end is not None:
            effects["current_period_end"] = period_end
        if external_customer_id:
            effects["external_customer_id"] = external_customer_id
        if billing_cycle is not None:
            effects["billing_cycle"] = billing_cycle

        return await self.transition(local.id, target, effects)

    async def expire_overdue(self, now: Optional[datetime] = None, grace: timedelta = timedelta(0)) -> int:
        """
        Expire active subscriptions whose period has ended.

        Provider-correlated subscriptions get ``grace`` to receive a renewal
        event before they are expired.
        """
        now = now or self._clock()
        expired = 0
        for subscription in await self._store.list_overdue_subscriptions(now, self._jurisdiction):
            if subscription.external_subscription_id and subscription.current_period_end + grace > now:
                continue
            try:
                await self.transition(subscription.id, SubscriptionStatus.EXPIRED)
                expired += 1
            except (InvalidTransitionError, ConflictError, NotFoundError) as e:
                logger.info(f"Skipping expiry of {subscription.id}: {e.message}")
        return expired

    async def sync_pending(self, payment_client, limit: int = 100) -> SyncReport:
        """Re-fetch provider state for subscriptions that are pending or failed to sync."""
        report = SyncReport(jurisdiction=self._jurisdiction)
        pending = []
        for sync_status in (SyncStatus.PENDING, SyncStatus.ERROR):
            pending += await self._store.list_subscriptions(
                sync_status=sync_status, jurisdiction=self._jurisdiction, limit=limit,
            )

        for subscription in pending:
            if not subscription.external_subscription_id:
                continue
            report.checked += 1
            try:
                external = await payment_client.get_subscription(subscription.external_subscription_id)
                await self.reconcile_from_external(
                    subscriber_id=subscription.subscriber_id,
                    external_subscription_id=external.id,
                    external_status=external.status,
                    period_end=external.current_period_end,
                    period_start=external.current_period_start,
                    external_customer_id=external.customer_id,
                )
                report.synced += 1
            except BillingCoreError as e:
                report.failed += 1
                logger.warning(f"Sync failed for subscription {subscription.id}: {e.message}")
                await self._store.update_subscription(
                    subscription.id,
                    [subscription.status],
                    {"sync_status": SyncStatus.ERROR, "last_sync_at": self._clock()},
                )

        if report.checked:
            logger.info(
                f"Provider sync {self._jurisdiction}: {report.synced}/{report.checked} synced"
            )
        return report

    # =========================================================================
    # Internals
    # =========================================================================

    async def _find_delinquent(self, subscriber_id: str) -> Optional[Subscription]:
        subscriptions = await self._store.list_subscriptions(
            subscriber_id=subscriber_id, jurisdiction=self._jurisdiction,
        )
        return next((s for s in subscriptions if s.status in DELINQUENT_STATUSES), None)

    async def _release_free_tier(self, recovering: Subscription) -> None:
        """Cancel a free-tier subscription that took the active slot while ``recovering`` was delinquent."""
        rival = await self._store.find_active_subscription(recovering.subscriber_id)
        if rival is None or rival.id == recovering.id:
            return
        plan = await self._catalog.get_plan(rival.plan_id)
        if plan is None or not plan.is_free:
            return
        logger.info(
            f"Cancelling free tier {rival.id} of subscriber {recovering.subscriber_id}: "
            f"{recovering.id} is active again"
        )
        try:
            await self.transition(rival.id, SubscriptionStatus.CANCELLED)
        except InvalidTransitionError:
            pass

    async def _attach_external(
        self,
        subscription: Subscription,
        external_subscription_id: str,
        external_customer_id: Optional[str] = None,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
    ) -> Subscription:
        """Correlate a locally activated subscription with its provider record."""
        effects: Dict[str, Any] = {"external_subscription_id": external_subscription_id}
        if external_customer_id:
            effects["external_customer_id"] = external_customer_id
        if period_start is not None:
            effects["current_period_start"] = period_start
        if period_end is not None:
            effects["current_period_end"] = period_end
            effects["sync_status"] = SyncStatus.SYNCED
            effects["last_sync_at"] = self._clock()

        updated = await self.transition(subscription.id, SubscriptionStatus.ACTIVE, effects)
        logger.info(f"Attached provider subscription {external_subscription_id} to {subscription.id}")
        await self._carry_usage(subscription, updated)
        return updated

    async def _carry_usage(self, before: Subscription, after: Subscription) -> None:
        """Move counters onto the provider-confirmed period bounds."""
        old_bounds = (before.current_period_start, before.current_period_end)
        new_bounds = (after.current_period_start, after.current_period_end)
        if old_bounds == new_bounds:
            return
        usage = await self._store.get_usage_period(before.id, *old_bounds)
        if usage is None:
            return
        try:
            await self._store.insert_usage_period(UsagePeriod(
                subscription_id=after.id,
                subscriber_id=after.subscriber_id,
                jurisdiction=after.jurisdiction,
                period_start=after.current_period_start,
                period_end=after.current_period_end,
                consultations_count=usage.consultations_count,
                document_analyses_count=usage.document_analyses_count,
                messages_count=usage.messages_count,
            ))
        except ConflictError:
            logger.info(f"Usage period for {after.id} already exists on the confirmed bounds")
