"""
In-Memory Billing Store

Fast, non-persistent backend for development and testing.

Every method body runs without an ``await``, so each check-and-insert or
compare-and-swap completes without yielding to the event loop. That gives
the same single-live guarantees the relational store gets from its partial
unique indexes.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

from billing_core.domain.jurisdiction import MeteredDimension
from billing_core.domain.subscription import (
    USAGE_COUNTER_COLUMNS,
    Plan,
    Subscriber,
    Subscription,
    SubscriptionStatus,
    SyncStatus,
    UsagePeriod,
)
from billing_core.domain.upgrade import (
    LIVE_SESSION_STATUSES,
    UpgradeAttempt,
    UpgradeSession,
    UpgradeSessionStatus,
    UpgradeStep,
)
from billing_core.infrastructure.db.repositories.base_repository import BillingStore
from billing_core.infrastructure.exceptions import ConflictError


logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryBillingStore(BillingStore):
    """
    Dictionary-backed ``BillingStore``.

    Entities are stored as pydantic copies so callers never share mutable
    state with the store.
    """

    def __init__(self, name: str = "memory"):
        self.name = name
        self._subscribers: Dict[str, Subscriber] = {}
        self._plans: Dict[str, Plan] = {}
        self._subscriptions: Dict[str, Subscription] = {}
        self._usage: Dict[tuple, UsagePeriod] = {}
        self._sessions: Dict[str, UpgradeSession] = {}
        self._attempts: List[UpgradeAttempt] = []
        self._events: Dict[str, str] = {}

    # =========================================================================
    # Subscribers
    # =========================================================================

    async def get_subscriber(self, subscriber_id: str) -> Optional[Subscriber]:
        found = self._subscribers.get(subscriber_id)
        return found.model_copy() if found else None

    async def find_subscriber_by_phone(self, phone: str) -> Optional[Subscriber]:
        for subscriber in self._subscribers.values():
            if subscriber.phone == phone:
                return subscriber.model_copy()
        return None

    async def insert_subscriber(self, subscriber: Subscriber) -> Subscriber:
        if any(s.phone == subscriber.phone for s in self._subscribers.values()):
            raise ConflictError(
                f"Subscriber with phone {subscriber.phone} already exists",
                details={"phone": subscriber.phone},
            )
        now = _now()
        stored = subscriber.model_copy(update={
            "id": subscriber.id or str(uuid4()),
            "created_at": now,
            "updated_at": now,
        })
        self._subscribers[stored.id] = stored
        return stored.model_copy()

    async def set_subscriber_active(
        self,
        subscriber_id: str,
        is_active: bool,
    ) -> Optional[Subscriber]:
        found = self._subscribers.get(subscriber_id)
        if found is None:
            return None
        updated = found.model_copy(update={"is_active": is_active, "updated_at": _now()})
        self._subscribers[subscriber_id] = updated
        return updated.model_copy()

    # =========================================================================
    # Plans
    # =========================================================================

    async def get_plan(self, plan_id: str) -> Optional[Plan]:
        found = self._plans.get(plan_id)
        return found.model_copy() if found else None

    async def find_plan(self, name: str, jurisdiction: str) -> Optional[Plan]:
        for plan in self._plans.values():
            if plan.name == name and plan.jurisdiction == jurisdiction:
                return plan.model_copy()
        return None

    async def list_plans(self, jurisdiction: str, active_only: bool = True) -> List[Plan]:
        plans = [
            plan.model_copy() for plan in self._plans.values()
            if plan.jurisdiction == jurisdiction and (plan.is_active or not active_only)
        ]
        return sorted(plans, key=lambda plan: plan.monthly_price)

    async def insert_plan(self, plan: Plan) -> Plan:
        if any(
            p.name == plan.name and p.jurisdiction == plan.jurisdiction
            for p in self._plans.values()
        ):
            raise ConflictError(
                f"Plan {plan.name} already exists in {plan.jurisdiction}",
            )
        stored = plan.model_copy(update={"id": plan.id or str(uuid4())})
        self._plans[stored.id] = stored
        return stored.model_copy()

    # =========================================================================
    # Subscriptions
    # =========================================================================

    async def insert_subscription(self, subscription: Subscription) -> Subscription:
        for existing in self._subscriptions.values():
            if (
                subscription.status == SubscriptionStatus.ACTIVE
                and existing.subscriber_id == subscription.subscriber_id
                and existing.status == SubscriptionStatus.ACTIVE
            ):
                raise ConflictError(
                    f"Subscriber {subscription.subscriber_id} already has an active subscription",
                    details={"subscription_id": existing.id},
                )
            if (
                subscription.external_subscription_id
                and existing.external_subscription_id == subscription.external_subscription_id
            ):
                raise ConflictError(
                    f"External subscription {subscription.external_subscription_id} already recorded",
                    details={"subscription_id": existing.id},
                )
        now = _now()
        stored = subscription.model_copy(update={
            "id": subscription.id or str(uuid4()),
            "created_at": now,
            "updated_at": now,
        })
        self._subscriptions[stored.id] = stored
        return stored.model_copy()

    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        found = self._subscriptions.get(subscription_id)
        return found.model_copy() if found else None

    async def find_active_subscription(self, subscriber_id: str) -> Optional[Subscription]:
        for subscription in self._subscriptions.values():
            if (
                subscription.subscriber_id == subscriber_id
                and subscription.status == SubscriptionStatus.ACTIVE
            ):
                return subscription.model_copy()
        return None

    async def find_subscription_by_external_id(
        self,
        external_subscription_id: str,
    ) -> Optional[Subscription]:
        for subscription in self._subscriptions.values():
            if subscription.external_subscription_id == external_subscription_id:
                return subscription.model_copy()
        return None

    async def list_subscriptions(
        self,
        subscriber_id: Optional[str] = None,
        status: Optional[SubscriptionStatus] = None,
        sync_status: Optional[SyncStatus] = None,
        jurisdiction: Optional[str] = None,
        limit: int = 100,
    ) -> List[Subscription]:
        matches = [
            s.model_copy() for s in self._subscriptions.values()
            if (subscriber_id is None or s.subscriber_id == subscriber_id)
            and (status is None or s.status == status)
            and (sync_status is None or s.sync_status == sync_status)
            and (jurisdiction is None or s.jurisdiction == jurisdiction)
        ]
        matches.sort(key=lambda s: s.created_at, reverse=True)
        return matches[:limit]

    async def update_subscription(
        self,
        subscription_id: str,
        expected_statuses: Iterable[SubscriptionStatus],
        changes: Dict[str, Any],
    ) -> Optional[Subscription]:
        found = self._subscriptions.get(subscription_id)
        if found is None or found.status not in set(expected_statuses):
            return None
        target = changes.get("status")
        if target == SubscriptionStatus.ACTIVE and found.status != SubscriptionStatus.ACTIVE:
            rival = next(
                (
                    s for s in self._subscriptions.values()
                    if s.subscriber_id == found.subscriber_id
                    and s.status == SubscriptionStatus.ACTIVE
                    and s.id != found.id
                ),
                None,
            )
            if rival is not None:
                raise ConflictError(
                    f"Subscriber {found.subscriber_id} already has an active subscription",
                    details={"subscription_id": rival.id},
                )
        updated = found.model_copy(update={**changes, "updated_at": _now()})
        self._subscriptions[subscription_id] = updated
        return updated.model_copy()

    async def list_overdue_subscriptions(
        self,
        now: datetime,
        jurisdiction: Optional[str] = None,
        limit: int = 500,
    ) -> List[Subscription]:
        overdue = [
            s.model_copy() for s in self._subscriptions.values()
            if s.status == SubscriptionStatus.ACTIVE and s.current_period_end <= now
            and (jurisdiction is None or s.jurisdiction == jurisdiction)
        ]
        return overdue[:limit]

    # =========================================================================
    # Usage Periods
    # =========================================================================

    async def get_usage_period(
        self,
        subscription_id: str,
        period_start: datetime,
        period_end: datetime,
    ) -> Optional[UsagePeriod]:
        found = self._usage.get((subscription_id, period_start, period_end))
        return found.model_copy() if found else None

    async def insert_usage_period(self, period: UsagePeriod) -> UsagePeriod:
        key = (period.subscription_id, period.period_start, period.period_end)
        if key in self._usage:
            raise ConflictError(
                f"Usage period already exists for subscription {period.subscription_id}",
            )
        now = _now()
        stored = period.model_copy(update={
            "id": period.id or str(uuid4()),
            "created_at": now,
            "updated_at": now,
        })
        self._usage[key] = stored
        return stored.model_copy()

    async def increment_usage(
        self,
        subscription_id: str,
        period_start: datetime,
        period_end: datetime,
        dimension: MeteredDimension,
        amount: int = 1,
    ) -> bool:
        key = (subscription_id, period_start, period_end)
        found = self._usage.get(key)
        if found is None:
            return False
        column = USAGE_COUNTER_COLUMNS[dimension]
        self._usage[key] = found.model_copy(update={
            column: getattr(found, column) + amount,
            "updated_at": _now(),
        })
        return True

    # =========================================================================
    # Upgrade Sessions
    # =========================================================================

    async def insert_upgrade_session(self, session: UpgradeSession) -> UpgradeSession:
        if session.status in LIVE_SESSION_STATUSES:
            for existing in self._sessions.values():
                if (
                    existing.subscriber_id == session.subscriber_id
                    and existing.status in LIVE_SESSION_STATUSES
                ):
                    raise ConflictError(
                        f"Subscriber {session.subscriber_id} already has a live upgrade session",
                        details={"session_id": existing.id},
                    )
        now = _now()
        stored = session.model_copy(update={
            "id": session.id or str(uuid4()),
            "created_at": now,
            "updated_at": now,
        })
        self._sessions[stored.id] = stored
        return stored.model_copy()

    async def get_upgrade_session(self, session_id: str) -> Optional[UpgradeSession]:
        found = self._sessions.get(session_id)
        return found.model_copy() if found else None

    async def find_live_upgrade_session(self, subscriber_id: str) -> Optional[UpgradeSession]:
        for session in self._sessions.values():
            if session.subscriber_id == subscriber_id and session.status in LIVE_SESSION_STATUSES:
                return session.model_copy()
        return None

    async def find_upgrade_session_by_checkout(
        self,
        external_checkout_id: str,
    ) -> Optional[UpgradeSession]:
        for session in self._sessions.values():
            if session.external_checkout_id == external_checkout_id:
                return session.model_copy()
        return None

    async def list_upgrade_sessions(
        self,
        subscriber_id: str,
        limit: int = 50,
    ) -> List[UpgradeSession]:
        matches = [
            s.model_copy() for s in self._sessions.values()
            if s.subscriber_id == subscriber_id
        ]
        matches.sort(key=lambda s: s.created_at, reverse=True)
        return matches[:limit]

    async def update_upgrade_session(
        self,
        session_id: str,
        expected_statuses: Iterable[UpgradeSessionStatus],
        changes: Dict[str, Any],
    ) -> Optional[UpgradeSession]:
        found = self._sessions.get(session_id)
        if found is None or found.status not in set(expected_statuses):
            return None
        updated = found.model_copy(update={**changes, "updated_at": _now()})
        self._sessions[session_id] = updated
        return updated.model_copy()

    async def increment_upgrade_attempts(self, session_id: str, at: datetime) -> bool:
        found = self._sessions.get(session_id)
        if found is None:
            return False
        self._sessions[session_id] = found.model_copy(update={
            "attempts_count": found.attempts_count + 1,
            "last_attempt_at": at,
            "updated_at": _now(),
        })
        return True

    async def insert_upgrade_attempt(self, attempt: UpgradeAttempt) -> UpgradeAttempt:
        stored = attempt.model_copy(update={
            "id": attempt.id or str(uuid4()),
            "created_at": attempt.created_at or _now(),
        })
        self._attempts.append(stored)
        return stored.model_copy()

    async def list_upgrade_attempts(self, session_id: str) -> List[UpgradeAttempt]:
        return [a.model_copy() for a in self._attempts if a.session_id == session_id]

    async def expire_upgrade_sessions(self, now: datetime, jurisdiction: Optional[str] = None) -> int:
        expired = 0
        for session_id, session in list(self._sessions.items()):
            if (
                session.status in LIVE_SESSION_STATUSES
                and session.expires_at < now
                and (jurisdiction is None or session.jurisdiction == jurisdiction)
            ):
                self._sessions[session_id] = session.model_copy(update={
                    "status": UpgradeSessionStatus.EXPIRED,
                    "current_step": UpgradeStep.EXPIRED,
                    "updated_at": _now(),
                })
                expired += 1
        if expired:
            logger.info(f"[{self.name}] Expired {expired} upgrade sessions")
        return expired

    # =========================================================================
    # Processed Events
    # =========================================================================

    async def is_event_processed(self, event_id: str) -> bool:
        return event_id in self._events

    async def mark_event_processed(self, event_id: str, event_type: str) -> bool:
        if event_id in self._events:
            return False
        self._events[event_id] = event_type
        return True
