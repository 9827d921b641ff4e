"""
Managed Cloud Billing Store (Supabase)

``BillingStore`` over the Supabase PostgREST API. The supabase client is
synchronous, so every call runs through ``asyncio.to_thread``.

Uniqueness is enforced by the same partial unique indexes as the relational
store (created by the Alembic migration); PostgREST reports violations as
``APIError`` with code ``23505``. Counters are incremented by SQL functions
called over RPC so increments never race.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Type, TypeVar
from uuid import uuid4

from postgrest import APIError
from pydantic import BaseModel
from supabase import Client, create_client
from supabase.lib.client_options import ClientOptions

from billing_core.config.settings import settings
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
from billing_core.infrastructure.db.models.base import utc_now
from billing_core.infrastructure.db.repositories.base_repository import (
    BillingStore,
    plain_value,
    status_values,
)
from billing_core.infrastructure.exceptions import (
    ConfigurationError,
    ConflictError,
    DatabaseError,
)


logger = logging.getLogger(__name__)

DomainType = TypeVar("DomainType", bound=BaseModel)

UNIQUE_VIOLATION = "23505"


def _serialize(value: Any) -> Any:
    value = plain_value(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _payload(values: Dict[str, Any]) -> Dict[str, Any]:
    return {key: _serialize(value) for key, value in values.items()}


def _row(entity: BaseModel) -> Dict[str, Any]:
    values = entity.model_dump(exclude={"created_at", "updated_at"})
    if not values.get("id"):
        values["id"] = str(uuid4())
    return _payload(values)


def _first(domain_cls: Type[DomainType], data: Optional[list]) -> Optional[DomainType]:
    if not data:
        return None
    return domain_cls.model_validate(data[0])


def _many(domain_cls: Type[DomainType], data: Optional[list]) -> List[DomainType]:
    return [domain_cls.model_validate(row) for row in data or []]


def create_supabase_client() -> Client:
    """Create a service-role Supabase client from Settings."""
    missing = [
        key for key, value in (
            ("SUPABASE_URL", settings.supabase_url),
            ("SUPABASE_SERVICE_ROLE_KEY", settings.supabase_service_role_key),
        )
        if not value
    ]
    if missing:
        raise ConfigurationError(
            "Supabase credentials are required for the managed cloud store",
            missing_keys=missing,
        )

    options = ClientOptions(
        postgrest_client_timeout=settings.supabase_timeout_seconds,
    )
    return create_client(
        settings.supabase_url,
        settings.supabase_service_role_key,
        options,
    )


class SupabaseBillingStore(BillingStore):
    """Supabase-backed ``BillingStore``."""

    def __init__(self, client: Optional[Client] = None, name: str = "supabase"):
        self._client = client
        self.name = name

    @property
    def client(self) -> Client:
        if self._client is None:
            self._client = create_supabase_client()
            logger.info("Supabase billing store initialized")
        return self._client

    async def _execute(self, operation: str, table: str, call: Callable[[], Any]) -> Any:
        """Run a blocking PostgREST call and translate its errors."""
        try:
            response = await asyncio.to_thread(call)
        except APIError as e:
            if e.code == UNIQUE_VIOLATION:
                logger.info(f"[{self.name}] {operation} on {table} hit a uniqueness constraint")
                raise ConflictError(
                    f"{operation} on {table} violates a uniqueness constraint",
                    details={"operation": operation, "table": table},
                    original_error=e,
                ) from e
            logger.error(f"[{self.name}] {operation} on {table} failed: {e.message}")
            raise DatabaseError(
                f"Supabase {operation} failed on {table}",
                operation=operation,
                table=table,
                original_error=e,
            ) from e
        except Exception as e:
            logger.error(f"[{self.name}] {operation} on {table} failed: {e}")
            raise DatabaseError(
                f"Supabase {operation} failed on {table}",
                operation=operation,
                table=table,
                original_error=e,
            ) from e
        return response.data

    async def _select(self, table: str, build: Callable[[Any], Any]) -> list:
        return await self._execute(
            "select", table,
            lambda: build(self.client.table(table).select("*")).execute(),
        )

    async def _insert(self, table: str, entity: BaseModel, domain_cls: Type[DomainType]) -> DomainType:
        now = utc_now().isoformat()
        row = {**_row(entity), "created_at": now, "updated_at": now}
        data = await self._execute(
            "insert", table,
            lambda: self.client.table(table).insert(row).execute(),
        )
        return _first(domain_cls, data) or domain_cls.model_validate(row)

    async def _compare_and_swap(
        self,
        table: str,
        domain_cls: Type[DomainType],
        row_id: str,
        expected_statuses: Iterable,
        changes: Dict[str, Any],
    ) -> Optional[DomainType]:
        values = {**_payload(changes), "updated_at": utc_now().isoformat()}
        expected = status_values(expected_statuses)
        data = await self._execute(
            "update", table,
            lambda: (
                self.client.table(table)
                .update(values)
                .eq("id", row_id)
                .in_("status", expected)
                .execute()
            ),
        )
        return _first(domain_cls, data)

    # =========================================================================
    # Subscribers
    # =========================================================================

    async def get_subscriber(self, subscriber_id: str) -> Optional[Subscriber]:
        data = await self._select("subscribers", lambda q: q.eq("id", subscriber_id).limit(1))
        return _first(Subscriber, data)

    async def find_subscriber_by_phone(self, phone: str) -> Optional[Subscriber]:
        data = await self._select("subscribers", lambda q: q.eq("phone", phone).limit(1))
        return _first(Subscriber, data)

    async def insert_subscriber(self, subscriber: Subscriber) -> Subscriber:
        return await self._insert("subscribers", subscriber, Subscriber)

    async def set_subscriber_active(
        self,
        subscriber_id: str,
        is_active: bool,
    ) -> Optional[Subscriber]:
        values = {"is_active": is_active, "updated_at": utc_now().isoformat()}
        data = await self._execute(
            "update", "subscribers",
            lambda: self.client.table("subscribers").update(values).eq("id", subscriber_id).execute(),
        )
        return _first(Subscriber, data)

    # =========================================================================
    # Plans
    # =========================================================================

    async def get_plan(self, plan_id: str) -> Optional[Plan]:
        data = await self._select("plans", lambda q: q.eq("id", plan_id).limit(1))
        return _first(Plan, data)

    async def find_plan(self, name: str, jurisdiction: str) -> Optional[Plan]:
        data = await self._select(
            "plans",
            lambda q: q.eq("name", name).eq("jurisdiction", jurisdiction).limit(1),
        )
        return _first(Plan, data)

    async def list_plans(self, jurisdiction: str, active_only: bool = True) -> List[Plan]:
        def build(query):
            query = query.eq("jurisdiction", jurisdiction)
            if active_only:
                query = query.eq("is_active", True)
            return query.order("monthly_price")

        return _many(Plan, await self._select("plans", build))

    async def insert_plan(self, plan: Plan) -> Plan:
        return await self._insert("plans", plan, Plan)

    # =========================================================================
    # Subscriptions
    # =========================================================================

    async def insert_subscription(self, subscription: Subscription) -> Subscription:
        return await self._insert("subscriptions", subscription, Subscription)

    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        data = await self._select("subscriptions", lambda q: q.eq("id", subscription_id).limit(1))
        return _first(Subscription, data)

    async def find_active_subscription(self, subscriber_id: str) -> Optional[Subscription]:
        data = await self._select(
            "subscriptions",
            lambda q: (
                q.eq("subscriber_id", subscriber_id)
                .eq("status", SubscriptionStatus.ACTIVE.value)
                .limit(1)
            ),
        )
        return _first(Subscription, data)

    async def find_subscription_by_external_id(
        self,
        external_subscription_id: str,
    ) -> Optional[Subscription]:
        data = await self._select(
            "subscriptions",
            lambda q: q.eq("external_subscription_id", external_subscription_id).limit(1),
        )
        return _first(Subscription, data)

    async def list_subscriptions(
        self,
        subscriber_id: Optional[str] = None,
        status: Optional[SubscriptionStatus] = None,
        sync_status: Optional[SyncStatus] = None,
        jurisdiction: Optional[str] = None,
        limit: int = 100,
    ) -> List[Subscription]:
        def build(query):
            if subscriber_id is not None:
                query = query.eq("subscriber_id", subscriber_id)
            if status is not None:
                query = query.eq("status", status.value)
            if sync_status is not None:
                query = query.eq("sync_status", sync_status.value)
            if jurisdiction is not None:
                query = query.eq("jurisdiction", jurisdiction)
            return query.order("created_at", desc=True).limit(limit)

        return _many(Subscription, await self._select("subscriptions", build))

    async def update_subscription(
        self,
        subscription_id: str,
        expected_statuses: Iterable[SubscriptionStatus],
        changes: Dict[str, Any],
    ) -> Optional[Subscription]:
        return await self._compare_and_swap(
            "subscriptions", Subscription, subscription_id, expected_statuses, changes,
        )

    async def list_overdue_subscriptions(
        self,
        now: datetime,
        jurisdiction: Optional[str] = None,
        limit: int = 500,
    ) -> List[Subscription]:
        def build(query):
            query = query.eq("status", SubscriptionStatus.ACTIVE.value).lte(
                "current_period_end", now.isoformat()
            )
            if jurisdiction is not None:
                query = query.eq("jurisdiction", jurisdiction)
            return query.limit(limit)

        data = await self._select("subscriptions", build)
        return _many(Subscription, data)

    # =========================================================================
    # Usage Periods
    # =========================================================================

    async def get_usage_period(
        self,
        subscription_id: str,
        period_start: datetime,
        period_end: datetime,
    ) -> Optional[UsagePeriod]:
        data = await self._select(
            "usage_periods",
            lambda q: (
                q.eq("subscription_id", subscription_id)
                .eq("period_start", period_start.isoformat())
                .eq("period_end", period_end.isoformat())
                .limit(1)
            ),
        )
        return _first(UsagePeriod, data)

    async def insert_usage_period(self, period: UsagePeriod) -> UsagePeriod:
        return await self._insert("usage_periods", period, UsagePeriod)

    async def increment_usage(
        self,
        subscription_id: str,
        period_start: datetime,
        period_end: datetime,
        dimension: MeteredDimension,
        amount: int = 1,
    ) -> bool:
        params = {
            "p_subscription_id": subscription_id,
            "p_period_start": period_start.isoformat(),
            "p_period_end": period_end.isoformat(),
            "p_counter": USAGE_COUNTER_COLUMNS[dimension],
            "p_amount": amount,
        }
        data = await self._execute(
            "increment", "usage_periods",
            lambda: self.client.rpc("increment_usage_counter", params).execute(),
        )
        return bool(data)

    # =========================================================================
    # Upgrade Sessions
    # =========================================================================

    async def insert_upgrade_session(self, session: UpgradeSession) -> UpgradeSession:
        return await self._insert("upgrade_sessions", session, UpgradeSession)

    async def get_upgrade_session(self, session_id: str) -> Optional[UpgradeSession]:
        data = await self._select("upgrade_sessions", lambda q: q.eq("id", session_id).limit(1))
        return _first(UpgradeSession, data)

    async def find_live_upgrade_session(self, subscriber_id: str) -> Optional[UpgradeSession]:
        data = await self._select(
            "upgrade_sessions",
            lambda q: (
                q.eq("subscriber_id", subscriber_id)
                .in_("status", status_values(LIVE_SESSION_STATUSES))
                .limit(1)
            ),
        )
        return _first(UpgradeSession, data)

    async def find_upgrade_session_by_checkout(
        self,
        external_checkout_id: str,
    ) -> Optional[UpgradeSession]:
        data = await self._select(
            "upgrade_sessions",
            lambda q: q.eq("external_checkout_id", external_checkout_id).limit(1),
        )
        return _first(UpgradeSession, data)

    async def list_upgrade_sessions(
        self,
        subscriber_id: str,
        limit: int = 50,
    ) -> List[UpgradeSession]:
        data = await self._select(
            "upgrade_sessions",
            lambda q: q.eq("subscriber_id", subscriber_id).order("created_at", desc=True).limit(limit),
        )
        return _many(UpgradeSession, data)

    async def update_upgrade_session(
        self,
        session_id: str,
        expected_statuses: Iterable[UpgradeSessionStatus],
        changes: Dict[str, Any],
    ) -> Optional[UpgradeSession]:
        return await self._compare_and_swap(
            "upgrade_sessions", UpgradeSession, session_id, expected_statuses, changes,
        )

    async def increment_upgrade_attempts(self, session_id: str, at: datetime) -> bool:
        params = {"p_session_id": session_id, "p_attempted_at": at.isoformat()}
        data = await self._execute(
            "increment", "upgrade_sessions",
            lambda: self.client.rpc("increment_upgrade_attempts", params).execute(),
        )
        return bool(data)

    async def insert_upgrade_attempt(self, attempt: UpgradeAttempt) -> UpgradeAttempt:
        row = _row(attempt)
        row["created_at"] = row.get("created_at") or utc_now().isoformat()
        data = await self._execute(
            "insert", "upgrade_attempts",
            lambda: self.client.table("upgrade_attempts").insert(row).execute(),
        )
        return _first(UpgradeAttempt, data) or UpgradeAttempt.model_validate(row)

    async def list_upgrade_attempts(self, session_id: str) -> List[UpgradeAttempt]:
        data = await self._select(
            "upgrade_attempts",
            lambda q: q.eq("session_id", session_id).order("created_at"),
        )
        return _many(UpgradeAttempt, data)

    async def expire_upgrade_sessions(self, now: datetime, jurisdiction: Optional[str] = None) -> int:
        values = {
            "status": UpgradeSessionStatus.EXPIRED.value,
            "current_step": UpgradeStep.EXPIRED.value,
            "updated_at": utc_now().isoformat(),
        }

        def call():
            query = (
                self.client.table("upgrade_sessions")
                .update(values)
                .in_("status", status_values(LIVE_SESSION_STATUSES))
                .lt("expires_at", now.isoformat())
            )
            if jurisdiction is not None:
                query = query.eq("jurisdiction", jurisdiction)
            return query.execute()

        data = await self._execute("update", "upgrade_sessions", call)
        expired = len(data or [])
        if expired:
            logger.info(f"[{self.name}] Expired {expired} upgrade sessions")
        return expired

    # =========================================================================
    # Processed Events
    # =========================================================================

    async def is_event_processed(self, event_id: str) -> bool:
        data = await self._execute(
            "select", "processed_webhook_events",
            lambda: (
                self.client.table("processed_webhook_events")
                .select("event_id")
                .eq("event_id", event_id)
                .limit(1)
                .execute()
            ),
        )
        return bool(data)

    async def mark_event_processed(self, event_id: str, event_type: str) -> bool:
        row = {
            "event_id": event_id,
            "event_type": event_type,
            "processed_at": utc_now().isoformat(),
        }
        try:
            await self._execute(
                "insert", "processed_webhook_events",
                lambda: self.client.table("processed_webhook_events").insert(row).execute(),
            )
        except ConflictError:
            return False
        return True
