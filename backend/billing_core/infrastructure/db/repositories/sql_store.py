"""
Relational Billing Store

``BillingStore`` over async SQLAlchemy + SQLModel. Written against the
generic SQL expression layer so the same code runs on PostgreSQL (asyncpg)
in production and SQLite (aiosqlite) in tests.

Single-live invariants are enforced by the partial unique indexes on
``subscriptions`` and ``upgrade_sessions``; violations surface as
``IntegrityError`` and are translated to ``ConflictError``.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncGenerator, Dict, Iterable, List, Optional, Type, TypeVar
from uuid import uuid4

from pydantic import BaseModel
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import SQLModel, col, select

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
from billing_core.infrastructure.db.database import DatabaseManager
from billing_core.infrastructure.db.models import (
    PlanModel,
    ProcessedWebhookEventModel,
    SubscriberModel,
    SubscriptionModel,
    UpgradeAttemptModel,
    UpgradeSessionModel,
    UsagePeriodModel,
    as_utc,
    utc_now,
)
from billing_core.infrastructure.db.repositories.base_repository import (
    BillingStore,
    plain_changes,
    status_values,
)
from billing_core.infrastructure.exceptions import ConflictError, DatabaseError


logger = logging.getLogger(__name__)

DomainType = TypeVar("DomainType", bound=BaseModel)


def _to_domain(domain_cls: Type[DomainType], model: SQLModel) -> DomainType:
    """Map a table row onto its domain entity."""
    values = {
        name: getattr(model, name)
        for name in domain_cls.model_fields
        if hasattr(model, name)
    }
    for key, value in values.items():
        if isinstance(value, datetime):
            values[key] = as_utc(value)
    return domain_cls.model_validate(values)


def _to_row(entity: BaseModel) -> Dict[str, Any]:
    """Map a domain entity onto table column values."""
    values = plain_changes(entity.model_dump(exclude={"created_at", "updated_at"}))
    if not values.get("id"):
        values["id"] = str(uuid4())
    return values


class SqlBillingStore(BillingStore):
    """
    Relational ``BillingStore``.

    Each operation runs in its own short session; nothing is held open
    between calls.
    """

    def __init__(self, db: DatabaseManager, name: str = "relational"):
        self._db = db
        self.name = name

    @asynccontextmanager
    async def _session(self, operation: str, table: str) -> AsyncGenerator[AsyncSession, None]:
        """Session scope translating driver errors into the billing hierarchy."""
        try:
            async with self._db.session() as session:
                yield session
        except IntegrityError as e:
            logger.info(f"[{self.name}] {operation} on {table} hit a uniqueness constraint")
            raise ConflictError(
                f"{operation} on {table} violates a uniqueness constraint",
                details={"operation": operation, "table": table},
                original_error=e,
            ) from e
        except SQLAlchemyError as e:
            logger.error(f"[{self.name}] {operation} on {table} failed: {e}")
            raise DatabaseError(
                f"Database {operation} failed on {table}",
                operation=operation,
                table=table,
                original_error=e,
            ) from e

    async def _insert(self, model_cls: Type[SQLModel], entity: BaseModel, domain_cls, table: str):
        model = model_cls(**_to_row(entity))
        async with self._session("insert", table) as session:
            session.add(model)
            await session.flush()
        return _to_domain(domain_cls, model)

    async def _first(self, statement, domain_cls, table: str):
        async with self._session("select", table) as session:
            result = await session.execute(statement)
            model = result.scalars().first()
            return _to_domain(domain_cls, model) if model else None

    async def _all(self, statement, domain_cls, table: str) -> list:
        async with self._session("select", table) as session:
            result = await session.execute(statement)
            return [_to_domain(domain_cls, model) for model in result.scalars().all()]

    async def _compare_and_swap(
        self,
        model_cls: Type[SQLModel],
        domain_cls,
        table: str,
        row_id: str,
        expected_statuses: Iterable,
        changes: Dict[str, Any],
    ):
        statement = (
            update(model_cls)
            .where(
                col(model_cls.id) == row_id,
                col(model_cls.status).in_(status_values(expected_statuses)),
            )
            .values(**plain_changes(changes), updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        async with self._session("update", table) as session:
            result = await session.execute(statement)
            if result.rowcount == 0:
                return None
            model = await session.get(model_cls, row_id)
            return _to_domain(domain_cls, model)

    # =========================================================================
    # Subscribers
    # =========================================================================

    async def get_subscriber(self, subscriber_id: str) -> Optional[Subscriber]:
        statement = select(SubscriberModel).where(SubscriberModel.id == subscriber_id)
        return await self._first(statement, Subscriber, "subscribers")

    async def find_subscriber_by_phone(self, phone: str) -> Optional[Subscriber]:
        statement = select(SubscriberModel).where(SubscriberModel.phone == phone)
        return await self._first(statement, Subscriber, "subscribers")

    async def insert_subscriber(self, subscriber: Subscriber) -> Subscriber:
        return await self._insert(SubscriberModel, subscriber, Subscriber, "subscribers")

    async def set_subscriber_active(
        self,
        subscriber_id: str,
        is_active: bool,
    ) -> Optional[Subscriber]:
        statement = (
            update(SubscriberModel)
            .where(col(SubscriberModel.id) == subscriber_id)
            .values(is_active=is_active, updated_at=utc_now())
            .execution_options(synchronize_session=False)
        )
        async with self._session("update", "subscribers") as session:
            result = await session.execute(statement)
            if result.rowcount == 0:
                return None
            model = await session.get(SubscriberModel, subscriber_id)
            return _to_domain(Subscriber, model)

    # =========================================================================
    # Plans
    # =========================================================================

    async def get_plan(self, plan_id: str) -> Optional[Plan]:
        statement = select(PlanModel).where(PlanModel.id == plan_id)
        return await self._first(statement, Plan, "plans")

    async def find_plan(self, name: str, jurisdiction: str) -> Optional[Plan]:
        statement = select(PlanModel).where(
            PlanModel.name == name,
            PlanModel.jurisdiction == jurisdiction,
        )
        return await self._first(statement, Plan, "plans")

    async def list_plans(self, jurisdiction: str, active_only: bool = True) -> List[Plan]:
        statement = select(PlanModel).where(PlanModel.jurisdiction == jurisdiction)
        if active_only:
            statement = statement.where(PlanModel.is_active == True)  # noqa: E712
        statement = statement.order_by(col(PlanModel.monthly_price))
        return await self._all(statement, Plan, "plans")

    async def insert_plan(self, plan: Plan) -> Plan:
        return await self._insert(PlanModel, plan, Plan, "plans")

    # =========================================================================
    # Subscriptions
    # =========================================================================

    async def insert_subscription(self, subscription: Subscription) -> Subscription:
        return await self._insert(SubscriptionModel, subscription, Subscription, "subscriptions")

    async def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        statement = select(SubscriptionModel).where(SubscriptionModel.id == subscription_id)
        return await self._first(statement, Subscription, "subscriptions")

    async def find_active_subscription(self, subscriber_id: str) -> Optional[Subscription]:
        statement = select(SubscriptionModel).where(
            SubscriptionModel.subscriber_id == subscriber_id,
            SubscriptionModel.status == SubscriptionStatus.ACTIVE.value,
        )
        return await self._first(statement, Subscription, "subscriptions")

    async def find_subscription_by_external_id(
        self,
        external_subscription_id: str,
    ) -> Optional[Subscription]:
        statement = select(SubscriptionModel).where(
            SubscriptionModel.external_subscription_id == external_subscription_id
        )
        return await self._first(statement, Subscription, "subscriptions")

    async def list_subscriptions(
        self,
        subscriber_id: Optional[str] = None,
        status: Optional[SubscriptionStatus] = None,
        sync_status: Optional[SyncStatus] = None,
        jurisdiction: Optional[str] = None,
        limit: int = 100,
    ) -> List[Subscription]:
        statement = select(SubscriptionModel)
        if subscriber_id is not None:
            statement = statement.where(SubscriptionModel.subscriber_id == subscriber_id)
        if status is not None:
            statement = statement.where(SubscriptionModel.status == status.value)
        if sync_status is not None:
            statement = statement.where(SubscriptionModel.sync_status == sync_status.value)
        if jurisdiction is not None:
            statement = statement.where(SubscriptionModel.jurisdiction == jurisdiction)
        statement = statement.order_by(col(SubscriptionModel.created_at).desc()).limit(limit)
        return await self._all(statement, Subscription, "subscriptions")

    async def update_subscription(
        self,
        subscription_id: str,
        expected_statuses: Iterable[SubscriptionStatus],
        changes: Dict[str, Any],
    ) -> Optional[Subscription]:
        return await self._compare_and_swap(
            SubscriptionModel, Subscription, "subscriptions",
            subscription_id, expected_statuses, changes,
        )

    async def list_overdue_subscriptions(
        self,
        now: datetime,
        jurisdiction: Optional[str] = None,
        limit: int = 500,
    ) -> List[Subscription]:
        statement = (
            select(SubscriptionModel)
            .where(
                SubscriptionModel.status == SubscriptionStatus.ACTIVE.value,
                col(SubscriptionModel.current_period_end) <= now,
            )
        )
        if jurisdiction is not None:
            statement = statement.where(SubscriptionModel.jurisdiction == jurisdiction)
        statement = statement.limit(limit)
        return await self._all(statement, Subscription, "subscriptions")

    # =========================================================================
    # Usage Periods
    # =========================================================================

    async def get_usage_period(
        self,
        subscription_id: str,
        period_start: datetime,
        period_end: datetime,
    ) -> Optional[UsagePeriod]:
        statement = select(UsagePeriodModel).where(
            UsagePeriodModel.subscription_id == subscription_id,
            UsagePeriodModel.period_start == period_start,
            UsagePeriodModel.period_end == period_end,
        )
        return await self._first(statement, UsagePeriod, "usage_periods")

    async def insert_usage_period(self, period: UsagePeriod) -> UsagePeriod:
        return await self._insert(UsagePeriodModel, period, UsagePeriod, "usage_periods")

    async def increment_usage(
        self,
        subscription_id: str,
        period_start: datetime,
        period_end: datetime,
        dimension: MeteredDimension,
        amount: int = 1,
    ) -> bool:
        column_name = USAGE_COUNTER_COLUMNS[dimension]
        counter = getattr(UsagePeriodModel, column_name)
        statement = (
            update(UsagePeriodModel)
            .where(
                col(UsagePeriodModel.subscription_id) == subscription_id,
                col(UsagePeriodModel.period_start) == period_start,
                col(UsagePeriodModel.period_end) == period_end,
            )
            .values(**{column_name: counter + amount, "updated_at": utc_now()})
            .execution_options(synchronize_session=False)
        )
        async with self._session("increment", "usage_periods") as session:
            result = await session.execute(statement)
            return result.rowcount > 0

    # =========================================================================
    # Upgrade Sessions
    # =========================================================================

    async def insert_upgrade_session(self, session: UpgradeSession) -> UpgradeSession:
        return await self._insert(UpgradeSessionModel, session, UpgradeSession, "upgrade_sessions")

    async def get_upgrade_session(self, session_id: str) -> Optional[UpgradeSession]:
        statement = select(UpgradeSessionModel).where(UpgradeSessionModel.id == session_id)
        return await self._first(statement, UpgradeSession, "upgrade_sessions")

    async def find_live_upgrade_session(self, subscriber_id: str) -> Optional[UpgradeSession]:
        statement = select(UpgradeSessionModel).where(
            UpgradeSessionModel.subscriber_id == subscriber_id,
            col(UpgradeSessionModel.status).in_(status_values(LIVE_SESSION_STATUSES)),
        )
        return await self._first(statement, UpgradeSession, "upgrade_sessions")

    async def find_upgrade_session_by_checkout(
        self,
        external_checkout_id: str,
    ) -> Optional[UpgradeSession]:
        statement = select(UpgradeSessionModel).where(
            UpgradeSessionModel.external_checkout_id == external_checkout_id
        )
        return await self._first(statement, UpgradeSession, "upgrade_sessions")

    async def list_upgrade_sessions(
        self,
        subscriber_id: str,
        limit: int = 50,
    ) -> List[UpgradeSession]:
        statement = (
            select(UpgradeSessionModel)
            .where(UpgradeSessionModel.subscriber_id == subscriber_id)
            .order_by(col(UpgradeSessionModel.created_at).desc())
            .limit(limit)
        )
        return await self._all(statement, UpgradeSession, "upgrade_sessions")

    async def update_upgrade_session(
        self,
        session_id: str,
        expected_statuses: Iterable[UpgradeSessionStatus],
        changes: Dict[str, Any],
    ) -> Optional[UpgradeSession]:
        return await self._compare_and_swap(
            UpgradeSessionModel, UpgradeSession, "upgrade_sessions",
            session_id, expected_statuses, changes,
        )

    async def increment_upgrade_attempts(self, session_id: str, at: datetime) -> bool:
        statement = (
            update(UpgradeSessionModel)
            .where(col(UpgradeSessionModel.id) == session_id)
            .values(
                attempts_count=UpgradeSessionModel.attempts_count + 1,
                last_attempt_at=at,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        async with self._session("increment", "upgrade_sessions") as session:
            result = await session.execute(statement)
            return result.rowcount > 0

    async def insert_upgrade_attempt(self, attempt: UpgradeAttempt) -> UpgradeAttempt:
        row = plain_changes(attempt.model_dump())
        row["id"] = row.get("id") or str(uuid4())
        if row.get("created_at") is None:
            row.pop("created_at", None)
        model = UpgradeAttemptModel(**row)
        async with self._session("insert", "upgrade_attempts") as session:
            session.add(model)
            await session.flush()
        return _to_domain(UpgradeAttempt, model)

    async def list_upgrade_attempts(self, session_id: str) -> List[UpgradeAttempt]:
        statement = (
            select(UpgradeAttemptModel)
            .where(UpgradeAttemptModel.session_id == session_id)
            .order_by(col(UpgradeAttemptModel.created_at))
        )
        return await self._all(statement, UpgradeAttempt, "upgrade_attempts")

    async def expire_upgrade_sessions(self, now: datetime, jurisdiction: Optional[str] = None) -> int:
        conditions = [
            col(UpgradeSessionModel.status).in_(status_values(LIVE_SESSION_STATUSES)),
            col(UpgradeSessionModel.expires_at) < now,
        ]
        if jurisdiction is not None:
            conditions.append(col(UpgradeSessionModel.jurisdiction) == jurisdiction)
        statement = (
            update(UpgradeSessionModel)
            .where(*conditions)
            .values(
                status=UpgradeSessionStatus.EXPIRED.value,
                current_step=UpgradeStep.EXPIRED.value,
                updated_at=utc_now(),
            )
            .execution_options(synchronize_session=False)
        )
        async with self._session("update", "upgrade_sessions") as session:
            result = await session.execute(statement)
            expired = result.rowcount or 0
        if expired:
            logger.info(f"[{self.name}] Expired {expired} upgrade sessions")
        return expired

    # =========================================================================
    # Processed Events
    # =========================================================================

    async def is_event_processed(self, event_id: str) -> bool:
        statement = select(ProcessedWebhookEventModel.event_id).where(
            ProcessedWebhookEventModel.event_id == event_id
        )
        async with self._session("select", "processed_webhook_events") as session:
            result = await session.execute(statement)
            return result.first() is not None

    async def mark_event_processed(self, event_id: str, event_type: str) -> bool:
        model = ProcessedWebhookEventModel(event_id=event_id, event_type=event_type)
        try:
            async with self._session("insert", "processed_webhook_events") as session:
                session.add(model)
                await session.flush()
        except ConflictError:
            return False
        return True

    async def close(self) -> None:
        await self._db.close()
