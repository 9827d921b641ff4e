"""
Subscription Database Model

SQLModel table for subscription data persistence.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Index, text
from sqlmodel import Field

from billing_core.infrastructure.db.models.base import IdMixin, TimestampMixin


class SubscriptionModel(IdMixin, TimestampMixin, table=True):
    """
    Subscription table.

    The partial unique index allows any number of historical rows per
    subscriber but at most one with status 'active'.
    """

    __tablename__ = "subscriptions"
    __table_args__ = (
        Index(
            "uq_subscriptions_one_active",
            "subscriber_id",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        Index("ix_subscriptions_status_period_end", "status", "current_period_end"),
    )

    subscriber_id: str = Field(foreign_key="subscribers.id", max_length=36, index=True, nullable=False)
    plan_id: str = Field(foreign_key="plans.id", max_length=36, nullable=False)
    plan_name: Optional[str] = Field(default=None, max_length=100)
    jurisdiction: str = Field(max_length=2, nullable=False)

    status: str = Field(default="active", max_length=20, index=True)
    billing_cycle: str = Field(default="monthly", max_length=10)

    # Half-open billing period [start, end)
    current_period_start: datetime = Field(sa_type=DateTime(timezone=True), nullable=False)
    current_period_end: datetime = Field(sa_type=DateTime(timezone=True), nullable=False)

    # Stripe correlation
    external_subscription_id: Optional[str] = Field(default=None, max_length=255, unique=True, index=True)
    external_customer_id: Optional[str] = Field(default=None, max_length=255, index=True)

    sync_status: str = Field(default="synced", max_length=10, index=True)
    last_sync_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    cancelled_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
