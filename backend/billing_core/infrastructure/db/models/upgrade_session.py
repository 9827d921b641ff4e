"""
Upgrade Session Database Models

Upgrade workflow sessions and their write-once attempt log.
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Index, text
from sqlmodel import Field, SQLModel

from billing_core.infrastructure.db.models.base import IdMixin, TimestampMixin, utc_now


LIVE_STATUS_CLAUSE = "status IN ('active', 'payment_processing')"


class UpgradeSessionModel(IdMixin, TimestampMixin, table=True):
    """
    Maps to the 'upgrade_sessions' table.

    At most one live (active/payment_processing) session per subscriber.
    Terminal sessions are retained for audit.
    """

    __tablename__ = "upgrade_sessions"
    __table_args__ = (
        Index(
            "uq_upgrade_sessions_one_live",
            "subscriber_id",
            unique=True,
            postgresql_where=text(LIVE_STATUS_CLAUSE),
            sqlite_where=text(LIVE_STATUS_CLAUSE),
        ),
        Index("ix_upgrade_sessions_status_expires_at", "status", "expires_at"),
    )

    subscriber_id: str = Field(foreign_key="subscribers.id", max_length=36, index=True, nullable=False)
    phone: Optional[str] = Field(default=None, max_length=20)
    jurisdiction: str = Field(max_length=2, nullable=False)

    plan_name: str = Field(max_length=100, nullable=False)
    billing_cycle: str = Field(default="monthly", max_length=10)
    amount: float = Field(default=0.0)

    status: str = Field(default="active", max_length=20)
    current_step: str = Field(default="plan_selection", max_length=30)

    attempts_count: int = Field(default=0, nullable=False)
    last_attempt_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))

    external_checkout_id: Optional[str] = Field(default=None, max_length=255, index=True)
    checkout_url: Optional[str] = Field(default=None)

    expires_at: datetime = Field(sa_type=DateTime(timezone=True), nullable=False)


class UpgradeAttemptModel(IdMixin, SQLModel, table=True):
    """Maps to the 'upgrade_attempts' table. Rows are never updated."""

    __tablename__ = "upgrade_attempts"

    session_id: str = Field(foreign_key="upgrade_sessions.id", max_length=36, index=True, nullable=False)
    step: str = Field(max_length=30, nullable=False)
    success: bool = Field(nullable=False)
    error_message: Optional[str] = Field(default=None)
    created_at: datetime = Field(
        default_factory=utc_now,
        sa_type=DateTime(timezone=True),
        nullable=False,
    )
