"""
Usage Period Database Model
"""

from datetime import datetime

from sqlalchemy import DateTime, UniqueConstraint
from sqlmodel import Field

from billing_core.infrastructure.db.models.base import IdMixin, TimestampMixin


class UsagePeriodModel(IdMixin, TimestampMixin, table=True):
    """
    Per-period usage counters. Created lazily, superseded rather than deleted.
    """

    __tablename__ = "usage_periods"
    __table_args__ = (
        UniqueConstraint(
            "subscription_id", "period_start", "period_end",
            name="uq_usage_periods_subscription_period",
        ),
    )

    subscription_id: str = Field(foreign_key="subscriptions.id", max_length=36, nullable=False)
    subscriber_id: str = Field(foreign_key="subscribers.id", max_length=36, index=True, nullable=False)
    jurisdiction: str = Field(max_length=2, nullable=False)

    period_start: datetime = Field(sa_type=DateTime(timezone=True), nullable=False)
    period_end: datetime = Field(sa_type=DateTime(timezone=True), nullable=False)

    consultations_count: int = Field(default=0, nullable=False)
    document_analyses_count: int = Field(default=0, nullable=False)
    messages_count: int = Field(default=0, nullable=False)
