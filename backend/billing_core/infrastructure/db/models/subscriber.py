"""
Subscriber Database Model
"""

from typing import Optional

from sqlmodel import Field

from billing_core.infrastructure.db.models.base import IdMixin, TimestampMixin


class SubscriberModel(IdMixin, TimestampMixin, table=True):
    """
    Maps to the 'subscribers' table.

    Subscribers are deactivated, never deleted.
    """

    __tablename__ = "subscribers"

    phone: str = Field(max_length=20, unique=True, index=True, nullable=False)
    name: Optional[str] = Field(default=None, max_length=255)
    jurisdiction: str = Field(max_length=2, index=True, nullable=False)
    is_active: bool = Field(default=True)
