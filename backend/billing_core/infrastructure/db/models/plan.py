"""
Plan Database Model

Purchasable plans per jurisdiction. The core only reads these.
"""

from typing import List, Optional

from sqlalchemy import JSON, UniqueConstraint
from sqlmodel import Field

from billing_core.infrastructure.db.models.base import IdMixin, TimestampMixin


class PlanModel(IdMixin, TimestampMixin, table=True):
    """Maps to the 'plans' table."""

    __tablename__ = "plans"
    __table_args__ = (
        UniqueConstraint("name", "jurisdiction", name="uq_plans_name_jurisdiction"),
    )

    name: str = Field(max_length=100, nullable=False)
    jurisdiction: str = Field(max_length=2, index=True, nullable=False)
    description: Optional[str] = Field(default=None)

    monthly_price: float = Field(default=0.0)
    yearly_price: float = Field(default=0.0)

    # NULL means unlimited
    consultation_limit: Optional[int] = Field(default=None)
    document_analysis_limit: Optional[int] = Field(default=None)
    message_limit: Optional[int] = Field(default=None)
    is_unlimited: bool = Field(default=False)
    is_active: bool = Field(default=True)

    external_product_id: Optional[str] = Field(default=None, max_length=255)
    external_price_id_monthly: Optional[str] = Field(default=None, max_length=255)
    external_price_id_yearly: Optional[str] = Field(default=None, max_length=255)
    features: List[str] = Field(default_factory=list, sa_type=JSON)
