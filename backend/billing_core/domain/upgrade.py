"""
Upgrade Session Domain Models

Ephemeral plan-change workflow: a session walks forward through the
upgrade steps until it reaches a terminal status.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from billing_core.domain.subscription import BillingCycle


class UpgradeSessionStatus(str, Enum):
    """Upgrade session status. Authoritative over the step cursor."""
    ACTIVE = "active"
    PAYMENT_PROCESSING = "payment_processing"
    COMPLETED = "completed"
    PAYMENT_CONFIRMED = "payment_confirmed"
    PAYMENT_FAILED = "payment_failed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    FAILED = "failed"


class UpgradeStep(str, Enum):
    """Workflow cursor."""
    PLAN_SELECTION = "plan_selection"
    FREQUENCY_SELECTION = "frequency_selection"
    PAYMENT_INFO = "payment_info"
    PAYMENT_PROCESSING = "payment_processing"
    CONFIRMATION = "confirmation"
    EXPIRED = "expired"


LIVE_SESSION_STATUSES = frozenset({
    UpgradeSessionStatus.ACTIVE,
    UpgradeSessionStatus.PAYMENT_PROCESSING,
})

TERMINAL_SESSION_STATUSES = frozenset(
    status for status in UpgradeSessionStatus if status not in LIVE_SESSION_STATUSES
)

# Success terminals; a second confirmation of either is a no-op
SUCCESS_SESSION_STATUSES = frozenset({
    UpgradeSessionStatus.COMPLETED,
    UpgradeSessionStatus.PAYMENT_CONFIRMED,
})

# Forward-only ordering; EXPIRED is set by the expiry path, never advanced to
STEP_ORDER: Dict[UpgradeStep, int] = {
    UpgradeStep.PLAN_SELECTION: 0,
    UpgradeStep.FREQUENCY_SELECTION: 1,
    UpgradeStep.PAYMENT_INFO: 2,
    UpgradeStep.PAYMENT_PROCESSING: 3,
    UpgradeStep.CONFIRMATION: 4,
}


# Owned by the payment transitions so that step and status agree
PAYMENT_DRIVEN_STEPS = frozenset({
    UpgradeStep.PAYMENT_PROCESSING,
    UpgradeStep.CONFIRMATION,
})


def is_forward_step(current: UpgradeStep, target: UpgradeStep) -> bool:
    """True when ``target`` does not move the cursor backwards."""
    if target not in STEP_ORDER or current not in STEP_ORDER:
        return False
    return STEP_ORDER[target] >= STEP_ORDER[current]


class UpgradeSession(BaseModel):
    """A single plan-change workflow."""
    id: Optional[str] = None
    subscriber_id: str
    phone: Optional[str] = None
    jurisdiction: str
    plan_name: str
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    amount: float = 0.0
    status: UpgradeSessionStatus = UpgradeSessionStatus.ACTIVE
    current_step: UpgradeStep = UpgradeStep.PLAN_SELECTION
    attempts_count: int = 0
    last_attempt_at: Optional[datetime] = None
    external_checkout_id: Optional[str] = None
    checkout_url: Optional[str] = None
    expires_at: datetime
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True

    @property
    def is_live(self) -> bool:
        return self.status in LIVE_SESSION_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SESSION_STATUSES

    def is_past_deadline(self, now: datetime) -> bool:
        return self.expires_at < now


class UpgradeAttempt(BaseModel):
    """Write-once log entry for a step attempt."""
    id: Optional[str] = None
    session_id: str
    step: UpgradeStep
    success: bool
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# =============================================================================
# Request/Response DTOs
# =============================================================================

class CreateUpgradeSessionRequest(BaseModel):
    subscriber_id: str
    plan_name: str
    billing_cycle: BillingCycle = BillingCycle.MONTHLY
    amount: Optional[float] = None
    phone: Optional[str] = None
    step: UpgradeStep = UpgradeStep.PLAN_SELECTION


class AdvanceStepRequest(BaseModel):
    step: UpgradeStep


class RecordAttemptRequest(BaseModel):
    step: UpgradeStep
    success: bool
    error_message: Optional[str] = Field(default=None, max_length=1000)


class StartCheckoutRequest(BaseModel):
    customer_email: Optional[str] = None


class UpgradeSessionDetail(BaseModel):
    """Session plus its attempt log."""
    session: UpgradeSession
    attempts: List[UpgradeAttempt] = Field(default_factory=list)
