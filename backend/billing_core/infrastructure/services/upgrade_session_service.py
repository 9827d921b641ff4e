"""
Upgrade Session State Machine

Drives the plan-change workflow: plan selection, billing frequency,
payment info, checkout and confirmation. ``status`` decides what is
allowed; ``current_step`` is only the workflow cursor.

Terminal statuses are absorbing. Every terminal write is a compare-and-swap
from a live status, so whichever of the user, the sweeper and the webhook
processor gets there first wins and the others become no-ops.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

from billing_core.domain.subscription import BillingCycle
from billing_core.domain.upgrade import (
    LIVE_SESSION_STATUSES,
    PAYMENT_DRIVEN_STEPS,
    UpgradeAttempt,
    UpgradeSession,
    UpgradeSessionStatus,
    UpgradeStep,
    is_forward_step,
)
from billing_core.infrastructure.db.repositories.base_repository import BillingStore
from billing_core.infrastructure.exceptions import (
    ConfigurationError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    UpstreamError,
)
from billing_core.infrastructure.services.plan_catalog import PlanCatalog


logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class UpgradeSessionMachine:
    """Upgrade workflow for one jurisdiction."""

    def __init__(
        self,
        store: BillingStore,
        catalog: PlanCatalog,
        jurisdiction: str,
        ttl: timedelta = timedelta(minutes=60),
        payment_client=None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._store = store
        self._catalog = catalog
        self._jurisdiction = jurisdiction
        self._ttl = ttl
        self._payment_client = payment_client
        self._clock = clock

    # =========================================================================
    # Queries
    # =========================================================================

    async def get(self, session_id: str) -> UpgradeSession:
        session = await self._store.get_upgrade_session(session_id)
        if session is None:
            raise NotFoundError(
                f"Upgrade session {session_id} not found",
                entity="upgrade_session",
                key=session_id,
            )
        return session

    async def find_live(self, subscriber_id: str) -> Optional[UpgradeSession]:
        return await self._store.find_live_upgrade_session(subscriber_id)

    async def find_by_checkout(self, external_checkout_id: str) -> Optional[UpgradeSession]:
        return await self._store.find_upgrade_session_by_checkout(external_checkout_id)

    async def list_for_subscriber(self, subscriber_id: str, limit: int = 50) -> List[UpgradeSession]:
        return await self._store.list_upgrade_sessions(subscriber_id, limit=limit)

    async def list_attempts(self, session_id: str) -> List[UpgradeAttempt]:
        return await self._store.list_upgrade_attempts(session_id)

    # =========================================================================
    # Workflow
    # =========================================================================

    async def create_session(
        self,
        subscriber_id: str,
        plan_name: str,
        billing_cycle: BillingCycle = BillingCycle.MONTHLY,
        amount: Optional[float] = None,
        phone: Optional[str] = None,
        step: UpgradeStep = UpgradeStep.PLAN_SELECTION,
    ) -> UpgradeSession:
        """
        Open a new upgrade session.

        Raises:
            NotFoundError: plan does not exist in this jurisdiction
            ConflictError: subscriber already has a live session
        """
        plan = await self._catalog.require_plan(plan_name, self._jurisdiction)
        now = self._clock()

        live = await self._store.find_live_upgrade_session(subscriber_id)
        if live is not None:
            if not live.is_past_deadline(now):
                raise ConflictError(
                    f"Subscriber {subscriber_id} already has a live upgrade session",
                    details={"session_id": live.id},
                )
            await self.expire_now(live.id)

        session = await self._store.insert_upgrade_session(UpgradeSession(
            subscriber_id=subscriber_id,
            phone=phone,
            jurisdiction=self._jurisdiction,
            plan_name=plan.name,
            billing_cycle=billing_cycle,
            amount=amount if amount is not None else plan.price_for(billing_cycle),
            status=UpgradeSessionStatus.ACTIVE,
            current_step=step,
            expires_at=now + self._ttl,
        ))
        logger.info(
            f"Opened upgrade session {session.id} for subscriber {subscriber_id}: "
            f"{plan.name}/{billing_cycle.value} {session.amount:.2f}"
        )
        return session

    async def _require_open(self, session_id: str) -> UpgradeSession:
        """Load a live, in-deadline session or raise InvalidTransitionError."""
        session = await self.get(session_id)
        if session.is_terminal:
            raise InvalidTransitionError(
                f"Upgrade session {session_id} is already {session.status.value}",
                entity="upgrade_session",
                current=session.status.value,
            )
        if session.is_past_deadline(self._clock()):
            await self.expire_now(session_id)
            raise InvalidTransitionError(
                f"Upgrade session {session_id} has expired",
                entity="upgrade_session",
                current=UpgradeSessionStatus.EXPIRED.value,
            )
        return session

    async def advance_step(self, session_id: str, step: UpgradeStep) -> UpgradeSession:
        """
        Move the cursor forward, up to ``payment_info``.

        Same step is a no-op; backwards, or onto a step owned by the payment
        transitions, is rejected.
        """
        for _ in range(2):
            session = await self._require_open(session_id)
            if step == session.current_step:
                return session
            if step in PAYMENT_DRIVEN_STEPS:
                raise InvalidTransitionError(
                    f"Step {step.value} is reached through checkout, not advanced to",
                    entity="upgrade_session",
                    current=session.current_step.value,
                    target=step.value,
                )
            if not is_forward_step(session.current_step, step):
                raise InvalidTransitionError(
                    f"Cannot move upgrade session from {session.current_step.value} to {step.value}",
                    entity="upgrade_session",
                    current=session.current_step.value,
                    target=step.value,
                )
            updated = await self._store.update_upgrade_session(
                session_id, [session.status], {"current_step": step},
            )
            if updated is not None:
                return updated

        raise ConflictError(
            f"Upgrade session {session_id} is being modified concurrently",
            details={"session_id": session_id},
        )

    async def record_attempt(
        self,
        session_id: str,
        step: UpgradeStep,
        success: bool,
        error: Optional[str] = None,
    ) -> Optional[UpgradeAttempt]:
        """Append to the attempt log. Best-effort: failures are logged, never raised."""
        try:
            now = self._clock()
            await self._store.increment_upgrade_attempts(session_id, now)
            return await self._store.insert_upgrade_attempt(UpgradeAttempt(
                session_id=session_id,
                step=step,
                success=success,
                error_message=error,
                created_at=now,
            ))
        except Exception as e:
            logger.warning(f"Failed to record attempt for upgrade session {session_id}: {e}")
            return None

    async def begin_payment_processing(
        self,
        session_id: str,
        external_checkout_id: str,
        checkout_url: Optional[str] = None,
    ) -> UpgradeSession:
        session = await self._require_open(session_id)
        if session.status == UpgradeSessionStatus.PAYMENT_PROCESSING:
            if session.external_checkout_id == external_checkout_id:
                return session
            raise ConflictError(
                f"Upgrade session {session_id} already has checkout {session.external_checkout_id}",
                details={"session_id": session_id},
            )

        updated = await self._store.update_upgrade_session(
            session_id,
            [UpgradeSessionStatus.ACTIVE],
            {
                "status": UpgradeSessionStatus.PAYMENT_PROCESSING,
                "current_step": UpgradeStep.PAYMENT_PROCESSING,
                "external_checkout_id": external_checkout_id,
                "checkout_url": checkout_url,
            },
        )
        if updated is None:
            current = await self.get(session_id)
            raise InvalidTransitionError(
                f"Upgrade session {session_id} moved to {current.status.value} concurrently",
                entity="upgrade_session",
                current=current.status.value,
                target=UpgradeSessionStatus.PAYMENT_PROCESSING.value,
            )
        logger.info(f"Upgrade session {session_id} awaiting payment (checkout {external_checkout_id})")
        return updated

    async def start_checkout(
        self,
        session_id: str,
        customer_email: Optional[str] = None,
    ) -> UpgradeSession:
        """Create the provider checkout for a session and move it to payment processing."""
        if self._payment_client is None:
            raise ConfigurationError(
                "No payment client configured",
                missing_keys=["STRIPE_SECRET_KEY"],
            )

        session = await self._require_open(session_id)
        if session.status == UpgradeSessionStatus.PAYMENT_PROCESSING:
            return session

        plan = await self._catalog.require_plan(session.plan_name, self._jurisdiction)
        price_ref = plan.price_ref_for(session.billing_cycle)
        if not price_ref:
            raise ConfigurationError(
                f"Plan {plan.name} has no provider price for {session.billing_cycle.value}",
                missing_keys=[f"external_price_id_{session.billing_cycle.value}"],
            )

        metadata = {
            "session_id": session.id,
            "subscriber_id": session.subscriber_id,
            "plan_name": session.plan_name,
            "billing_cycle": session.billing_cycle.value,
            "jurisdiction": self._jurisdiction,
        }
        if session.phone:
            metadata["phone"] = session.phone

        try:
            checkout = await self._payment_client.create_checkout_session(
                price_ref=price_ref,
                customer_email=customer_email,
                metadata=metadata,
            )
        except UpstreamError as e:
            await self.record_attempt(session_id, UpgradeStep.PAYMENT_INFO, False, e.message)
            raise

        await self.record_attempt(session_id, UpgradeStep.PAYMENT_INFO, True)
        return await self.begin_payment_processing(session_id, checkout.id, checkout.url)

    # =========================================================================
    # Terminal Transitions
    # =========================================================================

    async def _finish(
        self,
        session_id: str,
        target: UpgradeSessionStatus,
        step: Optional[UpgradeStep] = None,
    ) -> UpgradeSession:
        """CAS a live session into ``target``. Terminal sessions are returned unchanged."""
        session = await self.get(session_id)
        if session.is_terminal:
            if session.status != target:
                logger.info(
                    f"Upgrade session {session_id} already {session.status.value}; "
                    f"ignoring {target.value}"
                )
            return session

        changes = {"status": target}
        if step is not None:
            changes["current_step"] = step

        updated = await self._store.update_upgrade_session(
            session_id, LIVE_SESSION_STATUSES, changes,
        )
        if updated is None:
            # Another writer reached a terminal status first
            return await self.get(session_id)

        logger.info(f"Upgrade session {session_id}: {session.status.value} -> {target.value}")
        return updated

    async def complete(self, session_id: str) -> UpgradeSession:
        return await self._finish(session_id, UpgradeSessionStatus.COMPLETED, UpgradeStep.CONFIRMATION)

    async def confirm_payment(self, session_id: str) -> UpgradeSession:
        """Terminal success for payments the provider settles asynchronously."""
        return await self._finish(
            session_id, UpgradeSessionStatus.PAYMENT_CONFIRMED, UpgradeStep.CONFIRMATION,
        )

    async def expire_now(self, session_id: str) -> UpgradeSession:
        return await self._finish(session_id, UpgradeSessionStatus.EXPIRED, UpgradeStep.EXPIRED)

    async def cancel(self, session_id: str) -> UpgradeSession:
        return await self._finish(session_id, UpgradeSessionStatus.CANCELLED)

    async def fail(self, session_id: str, error: Optional[str] = None) -> UpgradeSession:
        if error:
            logger.warning(f"Upgrade session {session_id} failed: {error}")
        return await self._finish(session_id, UpgradeSessionStatus.FAILED)

    async def mark_payment_failed(self, session_id: str) -> UpgradeSession:
        return await self._finish(session_id, UpgradeSessionStatus.PAYMENT_FAILED)

    async def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """Expire every live session past its deadline. Idempotent."""
        return await self._store.expire_upgrade_sessions(now or self._clock(), self._jurisdiction)
