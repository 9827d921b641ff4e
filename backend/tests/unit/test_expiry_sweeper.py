"""
Unit tests for the expiry sweeper.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from billing_core.domain.subscription import SubscriptionStatus
from billing_core.domain.upgrade import UpgradeSessionStatus
from billing_core.infrastructure.exceptions import DatabaseError


class TestExpirySweeper:

    @pytest.mark.asyncio
    async def test_sweeps_every_jurisdiction(self, sweeper, pt_scope, br_scope, pt_subscriber, br_subscriber):
        pt_free = await pt_scope.subscriptions.ensure_entitlements(pt_subscriber.id)
        br_session = await br_scope.upgrades.create_session(br_subscriber.id, "Pro")
        later = datetime.now(timezone.utc) + timedelta(days=62)

        report = await sweeper.run_once(later)

        assert report.expired_subscriptions["PT"] == 1
        assert report.expired_sessions["BR"] == 1
        assert report.expired_sessions["ES"] == 0
        assert report.total == 2
        assert (await pt_scope.subscriptions.get(pt_free.id)).status == SubscriptionStatus.EXPIRED
        assert (await br_scope.upgrades.get(br_session.id)).status == UpgradeSessionStatus.EXPIRED

    @pytest.mark.asyncio
    async def test_second_run_changes_nothing(self, sweeper, pt_scope, pt_subscriber):
        await pt_scope.subscriptions.ensure_entitlements(pt_subscriber.id)
        await pt_scope.upgrades.create_session(pt_subscriber.id, "Pro")
        later = datetime.now(timezone.utc) + timedelta(days=62)

        first = await sweeper.run_once(later)
        second = await sweeper.run_once(later)

        assert first.total == 2
        assert second.total == 0

    @pytest.mark.asyncio
    async def test_nothing_due(self, sweeper, pt_scope, pt_subscriber):
        await pt_scope.subscriptions.ensure_entitlements(pt_subscriber.id)

        report = await sweeper.run_once()

        assert report.total == 0
        assert set(report.expired_sessions) == {"BR", "PT", "ES"}

    @pytest.mark.asyncio
    async def test_provider_subscription_gets_grace(self, sweeper, pt_scope, pt_subscriber):
        subscription = await pt_scope.subscriptions.activate_plan(
            pt_subscriber.id, "Pro", external_subscription_id="sub_sweep",
        )
        end = subscription.current_period_end

        assert (await sweeper.run_once(end + timedelta(hours=1))).total == 0
        assert (await sweeper.run_once(end + timedelta(hours=73))).total == 1


class TestPeriodicSweep:

    @pytest.mark.asyncio
    async def test_failures_do_not_stop_the_loop(self, caplog):
        from billing_core.main import run_periodic_sweep

        sweeper = MagicMock()
        sweeper.run_once = AsyncMock(side_effect=[DatabaseError("down"), MagicMock(total=0)])
        sleep = AsyncMock(side_effect=[None, None, asyncio.CancelledError()])

        with patch("billing_core.api.dependencies.get_expiry_sweeper", return_value=sweeper), \
                patch("billing_core.main.asyncio.sleep", sleep):
            with pytest.raises(asyncio.CancelledError):
                await run_periodic_sweep(30)

        assert sweeper.run_once.await_count == 2
        assert sleep.await_args_list[0].args == (30,)
        assert "Scheduled expiry sweep failed" in caplog.text
