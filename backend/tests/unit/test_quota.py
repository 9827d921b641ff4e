"""
Unit tests for the usage quota tracker.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from billing_core.domain.jurisdiction import MeteredDimension
from billing_core.infrastructure.exceptions import DatabaseError, NotFoundError
from billing_core.infrastructure.services.quota_service import QuotaTracker


class TestQuotaTracker:

    @pytest.mark.asyncio
    async def test_message_limit_of_two(self, br_scope, br_subscriber):
        """Free tier allows two messages per period, the third is refused."""
        quotas = br_scope.quotas

        first = await quotas.check_limit(br_subscriber.id, MeteredDimension.MESSAGES)
        assert first.allowed is True
        assert first.limit == 2
        assert first.plan_name == "Fremium"
        await quotas.increment(br_subscriber.id, MeteredDimension.MESSAGES)

        second = await quotas.check_limit(br_subscriber.id, MeteredDimension.MESSAGES)
        assert second.allowed is True
        assert second.remaining == 1
        await quotas.increment(br_subscriber.id, MeteredDimension.MESSAGES)

        third = await quotas.check_limit(br_subscriber.id, MeteredDimension.MESSAGES)
        assert third.allowed is False
        assert third.current == 2
        assert third.remaining == 0

    @pytest.mark.asyncio
    async def test_unmetered_dimension_is_always_allowed(self, br_scope, br_subscriber):
        check = await br_scope.quotas.check_limit(br_subscriber.id, MeteredDimension.CONSULTATIONS)

        assert check.allowed is True
        assert check.metered is False
        assert await br_scope.quotas.increment(br_subscriber.id, MeteredDimension.CONSULTATIONS) is False

    @pytest.mark.asyncio
    async def test_unlimited_plan(self, pt_scope, pt_subscriber):
        await pt_scope.subscriptions.activate_plan(pt_subscriber.id, "Premium")
        for _ in range(5):
            await pt_scope.quotas.increment(pt_subscriber.id, MeteredDimension.CONSULTATIONS)

        check = await pt_scope.quotas.check_limit(pt_subscriber.id, MeteredDimension.CONSULTATIONS)

        assert check.allowed is True
        assert check.limit is None
        assert check.current == 5

    @pytest.mark.asyncio
    async def test_concurrent_increments_are_not_lost(self, pt_scope, pt_subscriber):
        await pt_scope.subscriptions.activate_plan(pt_subscriber.id, "Pro")

        await asyncio.gather(*[
            pt_scope.quotas.increment(pt_subscriber.id, MeteredDimension.MESSAGES)
            for _ in range(10)
        ])

        summary = await pt_scope.quotas.usage_summary(pt_subscriber.id)
        assert summary.usage[MeteredDimension.MESSAGES].current == 10
        assert summary.usage[MeteredDimension.MESSAGES].limit == 500

    @pytest.mark.asyncio
    async def test_usage_summary_marks_unmetered(self, br_scope, br_subscriber):
        summary = await br_scope.quotas.usage_summary(br_subscriber.id)

        assert summary.plan_name == "Fremium"
        assert summary.usage[MeteredDimension.MESSAGES].metered is True
        assert summary.usage[MeteredDimension.CONSULTATIONS].metered is False
        assert summary.usage[MeteredDimension.CONSULTATIONS].limit is None

    @pytest.mark.asyncio
    async def test_new_period_starts_from_zero(self, pt_scope, pt_subscriber):
        free = await pt_scope.subscriptions.ensure_entitlements(pt_subscriber.id)
        await pt_scope.quotas.increment(pt_subscriber.id, MeteredDimension.MESSAGES)

        await pt_scope.subscriptions.activate_plan(pt_subscriber.id, "Pro")

        check = await pt_scope.quotas.check_limit(pt_subscriber.id, MeteredDimension.MESSAGES)
        assert check.current == 0
        assert check.plan_name == "Pro"
        assert free.plan_name == "Fremium"


class TestQuotaDegradation:

    def _tracker(self, scope, fail_open):
        return QuotaTracker(
            scope.store, scope.subscriptions, scope.catalog, scope.jurisdiction, fail_open=fail_open,
        )

    @pytest.mark.asyncio
    @pytest.mark.parametrize("fail_open", [True, False])
    async def test_storage_outage_uses_configured_answer(self, pt_scope, pt_subscriber, fail_open):
        await pt_scope.subscriptions.ensure_entitlements(pt_subscriber.id)
        pt_scope.store.get_usage_period = AsyncMock(
            side_effect=DatabaseError("timeout", operation="select", table="usage_periods")
        )

        check = await self._tracker(pt_scope, fail_open).check_limit(
            pt_subscriber.id, MeteredDimension.MESSAGES,
        )

        assert check.degraded is True
        assert check.allowed is fail_open

    @pytest.mark.asyncio
    @pytest.mark.parametrize("fail_open", [True, False])
    async def test_missing_free_plan_uses_configured_answer(self, pt_scope, pt_subscriber, fail_open, caplog):
        """A subscriber with no subscription in a catalog without the free tier."""
        pt_scope.catalog.get_free_plan = AsyncMock(
            side_effect=NotFoundError("Free plan 'Fremium' not found in PT", entity="plan", key="Fremium")
        )

        check = await self._tracker(pt_scope, fail_open).check_limit(
            pt_subscriber.id, MeteredDimension.MESSAGES,
        )

        assert check.degraded is True
        assert check.allowed is fail_open
        assert "degraded" in caplog.text

    @pytest.mark.asyncio
    async def test_increment_failure_is_swallowed(self, pt_scope, pt_subscriber, caplog):
        await pt_scope.subscriptions.ensure_entitlements(pt_subscriber.id)
        pt_scope.store.increment_usage = AsyncMock(
            side_effect=DatabaseError("timeout", operation="increment", table="usage_periods")
        )

        assert await pt_scope.quotas.increment(pt_subscriber.id, MeteredDimension.MESSAGES) is False
        assert "Failed to meter" in caplog.text
