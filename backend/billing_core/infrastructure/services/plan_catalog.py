"""
Plan Catalog Service

Read-only plan lookups for one backend, through an injected cache.
The cache is owned by whoever builds the catalog; there is no
process-wide plan state.
"""

import logging
import time
from typing import Callable, Dict, List, Optional, Tuple

from billing_core.domain.subscription import Plan
from billing_core.infrastructure.db.repositories.base_repository import IPlanStore
from billing_core.infrastructure.exceptions import NotFoundError


logger = logging.getLogger(__name__)


class PlanCache:
    """
    TTL cache of plan lists keyed by (store name, jurisdiction).

    Entries are dropped on ``invalidate``/``clear`` or when older than
    ``ttl_seconds``. A ttl of 0 disables caching.
    """

    def __init__(self, ttl_seconds: float = 300, clock: Callable[[], float] = time.monotonic):
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: Dict[Tuple[str, str], Tuple[float, List[Plan]]] = {}

    def get(self, store_name: str, jurisdiction: str) -> Optional[List[Plan]]:
        entry = self._entries.get((store_name, jurisdiction))
        if entry is None:
            return None
        stored_at, plans = entry
        if self._clock() - stored_at >= self._ttl:
            del self._entries[(store_name, jurisdiction)]
            return None
        return [plan.model_copy() for plan in plans]

    def put(self, store_name: str, jurisdiction: str, plans: List[Plan]) -> None:
        if self._ttl <= 0:
            return
        self._entries[(store_name, jurisdiction)] = (
            self._clock(),
            [plan.model_copy() for plan in plans],
        )

    def invalidate(self, store_name: str, jurisdiction: str) -> None:
        self._entries.pop((store_name, jurisdiction), None)

    def clear(self) -> None:
        self._entries.clear()


class PlanCatalog:
    """Plan lookups for a single store."""

    def __init__(
        self,
        store: IPlanStore,
        cache: Optional[PlanCache] = None,
        free_plan_name: str = "Fremium",
    ):
        self._store = store
        self._cache = cache or PlanCache(ttl_seconds=0)
        self._free_plan_name = free_plan_name

    @property
    def _store_name(self) -> str:
        return getattr(self._store, "name", "store")

    async def list_plans(self, jurisdiction: str) -> List[Plan]:
        """All active plans of a jurisdiction, cheapest first."""
        cached = self._cache.get(self._store_name, jurisdiction)
        if cached is not None:
            return cached
        plans = await self._store.list_plans(jurisdiction)
        self._cache.put(self._store_name, jurisdiction, plans)
        return plans

    async def get_plan_by_name(self, name: str, jurisdiction: str) -> Optional[Plan]:
        for plan in await self.list_plans(jurisdiction):
            if plan.name == name:
                return plan
        return None

    async def require_plan(self, name: str, jurisdiction: str) -> Plan:
        plan = await self.get_plan_by_name(name, jurisdiction)
        if plan is None:
            raise NotFoundError(
                f"Plan {name!r} not found in {jurisdiction}",
                entity="plan",
                key=name,
            )
        return plan

    async def get_plan(self, plan_id: str) -> Optional[Plan]:
        return await self._store.get_plan(plan_id)

    async def list_upgrade_plans(self, jurisdiction: str) -> List[Plan]:
        """Purchasable plans; the free tier and zero-price plans are excluded."""
        return [
            plan for plan in await self.list_plans(jurisdiction)
            if plan.name != self._free_plan_name and plan.monthly_price > 0
        ]

    async def get_free_plan(self, jurisdiction: str) -> Plan:
        plan = await self.get_plan_by_name(self._free_plan_name, jurisdiction)
        if plan is None:
            logger.error(f"Free plan {self._free_plan_name!r} missing in {jurisdiction}")
            raise NotFoundError(
                f"Free plan {self._free_plan_name!r} not found in {jurisdiction}",
                entity="plan",
                key=self._free_plan_name,
            )
        return plan

    def invalidate(self, jurisdiction: str) -> None:
        self._cache.invalidate(self._store_name, jurisdiction)
