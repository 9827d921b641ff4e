"""
Backend Registry

Maps each ``BackendKind`` to the concrete ``BillingStore`` serving it.
A jurisdiction's backend is looked up once per request; the rest of the
core works against the ``BillingStore`` interface only.
"""

import logging
from typing import Dict, List, Optional

from billing_core.domain.jurisdiction import BackendKind
from billing_core.infrastructure.db.database import get_db_manager
from billing_core.infrastructure.db.repositories.base_repository import BillingStore
from billing_core.infrastructure.exceptions import ConfigurationError


logger = logging.getLogger(__name__)


class BackendRegistry:
    """Backend-selection strategy for the billing core."""

    def __init__(self, stores: Optional[Dict[BackendKind, BillingStore]] = None):
        self._stores: Dict[BackendKind, BillingStore] = dict(stores or {})

    @classmethod
    def from_settings(cls, settings) -> "BackendRegistry":
        """Wire every backend whose credentials are configured."""
        from billing_core.infrastructure.db.repositories.sql_store import SqlBillingStore
        from billing_core.infrastructure.db.repositories.supabase_store import SupabaseBillingStore

        stores: Dict[BackendKind, BillingStore] = {}
        if settings.supabase_url and settings.supabase_service_role_key:
            stores[BackendKind.SUPABASE] = SupabaseBillingStore()
        else:
            logger.warning("Supabase credentials not set; managed cloud store disabled")

        if settings.database_url:
            stores[BackendKind.RELATIONAL] = SqlBillingStore(get_db_manager())
        else:
            logger.warning("DATABASE_URL not set; relational store disabled")

        return cls(stores)

    def for_backend(self, kind: BackendKind) -> BillingStore:
        store = self._stores.get(kind)
        if store is None:
            raise ConfigurationError(
                f"No store configured for backend {kind.value}",
                missing_keys=[kind.value],
            )
        return store

    def configured(self) -> List[BackendKind]:
        return list(self._stores)

    async def close(self) -> None:
        for kind, store in self._stores.items():
            try:
                await store.close()
            except Exception as e:
                logger.warning(f"Error closing {kind.value} store: {e}")
