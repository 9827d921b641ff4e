"""
Database Infrastructure Package for the Billing Core

Exports database utilities and the backend registry.
"""

from billing_core.infrastructure.db.database import (
    DatabaseManager,
    get_db_manager,
    get_session_context,
    init_db,
    close_db,
)
from billing_core.infrastructure.db.registry import BackendRegistry


__all__ = [
    # Database management
    "DatabaseManager",
    "get_db_manager",
    "get_session_context",
    "init_db",
    "close_db",
    # Backend selection
    "BackendRegistry",
]
