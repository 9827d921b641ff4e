"""
Alembic Environment Configuration for the Billing Core

The same revisions are applied to both storage backends:
- the relational store (DATABASE_URL, default target)
- the Supabase project, via `alembic -x url=postgresql://... upgrade head`

Autogenerate only manages billing tables; everything else in the target
database (Supabase auth/storage schemas, other services) is left alone.
"""

import asyncio
import os
import sys
from logging.config import fileConfig

from sqlalchemy import pool
from sqlalchemy.ext.asyncio import create_async_engine
from alembic import context

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from billing_core.config.settings import settings
from billing_core.infrastructure.db.database import normalize_database_url
from sqlmodel import SQLModel

# Register every billing table on SQLModel.metadata
from billing_core.infrastructure.db import models  # noqa: F401

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = SQLModel.metadata

BILLING_TABLES = frozenset(target_metadata.tables)


def include_object(object, name, type_, reflected, compare_to):
    """Restrict autogenerate to billing tables in the public schema."""
    if type_ == "table":
        if getattr(object, "schema", None) not in (None, "public"):
            return False
        return name in BILLING_TABLES
    return True


def get_url() -> str:
    """Target URL: `-x url=...` wins over DATABASE_URL."""
    url = context.get_x_argument(as_dictionary=True).get("url") or settings.database_url
    if not url:
        raise ValueError("Set DATABASE_URL or pass -x url=... to run billing migrations")
    return normalize_database_url(url)


def run_migrations_offline() -> None:
    """Emit the billing schema as SQL without connecting."""
    context.configure(
        url=get_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        include_object=include_object,
        compare_type=True,
    )

    with context.begin_transaction():
        context.run_migrations()


def do_run_migrations(connection):
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        include_object=include_object,
        compare_type=True,
        compare_server_default=True,
    )

    with context.begin_transaction():
        context.run_migrations()


async def run_migrations_online() -> None:
    """Apply revisions through an async engine (asyncpg)."""
    connectable = create_async_engine(get_url(), poolclass=pool.NullPool)

    async with connectable.connect() as connection:
        await connection.run_sync(do_run_migrations)

    await connectable.dispose()


if context.is_offline_mode():
    run_migrations_offline()
else:
    asyncio.run(run_migrations_online())
