"""Alembic environment configuration.

Supports two modes:
* **CLI** – ``alembic upgrade head`` connects with *sqlalchemy.url* when
  an ini file provides one, else with the URL librecov itself would use
  (``LIBRECOV_CONF`` / ``DATABASE_URL`` / ``LIBRECOV_DATA``).
* **Programmatic** – ``db.init_db()`` passes a live connection via
  ``config.attributes["connection"]`` so that migrations run inside the
  application's existing async transaction.
"""

from __future__ import annotations

import asyncio
from logging.config import fileConfig

from sqlalchemy import pool
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import async_engine_from_config

from alembic import context
from librecov.config import ConfigManager
from librecov.models import Base

config = context.config

if config.config_file_name is not None:
    fileConfig(config.config_file_name)

target_metadata = Base.metadata


def _database_url() -> str:
    return config.get_main_option("sqlalchemy.url") or ConfigManager.load().database_url()


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode (emit SQL without a live connection)."""
    context.configure(
        url=_database_url(),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
        render_as_batch=True,
    )
    with context.begin_transaction():
        context.run_migrations()


def _run_with(connection: Connection) -> None:
    context.configure(
        connection=connection,
        target_metadata=target_metadata,
        render_as_batch=connection.dialect.name == "sqlite",
    )
    with context.begin_transaction():
        context.run_migrations()


async def _run_async() -> None:
    section = config.get_section(config.config_ini_section, {})
    section["sqlalchemy.url"] = _database_url()
    connectable = async_engine_from_config(
        section, prefix="sqlalchemy.", poolclass=pool.NullPool
    )
    async with connectable.connect() as conn:
        await conn.run_sync(_run_with)
    await connectable.dispose()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode (against a real database)."""
    connection = config.attributes.get("connection", None)

    if connection is not None:
        # Programmatic call – reuse the connection handed to us by db.py.
        _run_with(connection)
    else:
        asyncio.run(_run_async())


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
