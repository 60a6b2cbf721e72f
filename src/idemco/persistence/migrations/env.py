"""Alembic environment configuration for idemco migrations.

Provides programmatic migration execution without requiring alembic CLI.
Uses the connection passed via ``config.attributes["connection"]`` when present,
otherwise the admin engine (IDEMCO_DATABASE_ADMIN_URL).
"""

from __future__ import annotations

import logging

from alembic import context

from idemco.persistence.db import get_admin_engine, get_database_url

logger = logging.getLogger(__name__)

target_metadata = None


def run_migrations_offline() -> None:
    """Run migrations in 'offline' mode, emitting SQL to stdout."""
    context.configure(
        url=get_database_url(admin=True),
        target_metadata=target_metadata,
        literal_binds=True,
        dialect_opts={"paramstyle": "named"},
    )

    with context.begin_transaction():
        context.run_migrations()


def run_migrations_online() -> None:
    """Run migrations in 'online' mode on a supplied or fresh admin connection."""
    connection = context.config.attributes.get("connection")
    if connection is not None:
        context.configure(connection=connection, target_metadata=target_metadata)
        with context.begin_transaction():
            context.run_migrations()
        return

    with get_admin_engine().connect() as connection:
        context.configure(connection=connection, target_metadata=target_metadata)
        with context.begin_transaction():
            context.run_migrations()


if context.is_offline_mode():
    run_migrations_offline()
else:
    run_migrations_online()
