"""PostgreSQL database connectivity and connection helpers for idemco.

Provides engine creation and transactional connection management.

Environment Variables:
    IDEMCO_DATABASE_URL: Application/runtime role connection string
    IDEMCO_DATABASE_ADMIN_URL: Admin connection string (migrations/tests only)

When IDEMCO_DATABASE_URL is unset the service falls back to the SQLite
idempotency store; code that explicitly needs PostgreSQL fails closed with
DatabaseConfigError.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Generator
from contextlib import contextmanager
from typing import TYPE_CHECKING

from sqlalchemy import create_engine

from idemco.observability.tracing import instrument_sqlalchemy

if TYPE_CHECKING:
    from sqlalchemy import Connection, Engine

logger = logging.getLogger(__name__)

IDEMCO_DATABASE_URL_ENV = "IDEMCO_DATABASE_URL"
IDEMCO_DATABASE_ADMIN_URL_ENV = "IDEMCO_DATABASE_ADMIN_URL"

_app_engine: Engine | None = None
_admin_engine: Engine | None = None


class DatabaseConfigError(Exception):
    """Raised when database configuration is missing or invalid."""


def is_postgres_configured() -> bool:
    """Check if PostgreSQL is configured via environment.

    Returns:
        True if IDEMCO_DATABASE_URL is set, False otherwise.
    """
    return bool(os.environ.get(IDEMCO_DATABASE_URL_ENV))


def _normalize_scheme(url: str) -> str:
    """Rewrite the legacy postgres:// scheme, which SQLAlchemy rejects."""
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql://", 1)
    return url


def get_database_url(admin: bool = False) -> str:
    """Get the database URL from environment.

    Args:
        admin: If True, return admin URL; otherwise return app URL.

    Raises:
        DatabaseConfigError: If the required environment variable is not set.
    """
    env_var = IDEMCO_DATABASE_ADMIN_URL_ENV if admin else IDEMCO_DATABASE_URL_ENV
    url = os.environ.get(env_var)

    if not url:
        raise DatabaseConfigError(
            f"Database URL not configured. Set {env_var} environment variable."
        )

    return _normalize_scheme(url)


def get_app_engine() -> Engine:
    """Get or create the application database engine.

    Raises:
        DatabaseConfigError: If IDEMCO_DATABASE_URL is not set.
    """
    global _app_engine

    if _app_engine is None:
        _app_engine = create_engine(
            get_database_url(admin=False),
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,
            echo=False,
        )
        instrument_sqlalchemy(_app_engine)
        logger.info("Created application database engine")

    return _app_engine


def get_admin_engine() -> Engine:
    """Get or create the admin database engine.

    Raises:
        DatabaseConfigError: If IDEMCO_DATABASE_ADMIN_URL is not set.
    """
    global _admin_engine

    if _admin_engine is None:
        _admin_engine = create_engine(
            get_database_url(admin=True),
            pool_size=2,
            max_overflow=5,
            pool_pre_ping=True,
            echo=False,
        )
        logger.info("Created admin database engine")

    return _admin_engine


@contextmanager
def begin_app_conn() -> Generator[Connection, None, None]:
    """Context manager for application database connection with transaction.

    Commits on success, rolls back on error.

    Raises:
        DatabaseConfigError: If database is not configured.
        SQLAlchemyError: If database operation fails.
    """
    engine = get_app_engine()
    with engine.connect() as conn, conn.begin():
        yield conn


@contextmanager
def begin_admin_conn() -> Generator[Connection, None, None]:
    """Context manager for admin database connection with transaction.

    Raises:
        DatabaseConfigError: If database is not configured.
        SQLAlchemyError: If database operation fails.
    """
    engine = get_admin_engine()
    with engine.connect() as conn, conn.begin():
        yield conn


def reset_engines() -> None:
    """Reset global engine instances.

    Used for testing to ensure fresh engine creation.
    """
    global _app_engine, _admin_engine
    if _app_engine is not None:
        _app_engine.dispose()
        _app_engine = None
    if _admin_engine is not None:
        _admin_engine.dispose()
        _admin_engine = None
