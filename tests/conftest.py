"""Pytest configuration and fixtures for idemco tests.

This module provides common fixtures and configuration for all tests.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from pathlib import Path

import pytest

from idemco.idempotency.config import IdempotencyConfig
from idemco.idempotency.coordinator import IdempotencyCoordinator
from idemco.idempotency.store import IDEMCO_IDEMPOTENCY_DB_PATH_ENV, SqliteIdempotencyStore
from tests.fixtures.clock import FakeClock

# Postgres integration tests read these explicitly; everything else starts clean.
_PRESERVED_ENV = frozenset(
    {"IDEMCO_DATABASE_URL", "IDEMCO_DATABASE_ADMIN_URL", "IDEMCO_REQUIRE_POSTGRES"}
)


@pytest.fixture(autouse=True)
def isolate_idemco_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Clear IDEMCO_* settings and point the default SQLite store at tmp_path.

    Tests that need a setting override it with monkeypatch after this runs.
    """
    for name in list(os.environ):
        if name.startswith("IDEMCO_") and name not in _PRESERVED_ENV:
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv(IDEMCO_IDEMPOTENCY_DB_PATH_ENV, str(tmp_path / "default.sqlite3"))


@pytest.fixture
def clock() -> FakeClock:
    """Clock frozen at a fixed UTC instant."""
    return FakeClock()


@pytest.fixture
def idempotency_config() -> IdempotencyConfig:
    """Default policy with a short TTL and no mandatory operations."""
    return IdempotencyConfig(default_ttl_seconds=3600, required_operations=frozenset())


@pytest.fixture
def sqlite_store(tmp_path: Path) -> Generator[SqliteIdempotencyStore, None, None]:
    """File-backed SQLite store in a temporary directory."""
    store = SqliteIdempotencyStore(db_path=str(tmp_path / "idem.sqlite3"))
    yield store
    store.close()


@pytest.fixture
def coordinator(
    sqlite_store: SqliteIdempotencyStore,
    idempotency_config: IdempotencyConfig,
    clock: FakeClock,
) -> IdempotencyCoordinator:
    """Coordinator over the temporary store with a controllable clock."""
    return IdempotencyCoordinator(store=sqlite_store, config=idempotency_config, clock=clock)
