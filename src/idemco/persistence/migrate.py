"""Programmatic alembic upgrade/downgrade for idemco migrations."""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING

from alembic import command
from alembic.config import Config

from idemco.persistence.db import get_admin_engine

if TYPE_CHECKING:
    from sqlalchemy import Engine

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = os.path.join(os.path.dirname(__file__), "migrations")


def get_alembic_config() -> Config:
    """Create Alembic config pointing to the migrations directory."""
    config = Config()
    config.set_main_option("script_location", MIGRATIONS_DIR)
    return config


def run_upgrade(engine: Engine | None = None, revision: str = "head") -> None:
    """Run migrations up to the specified revision.

    Args:
        engine: SQLAlchemy engine to use. If None, uses admin engine.
        revision: Target revision (default: "head").
    """
    if engine is None:
        engine = get_admin_engine()

    config = get_alembic_config()
    with engine.begin() as conn:
        config.attributes["connection"] = conn
        command.upgrade(config, revision)

    logger.info("Migrations upgraded to %s", revision)


def run_downgrade(engine: Engine | None = None, revision: str = "base") -> None:
    """Run migrations down to the specified revision."""
    if engine is None:
        engine = get_admin_engine()

    config = get_alembic_config()
    with engine.begin() as conn:
        config.attributes["connection"] = conn
        command.downgrade(config, revision)

    logger.info("Migrations downgraded to %s", revision)
