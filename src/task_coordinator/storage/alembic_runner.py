"""Run the task queue Alembic migrations programmatically."""

from __future__ import annotations

import logging
import threading
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from sqlalchemy import Engine

logger = logging.getLogger(__name__)

# Shipped inside the package so installed wheels can migrate too.
_SCRIPT_DIR = Path(__file__).resolve().parent / "migrations"

# Alembic's command API keeps module-level state; one upgrade at a time.
_UPGRADE_LOCK = threading.Lock()


def alembic_config(db_path: Path) -> Config:
    """Alembic config bound to one SQLite file."""

    config = Config()
    config.set_main_option("script_location", str(_SCRIPT_DIR))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def upgrade_head(db_path: Path) -> None:
    """Bring the queue schema of ``db_path`` up to the latest revision."""

    with _UPGRADE_LOCK:
        logger.debug("Upgrading task queue schema at %s", db_path)
        command.upgrade(alembic_config(db_path), "head")


def current_revision(engine: Engine) -> str | None:
    """Applied schema revision, or None for an unmigrated database."""

    with engine.connect() as connection:
        return MigrationContext.configure(connection).get_current_revision()
