"""Programmatic Alembic upgrades for the task store."""

from __future__ import annotations

import logging
from pathlib import Path

from alembic import command
from alembic.config import Config

logger = logging.getLogger(__name__)

_PROJECT_ROOT = Path(__file__).resolve().parents[3]


def build_alembic_config(db_path: Path) -> Config:
    """Alembic config pointing at the bundled migrations and ``db_path``."""

    config = Config(str(_PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(_PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def upgrade_head(db_path: Path) -> None:
    """Bring the SQLite database at ``db_path`` to the latest schema revision."""

    logger.debug("Upgrading task store schema db_path=%s", db_path)
    command.upgrade(build_alembic_config(db_path), "head")
