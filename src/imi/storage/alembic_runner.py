"""Run the queue store's Alembic migrations from code."""

from __future__ import annotations

from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from sqlalchemy.engine import Engine

_PROJECT_ROOT = Path(__file__).resolve().parents[3]


def upgrade_head(db_path: Path) -> None:
    """Bring the SQLite store at ``db_path`` to the latest revision."""

    command.upgrade(_config_for(db_path), "head")


def current_revision(engine: Engine) -> str | None:
    """Revision the store is stamped with, ``None`` before the first upgrade."""

    with engine.connect() as connection:
        return MigrationContext.configure(connection).get_current_revision()


def _config_for(db_path: Path) -> Config:
    config = Config(str(_PROJECT_ROOT / "alembic.ini"))
    config.set_main_option("script_location", str(_PROJECT_ROOT / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config
