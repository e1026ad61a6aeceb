"""Utilities to run Alembic migrations programmatically."""

from __future__ import annotations

import logging
import time
from pathlib import Path

from alembic import command
from alembic.config import Config
from alembic.runtime.migration import MigrationContext
from alembic.script import ScriptDirectory
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError

logger = logging.getLogger(__name__)

_CONCURRENT_INIT_ATTEMPTS = 5


def alembic_config(db_path: Path) -> Config:
    """Build Alembic config pointing at the repository migrations."""

    root_dir = Path(__file__).resolve().parents[3]
    config = Config(str(root_dir / "alembic.ini"))
    config.set_main_option("script_location", str(root_dir / "alembic"))
    config.set_main_option("sqlalchemy.url", f"sqlite:///{db_path}")
    return config


def upgrade_head(db_path: Path, *, engine: Engine | None = None) -> None:
    """Apply Alembic migrations up to head for the given SQLite database.

    Several processes may open a fresh database at once; the loser of the
    ``CREATE TABLE`` race sees an ``OperationalError`` and re-checks whether
    the winner already reached head.
    """

    config = alembic_config(db_path)
    head = ScriptDirectory.from_config(config).get_current_head()
    for attempt in range(1, _CONCURRENT_INIT_ATTEMPTS + 1):
        if engine is not None and _current_revision(engine) == head:
            return
        try:
            if engine is None:
                command.upgrade(config, "head")
            else:
                with engine.begin() as connection:
                    config.attributes["connection"] = connection
                    command.upgrade(config, "head")
            return
        except OperationalError:
            if attempt >= _CONCURRENT_INIT_ATTEMPTS:
                raise
            logger.info("Schema upgrade raced with another process, re-checking head")
            time.sleep(0.05 * attempt)


def _current_revision(engine: Engine) -> str | None:
    with engine.connect() as connection:
        return MigrationContext.configure(connection).get_current_revision()
