"""Explicit handle to the SQLite state store."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from sqlmodel import Session

from night_watch.errors import StoreCorruptError
from night_watch.storage.alembic_runner import upgrade_head
from night_watch.storage.common import build_sqlite_engine, translated_errors
from night_watch.storage.sqlmodel_models import SchemaMetaRow

logger = logging.getLogger(__name__)


class StateStore:
    """Persistence facade backed by SQLModel + SQLite.

    Opened once per process and passed to every repository; there is no
    module-level singleton.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.busy_timeout_ms = busy_timeout_ms
        if db_path.exists() and db_path.is_dir():
            raise StoreCorruptError(f"State store path is a directory: {db_path}")
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)
        self._closed = False

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        with translated_errors():
            upgrade_head(self.db_path, engine=self.engine)
        logger.debug("State store ready at %s", self.db_path)

    def close(self) -> None:
        """Close underlying DB resources."""

        if self._closed:
            return
        self.engine.dispose()
        self._closed = True

    def __enter__(self) -> StateStore:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Open a session whose busy/corruption failures surface as store errors."""

        with translated_errors(), Session(self.engine) as session:
            yield session

    def get_meta(self, key: str) -> str | None:
        with self.session() as session:
            row = session.get(SchemaMetaRow, key)
            return row.value if row is not None else None

    def set_meta(self, key: str, value: str) -> None:
        with self.session() as session:
            row = session.get(SchemaMetaRow, key)
            if row is None:
                session.add(SchemaMetaRow(key=key, value=value))
            else:
                row.value = value
                session.add(row)
            session.commit()
