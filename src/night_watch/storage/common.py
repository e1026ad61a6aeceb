"""Common helpers for the SQLite state store."""

from __future__ import annotations

import logging
import sqlite3
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import TypeVar

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DatabaseError
from sqlalchemy.pool import NullPool
from sqlmodel import create_engine

from night_watch.errors import StoreBusyTimeoutError, StoreCorruptError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_BUSY_MARKERS = ("database is locked", "database is busy", "database table is locked")
_CORRUPT_MARKERS = ("malformed", "not a database", "file is encrypted", "disk image")


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def epoch_now() -> int:
    """Current UNIX time in whole seconds."""

    return int(time.time())


def build_sqlite_engine(*, db_path: Path, busy_timeout_ms: int) -> Engine:
    """Build SQLAlchemy engine with consistent SQLite policy."""

    db_url = f"sqlite:///{db_path}"
    engine = create_engine(
        db_url,
        connect_args={
            "check_same_thread": False,
            "timeout": max(1.0, busy_timeout_ms / 1000.0),
        },
        poolclass=NullPool,
    )
    event.listen(
        engine,
        "connect",
        lambda dbapi_connection, _: _apply_sqlite_pragmas(
            dbapi_connection,
            busy_timeout_ms=busy_timeout_ms,
        ),
    )
    return engine


def _apply_sqlite_pragmas(dbapi_connection: sqlite3.Connection, *, busy_timeout_ms: int) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode = WAL")
    cursor.execute(f"PRAGMA busy_timeout = {max(1, busy_timeout_ms)}")
    cursor.execute("PRAGMA foreign_keys = ON")
    cursor.close()


def classify_database_error(error: BaseException) -> Exception | None:
    """Map a driver error to the store error taxonomy, or ``None`` when unrelated."""

    orig = getattr(error, "orig", None)
    message = str(orig if orig is not None else error).lower()
    if any(marker in message for marker in _BUSY_MARKERS):
        return StoreBusyTimeoutError(f"State store busy: {message}")
    if any(marker in message for marker in _CORRUPT_MARKERS):
        return StoreCorruptError(f"State store unreadable: {message}")
    return None


@contextmanager
def translated_errors() -> Iterator[None]:
    """Re-raise SQLite busy/corruption failures as store errors."""

    try:
        yield
    except (DatabaseError, sqlite3.DatabaseError) as error:
        translated = classify_database_error(error)
        if translated is None:
            raise
        raise translated from error


def with_busy_retry(
    operation: Callable[[], T],
    *,
    attempts: int = 3,
    base_delay_seconds: float = 0.1,
) -> T:
    """Run ``operation`` retrying busy timeouts with exponential backoff."""

    if attempts < 1:
        raise ValueError("attempts must be >= 1")
    delay = base_delay_seconds
    for attempt in range(1, attempts + 1):
        try:
            return operation()
        except StoreBusyTimeoutError:
            if attempt >= attempts:
                raise
            logger.info("State store busy, retry %s/%s in %.2fs", attempt, attempts, delay)
            time.sleep(delay)
            delay *= 2
    raise AssertionError("unreachable")
