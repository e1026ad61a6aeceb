"""Repositories over the state store tables."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from sqlalchemy import delete as sa_delete
from sqlmodel import Session, col, select

from night_watch.config import PROJECT_CONFIG_FILE
from night_watch.models import (
    BookmarkItem,
    ExecutionOutcome,
    HistoryRecord,
    PersistedStatusEntry,
    ProjectEntry,
    ScannerBookmark,
)
from night_watch.runtime.keys import canonical_project_path
from night_watch.storage.common import utc_now
from night_watch.storage.sqlmodel_models import (
    ExecutionHistoryRow,
    PersistedStatusRow,
    ProjectRow,
    ScannerBookmarkRow,
)
from night_watch.storage.store import StateStore

logger = logging.getLogger(__name__)


class ProjectRegistryRepository:
    """Registered projects, unique by canonical (symlink-resolved) path."""

    def __init__(self, store: StateStore) -> None:
        self.store = store

    def register(self, project_dir: Path, *, name: str | None = None) -> ProjectEntry:
        """Register a project; no-op returning the existing entry if the path is known."""

        resolved = canonical_project_path(project_dir)
        with self.store.session() as session:
            existing = session.exec(select(ProjectRow).where(ProjectRow.path == resolved)).first()
            if existing is not None:
                return _to_project_entry(existing)

            base_name = name or Path(resolved).name
            taken = session.exec(select(ProjectRow).where(ProjectRow.name == base_name)).first()
            final_name = f"{base_name}-{Path(resolved).name}" if taken is not None else base_name
            row = ProjectRow(name=final_name, path=resolved, created_at=utc_now())
            session.add(row)
            session.commit()
            session.refresh(row)
            logger.info("Registered project %s at %s", final_name, resolved)
            return _to_project_entry(row)

    def unregister(self, project_dir: Path) -> bool:
        resolved = canonical_project_path(project_dir)
        with self.store.session() as session:
            result = session.exec(  # type: ignore[call-overload]
                sa_delete(ProjectRow).where(col(ProjectRow.path) == resolved),
            )
            session.commit()
            return bool(result.rowcount)

    def list_projects(self) -> list[ProjectEntry]:
        with self.store.session() as session:
            rows = session.exec(select(ProjectRow).order_by(col(ProjectRow.name).asc())).all()
            return [_to_project_entry(row) for row in rows]

    def validate(self) -> tuple[list[ProjectEntry], list[ProjectEntry]]:
        """Split entries into valid (directory and config file exist) and invalid."""

        valid: list[ProjectEntry] = []
        invalid: list[ProjectEntry] = []
        for entry in self.list_projects():
            project_path = Path(entry.path)
            if project_path.is_dir() and (project_path / PROJECT_CONFIG_FILE).exists():
                valid.append(entry)
            else:
                invalid.append(entry)
        return valid, invalid


class PersistedStatusRepository:
    """Externally written per-item statuses such as ``pending-review``."""

    def __init__(self, store: StateStore) -> None:
        self.store = store

    def set(self, project_path: str, item_name: str, entry: PersistedStatusEntry) -> None:
        with self.store.session() as session:
            upsert_status_row(session, project_path, item_name, entry)
            session.commit()

    def clear(self, project_path: str, item_name: str) -> bool:
        with self.store.session() as session:
            result = session.exec(  # type: ignore[call-overload]
                sa_delete(PersistedStatusRow).where(
                    col(PersistedStatusRow.project_path) == project_path,
                    col(PersistedStatusRow.item_name) == item_name,
                ),
            )
            session.commit()
            return bool(result.rowcount)

    def for_project(self, project_path: str) -> dict[str, PersistedStatusEntry]:
        with self.store.session() as session:
            rows = session.exec(
                select(PersistedStatusRow).where(PersistedStatusRow.project_path == project_path),
            ).all()
            return {row.item_name: _to_status_entry(row) for row in rows}

    def names_with_status(self, project_path: str, status: str) -> list[str]:
        with self.store.session() as session:
            rows = session.exec(
                select(PersistedStatusRow)
                .where(
                    PersistedStatusRow.project_path == project_path,
                    PersistedStatusRow.status == status,
                )
                .order_by(col(PersistedStatusRow.item_name).asc()),
            ).all()
            return [row.item_name for row in rows]


class ExecutionHistoryRepository:
    """Storage backend of the history ledger."""

    def __init__(self, store: StateStore) -> None:
        self.store = store

    def append_and_trim(
        self,
        project_path: str,
        item_name: str,
        record: HistoryRecord,
        *,
        max_records: int,
    ) -> None:
        """Insert one record and trim the key in the same write transaction."""

        with self.store.session() as session:
            session.add(_to_history_row(project_path, item_name, record))
            session.flush()
            trim_history(session, project_path, item_name, max_records)
            session.commit()

    def records(self, project_path: str, item_name: str) -> list[HistoryRecord]:
        with self.store.session() as session:
            rows = session.exec(
                select(ExecutionHistoryRow)
                .where(
                    ExecutionHistoryRow.project_path == project_path,
                    ExecutionHistoryRow.prd_file == item_name,
                )
                .order_by(
                    col(ExecutionHistoryRow.timestamp).desc(),
                    col(ExecutionHistoryRow.id).desc(),
                ),
            ).all()
            return [_to_history_record(row) for row in rows]

    def trim(self, project_path: str, item_name: str, max_records: int) -> int:
        with self.store.session() as session:
            removed = trim_history(session, project_path, item_name, max_records)
            session.commit()
            return removed

    def all_history(self) -> dict[str, dict[str, list[HistoryRecord]]]:
        """Whole ledger grouped by project and item, newest first."""

        grouped: dict[str, dict[str, list[HistoryRecord]]] = {}
        with self.store.session() as session:
            rows = session.exec(
                select(ExecutionHistoryRow).order_by(
                    col(ExecutionHistoryRow.project_path).asc(),
                    col(ExecutionHistoryRow.prd_file).asc(),
                    col(ExecutionHistoryRow.timestamp).desc(),
                    col(ExecutionHistoryRow.id).desc(),
                ),
            ).all()
            for row in rows:
                grouped.setdefault(row.project_path, {}).setdefault(row.prd_file, []).append(
                    _to_history_record(row),
                )
        return grouped


class ScannerBookmarkRepository:
    """Roadmap scanner progress keyed by PRD directory."""

    def __init__(self, store: StateStore) -> None:
        self.store = store

    def load(self, scope_key: str) -> ScannerBookmark:
        """Load a bookmark; malformed stored JSON degrades to an empty bookmark."""

        with self.store.session() as session:
            row = session.get(ScannerBookmarkRow, scope_key)
            if row is None:
                return ScannerBookmark()
            return ScannerBookmark(
                version=row.version,
                last_scan=row.last_scan,
                items=parse_bookmark_items(row.items_json, source=f"bookmark {scope_key}"),
            )

    def save(self, scope_key: str, bookmark: ScannerBookmark) -> None:
        with self.store.session() as session:
            add_bookmark_row(session, scope_key, bookmark)
            session.commit()


def parse_bookmark_items(raw: str | dict[str, object], *, source: str) -> dict[str, BookmarkItem]:
    """Parse bookmark items, logging and skipping anything malformed."""

    if isinstance(raw, str):
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as error:
            logger.warning("Malformed bookmark items in %s, treating as empty: %s", source, error)
            return {}
    else:
        payload = raw
    if not isinstance(payload, dict):
        logger.warning("Malformed bookmark items in %s, treating as empty", source)
        return {}

    items: dict[str, BookmarkItem] = {}
    for item_hash, value in payload.items():
        if not isinstance(value, dict):
            continue
        items[str(item_hash)] = BookmarkItem(
            title=str(value.get("title", "")),
            prd_file=str(value.get("prdFile", value.get("prd_file", ""))),
            created_at=str(value.get("createdAt", value.get("created_at", ""))),
        )
    return items


def add_bookmark_row(session: Session, scope_key: str, bookmark: ScannerBookmark) -> None:
    items_json = json.dumps(
        {
            item_hash: {
                "title": item.title,
                "prdFile": item.prd_file,
                "createdAt": item.created_at,
            }
            for item_hash, item in bookmark.items.items()
        },
        sort_keys=True,
    )
    row = session.get(ScannerBookmarkRow, scope_key)
    if row is None:
        row = ScannerBookmarkRow(scope_key=scope_key)
    row.version = bookmark.version
    row.last_scan = bookmark.last_scan
    row.items_json = items_json
    session.add(row)


def add_project_row(session: Session, entry: ProjectEntry) -> bool:
    """Insert a registry row unless the path is already present."""

    existing = session.exec(select(ProjectRow).where(ProjectRow.path == entry.path)).first()
    if existing is not None:
        return False
    session.add(
        ProjectRow(
            name=entry.name,
            path=entry.path,
            channel_id=entry.channel_id,
            created_at=utc_now(),
        ),
    )
    return True


def upsert_status_row(
    session: Session,
    project_path: str,
    item_name: str,
    entry: PersistedStatusEntry,
) -> None:
    row = session.get(PersistedStatusRow, (project_path, item_name))
    if row is None:
        row = PersistedStatusRow(
            project_path=project_path,
            item_name=item_name,
            status=entry.status,
            timestamp=entry.timestamp,
        )
    row.status = entry.status
    row.branch = entry.branch
    row.timestamp = entry.timestamp
    session.add(row)


def add_history_row(
    session: Session,
    project_path: str,
    item_name: str,
    record: HistoryRecord,
) -> None:
    session.add(_to_history_row(project_path, item_name, record))


def trim_history(
    session: Session,
    project_path: str,
    item_name: str,
    max_records: int,
) -> int:
    """Delete the oldest records of one key beyond ``max_records``."""

    keep_ids = session.exec(
        select(ExecutionHistoryRow.id)
        .where(
            ExecutionHistoryRow.project_path == project_path,
            ExecutionHistoryRow.prd_file == item_name,
        )
        .order_by(
            col(ExecutionHistoryRow.timestamp).desc(),
            col(ExecutionHistoryRow.id).desc(),
        )
        .limit(max(0, max_records)),
    ).all()
    result = session.exec(  # type: ignore[call-overload]
        sa_delete(ExecutionHistoryRow).where(
            col(ExecutionHistoryRow.project_path) == project_path,
            col(ExecutionHistoryRow.prd_file) == item_name,
            col(ExecutionHistoryRow.id).not_in(list(keep_ids)),
        ),
    )
    return int(result.rowcount or 0)


def _to_history_row(
    project_path: str,
    item_name: str,
    record: HistoryRecord,
) -> ExecutionHistoryRow:
    return ExecutionHistoryRow(
        project_path=project_path,
        prd_file=item_name,
        timestamp=record.timestamp,
        outcome=record.outcome.value,
        exit_code=record.exit_code,
        attempt=record.attempt,
    )


def _to_history_record(row: ExecutionHistoryRow) -> HistoryRecord:
    return HistoryRecord(
        timestamp=row.timestamp,
        outcome=ExecutionOutcome(row.outcome),
        exit_code=row.exit_code,
        attempt=row.attempt,
    )


def _to_status_entry(row: PersistedStatusRow) -> PersistedStatusEntry:
    return PersistedStatusEntry(status=row.status, branch=row.branch, timestamp=row.timestamp)


def _to_project_entry(row: ProjectRow) -> ProjectEntry:
    return ProjectEntry(name=row.name, path=row.path, channel_id=row.channel_id)
