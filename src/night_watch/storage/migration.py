"""One-time import of legacy JSON state files into the state store."""

from __future__ import annotations

import hashlib
import json
import logging
import shutil
import time
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from sqlalchemy.exc import IntegrityError

from night_watch.config import ProjectConfig
from night_watch.errors import MigrationPartialFailureError
from night_watch.models import (
    ExecutionOutcome,
    HistoryRecord,
    MigrationResult,
    PersistedStatusEntry,
    ProjectEntry,
    ScannerBookmark,
)
from night_watch.storage.common import utc_now
from night_watch.storage.repositories import (
    add_bookmark_row,
    add_history_row,
    add_project_row,
    parse_bookmark_items,
    trim_history,
    upsert_status_row,
)
from night_watch.storage.sqlmodel_models import SchemaMetaRow
from night_watch.storage.store import StateStore

logger = logging.getLogger(__name__)

MIGRATION_MARKER_KEY = "json_migration_completed"
PROJECTS_FILE = "projects.json"
HISTORY_FILE = "history.json"
PRD_STATES_FILE = "prd-states.json"
ROADMAP_STATE_FILE = ".roadmap-state.json"


@dataclass(slots=True)
class _LegacySnapshot:
    projects: list[ProjectEntry] = field(default_factory=list)
    history: list[tuple[str, str, HistoryRecord]] = field(default_factory=list)
    statuses: list[tuple[str, str, PersistedStatusEntry]] = field(default_factory=list)
    bookmarks: list[tuple[str, ScannerBookmark, Path]] = field(default_factory=list)
    files: list[Path] = field(default_factory=list)


def migrate(
    store: StateStore,
    home: Path,
    *,
    dry_run: bool = False,
    max_history_records: int = 10,
) -> MigrationResult:
    """Import legacy JSON files from ``home`` exactly once.

    Legacy files are copied to ``<home>/backups/json-migration-<ms>`` before
    any write and are never modified. All tables and the completion marker
    are written in one transaction.
    """

    if store.get_meta(MIGRATION_MARKER_KEY) is not None:
        return MigrationResult(already_migrated=True, dry_run=dry_run)

    snapshot = _read_legacy(home)
    result = MigrationResult(
        projects_migrated=len(snapshot.projects),
        history_records_migrated=_retained_history_count(snapshot.history, max_history_records),
        persisted_status_migrated=len(snapshot.statuses),
        bookmarks_migrated=len(snapshot.bookmarks),
        dry_run=dry_run,
        planned_files=[str(path) for path in snapshot.files],
    )
    if dry_run:
        return result

    backup_dir = home / "backups" / f"json-migration-{int(time.time() * 1000)}"
    _backup(snapshot, backup_dir)
    result.backup_dir = str(backup_dir)

    try:
        with store.session() as session:
            session.add(SchemaMetaRow(key=MIGRATION_MARKER_KEY, value=utc_now().isoformat()))
            try:
                session.flush()
            except IntegrityError:
                session.rollback()
                logger.info("Legacy JSON import already completed by another process")
                return MigrationResult(
                    already_migrated=True,
                    backup_dir=str(backup_dir),
                )

            result.projects_migrated = sum(
                1 for entry in snapshot.projects if add_project_row(session, entry)
            )
            for project_path, item_name, record in snapshot.history:
                add_history_row(session, project_path, item_name, record)
            session.flush()
            for project_path, item_name in {(p, i) for p, i, _ in snapshot.history}:
                trim_history(session, project_path, item_name, max_history_records)
            for project_path, item_name, entry in snapshot.statuses:
                upsert_status_row(session, project_path, item_name, entry)
            for scope_key, bookmark, _ in snapshot.bookmarks:
                add_bookmark_row(session, scope_key, bookmark)
            session.commit()
    except Exception as error:
        logger.exception("Legacy JSON import failed, backup kept at %s", backup_dir)
        raise MigrationPartialFailureError(
            f"Legacy JSON import failed and was rolled back; backup at {backup_dir}",
            backup_dir=str(backup_dir),
        ) from error

    logger.info(
        "Imported %s projects, %s history records, %s statuses, %s bookmarks",
        result.projects_migrated,
        result.history_records_migrated,
        result.persisted_status_migrated,
        result.bookmarks_migrated,
    )
    return result


def _read_legacy(home: Path) -> _LegacySnapshot:
    snapshot = _LegacySnapshot()

    projects_path = home / PROJECTS_FILE
    raw_projects = _read_json(projects_path, default=[])
    if projects_path.exists():
        snapshot.files.append(projects_path)
    if isinstance(raw_projects, list):
        for entry in raw_projects:
            if (
                isinstance(entry, dict)
                and isinstance(entry.get("name"), str)
                and isinstance(entry.get("path"), str)
                and entry["name"]
                and entry["path"]
            ):
                snapshot.projects.append(
                    ProjectEntry(name=entry["name"], path=entry["path"], channel_id=None),
                )

    history_path = home / HISTORY_FILE
    if history_path.exists():
        snapshot.files.append(history_path)
    for project_path, item_name, raw_record in _nested_items(_read_json(history_path, default={})):
        records = raw_record.get("records") if isinstance(raw_record, dict) else None
        if not isinstance(records, list):
            continue
        for raw in records:
            record = _parse_history_record(raw)
            if record is not None:
                snapshot.history.append((project_path, _item_key(item_name), record))

    states_path = home / PRD_STATES_FILE
    if states_path.exists():
        snapshot.files.append(states_path)
    for project_path, item_name, raw_state in _nested_items(_read_json(states_path, default={})):
        if (
            isinstance(raw_state, dict)
            and isinstance(raw_state.get("status"), str)
            and isinstance(raw_state.get("branch"), str)
            and _is_int(raw_state.get("timestamp"))
        ):
            snapshot.statuses.append(
                (
                    project_path,
                    _item_key(item_name),
                    PersistedStatusEntry(
                        status=raw_state["status"],
                        branch=raw_state["branch"],
                        timestamp=int(raw_state["timestamp"]),
                    ),
                ),
            )

    for entry in snapshot.projects:
        prd_dir = ProjectConfig.load(Path(entry.path)).prd_path
        state_path = prd_dir / ROADMAP_STATE_FILE
        if not state_path.exists():
            continue
        raw_state = _read_json(state_path, default=None)
        if not isinstance(raw_state, dict) or not _is_int(raw_state.get("version")):
            continue
        items = raw_state.get("items")
        if not isinstance(items, dict):
            continue
        last_scan = raw_state.get("lastScan")
        snapshot.bookmarks.append(
            (
                str(prd_dir),
                ScannerBookmark(
                    version=int(raw_state["version"]),
                    last_scan=last_scan if isinstance(last_scan, str) else "",
                    items=parse_bookmark_items(items, source=str(state_path)),
                ),
                state_path,
            ),
        )
        snapshot.files.append(state_path)
    return snapshot


def _backup(snapshot: _LegacySnapshot, backup_dir: Path) -> None:
    backup_dir.mkdir(parents=True, exist_ok=True)
    for path in snapshot.files:
        if path.name == ROADMAP_STATE_FILE:
            digest = hashlib.sha1(str(path.parent).encode("utf-8")).hexdigest()[:12]
            target = backup_dir / f"roadmap-state-{digest}.json"
        else:
            target = backup_dir / path.name
        shutil.copy2(path, target)
    logger.info("Backed up %s legacy files to %s", len(snapshot.files), backup_dir)


def _read_json(path: Path, *, default: Any) -> Any:
    if not path.exists():
        return default
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as error:
        logger.warning("Malformed legacy file %s, treating as empty: %s", path, error)
        return default


def _nested_items(payload: Any) -> list[tuple[str, str, Any]]:
    if not isinstance(payload, dict):
        return []
    items: list[tuple[str, str, Any]] = []
    for outer_key, inner in payload.items():
        if not isinstance(inner, dict):
            continue
        for inner_key, value in inner.items():
            items.append((str(outer_key), str(inner_key), value))
    return items


def _parse_history_record(raw: Any) -> HistoryRecord | None:
    if not isinstance(raw, dict):
        return None
    if not (
        _is_int(raw.get("timestamp"))
        and isinstance(raw.get("outcome"), str)
        and _is_int(raw.get("exitCode"))
        and _is_int(raw.get("attempt"))
    ):
        return None
    try:
        outcome = ExecutionOutcome(raw["outcome"])
    except ValueError:
        logger.warning("Skipping legacy history record with unknown outcome %r", raw["outcome"])
        return None
    return HistoryRecord(
        timestamp=int(raw["timestamp"]),
        outcome=outcome,
        exit_code=int(raw["exitCode"]),
        attempt=int(raw["attempt"]),
    )


def _item_key(name: str) -> str:
    return name[: -len(".md")] if name.endswith(".md") else name


def _is_int(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _retained_history_count(
    history: list[tuple[str, str, HistoryRecord]],
    max_history_records: int,
) -> int:
    per_item = Counter((project_path, item_name) for project_path, item_name, _ in history)
    return sum(min(count, max(0, max_history_records)) for count in per_item.values())
