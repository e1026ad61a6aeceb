from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from night_watch.errors import MigrationPartialFailureError
from night_watch.history import HistoryLedger
from night_watch.storage import migration
from night_watch.storage.migration import MIGRATION_MARKER_KEY, migrate
from night_watch.storage.repositories import (
    PersistedStatusRepository,
    ProjectRegistryRepository,
    ScannerBookmarkRepository,
)

pytestmark = [
    allure.epic("State Store"),
    allure.feature("Legacy JSON Migration"),
]


def _write_json(path: Path, payload: object) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload), encoding="utf-8")


def _seed_legacy(home: Path, project_dir: Path) -> None:
    project = str(project_dir)
    _write_json(
        home / "projects.json",
        [
            {"name": "demo", "path": project},
            {"name": "broken"},
        ],
    )
    _write_json(
        home / "history.json",
        {
            project: {
                "feature.md": {
                    "records": [
                        {"timestamp": ts, "outcome": "failure", "exitCode": 1, "attempt": 1}
                        for ts in range(100, 112)
                    ]
                    + [{"timestamp": 1, "outcome": "exploded", "exitCode": 1, "attempt": 1}],
                },
                "other": {"records": "not-a-list"},
            },
        },
    )
    _write_json(
        home / "prd-states.json",
        {project: {"feature": {"status": "pending-review", "branch": "feat/x", "timestamp": 5}}},
    )
    _write_json(
        project_dir / "docs" / "PRDs" / "night-watch" / ".roadmap-state.json",
        {
            "version": 1,
            "lastScan": "2026-01-01T00:00:00Z",
            "items": {"abc": {"title": "Item", "prdFile": "item.md", "createdAt": "t"}},
        },
    )


def test_dry_run_reports_counts_and_writes_nothing(store, isolated_env, project_dir) -> None:
    _seed_legacy(isolated_env, project_dir)

    result = migrate(store, isolated_env, dry_run=True)

    assert result.dry_run
    assert result.projects_migrated == 1
    assert result.history_records_migrated == 10
    wider = migrate(store, isolated_env, dry_run=True, max_history_records=20)
    assert wider.history_records_migrated == 12
    assert result.persisted_status_migrated == 1
    assert result.bookmarks_migrated == 1
    assert len(result.planned_files) == 4
    assert store.get_meta(MIGRATION_MARKER_KEY) is None
    assert not (isolated_env / "backups").exists()
    assert ProjectRegistryRepository(store).list_projects() == []


def test_migration_imports_everything_once(store, isolated_env, project_dir) -> None:
    _seed_legacy(isolated_env, project_dir)
    originals = {path: path.read_bytes() for path in isolated_env.glob("*.json")}

    result = migrate(store, isolated_env, max_history_records=10)

    assert not result.already_migrated
    assert result.projects_migrated == 1
    assert result.history_records_migrated == 10
    backup = Path(result.backup_dir)
    names = {path.name for path in backup.iterdir()}
    assert len(names) == 4
    assert {"projects.json", "history.json", "prd-states.json"} <= names
    assert any(name.startswith("roadmap-state-") for name in names)
    assert {path: path.read_bytes() for path in isolated_env.glob("*.json")} == originals

    project = str(project_dir)
    records = HistoryLedger(store).records(project, "feature")
    assert len(records) == 10
    assert records[0].timestamp == 111
    status = PersistedStatusRepository(store).for_project(project)["feature"]
    assert (status.status, status.branch, status.timestamp) == ("pending-review", "feat/x", 5)
    bookmark = ScannerBookmarkRepository(store).load(str(project_dir / "docs/PRDs/night-watch"))
    assert bookmark.items["abc"].prd_file == "item.md"
    assert [entry.name for entry in ProjectRegistryRepository(store).list_projects()] == ["demo"]

    again = migrate(store, isolated_env)

    assert again.already_migrated
    assert len(HistoryLedger(store).records(project, "feature")) == 10


def test_malformed_legacy_files_are_treated_as_empty(store, isolated_env, caplog) -> None:
    isolated_env.mkdir(parents=True, exist_ok=True)
    (isolated_env / "history.json").write_text("{broken", encoding="utf-8")
    (isolated_env / "projects.json").write_text('{"not": "a list"}', encoding="utf-8")

    result = migrate(store, isolated_env)

    assert result.history_records_migrated == 0
    assert result.projects_migrated == 0
    assert "Malformed legacy file" in caplog.text
    assert store.get_meta(MIGRATION_MARKER_KEY) is not None


def test_missing_legacy_files_still_mark_migration_done(store, isolated_env) -> None:
    result = migrate(store, isolated_env)

    assert result.planned_files == []
    assert migrate(store, isolated_env).already_migrated


def test_failed_import_rolls_back_and_keeps_backup(
    store,
    isolated_env,
    project_dir,
    monkeypatch,
) -> None:
    _seed_legacy(isolated_env, project_dir)

    def _explode(*_args, **_kwargs) -> None:
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(migration, "upsert_status_row", _explode)

    with pytest.raises(MigrationPartialFailureError) as excinfo:
        migrate(store, isolated_env)

    assert Path(excinfo.value.backup_dir).is_dir()
    assert store.get_meta(MIGRATION_MARKER_KEY) is None
    assert ProjectRegistryRepository(store).list_projects() == []
    assert HistoryLedger(store).records(str(project_dir), "feature") == []
