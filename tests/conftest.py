"""Shared test fixtures."""

from __future__ import annotations

import json
import subprocess
import sys
from pathlib import Path

import pytest

from night_watch.config import PROJECT_CONFIG_FILE, Settings
from night_watch.project import ProjectContext
from night_watch.storage.store import StateStore

_ENV_VARS = (
    "NIGHT_WATCH_HOME",
    "NIGHT_WATCH_DB_PATH",
    "NIGHT_WATCH_SQLITE_BUSY_TIMEOUT_MS",
    "NIGHT_WATCH_LOCK_PREFIX",
    "NIGHT_WATCH_HISTORY_MAX_RECORDS",
    "NIGHT_WATCH_LOG_LEVEL",
    "NW_PRD_PRIORITY",
)


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch) -> Path:
    """Point home, DB, and lock prefix at the test's temp directory."""

    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    home = tmp_path / "home"
    monkeypatch.setenv("NIGHT_WATCH_HOME", str(home))
    monkeypatch.setenv("NIGHT_WATCH_LOCK_PREFIX", str(tmp_path / "locks" / "nw-"))
    return home


@pytest.fixture()
def settings(isolated_env: Path) -> Settings:
    return Settings.from_env()


@pytest.fixture()
def project_dir(tmp_path: Path) -> Path:
    root = tmp_path / "projects" / "demo"
    (root / "docs" / "PRDs" / "night-watch" / "done").mkdir(parents=True)
    (root / PROJECT_CONFIG_FILE).write_text(json.dumps({"maxRuntime": 600}), encoding="utf-8")
    return root


@pytest.fixture()
def project(project_dir: Path, settings: Settings) -> ProjectContext:
    return ProjectContext.load(project_dir, settings)


@pytest.fixture()
def store(settings: Settings):
    state_store = StateStore(settings.store.db_path)
    state_store.init_schema()
    yield state_store
    state_store.close()


@pytest.fixture()
def dead_pid() -> int:
    """PID of a process that has already exited and been reaped."""

    process = subprocess.Popen([sys.executable, "-c", "pass"])  # noqa: S603
    process.wait()
    return process.pid


def write_item(prd_dir: Path, name: str, body: str = "", *, done: bool = False) -> Path:
    directory = prd_dir / "done" if done else prd_dir
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{name}.md"
    path.write_text(f"# {name}\n\n{body}\n", encoding="utf-8")
    return path


@pytest.fixture(name="write_item")
def write_item_fixture():
    return write_item
