from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path

import allure
import pytest

from night_watch.config import (
    DEFAULT_MAX_RUNTIME_SECONDS,
    DEFAULT_PRD_DIR,
    PROJECT_CONFIG_FILE,
    ProjectConfig,
    Settings,
)

pytestmark = [
    allure.epic("Coordination"),
    allure.feature("Configuration"),
]


def test_settings_defaults_follow_home(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.delenv("NIGHT_WATCH_LOCK_PREFIX")
    monkeypatch.setenv("NIGHT_WATCH_HOME", str(tmp_path / "nw"))

    settings = Settings.from_env()

    assert settings.home == tmp_path / "nw"
    assert settings.store.db_path == tmp_path / "nw" / "state.db"
    assert settings.store.busy_timeout_ms == 5_000
    assert settings.history_max_records == 10
    assert settings.lock_prefix == os.path.join(tempfile.gettempdir(), "night-watch-")


def test_settings_explicit_db_path_wins(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("NIGHT_WATCH_DB_PATH", str(tmp_path / "env.db"))

    assert Settings.from_env().store.db_path == tmp_path / "env.db"
    assert Settings.from_env(db_path=tmp_path / "cli.db").store.db_path == tmp_path / "cli.db"


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("NIGHT_WATCH_SQLITE_BUSY_TIMEOUT_MS", "0", "NIGHT_WATCH_SQLITE_BUSY_TIMEOUT_MS"),
        ("NIGHT_WATCH_SQLITE_BUSY_TIMEOUT_MS", "soon", "NIGHT_WATCH_SQLITE_BUSY_TIMEOUT_MS"),
        ("NIGHT_WATCH_HISTORY_MAX_RECORDS", "-1", "NIGHT_WATCH_HISTORY_MAX_RECORDS"),
        ("NIGHT_WATCH_LOG_LEVEL", "chatty", "NIGHT_WATCH_LOG_LEVEL"),
    ],
)
def test_settings_validation_names_the_variable(monkeypatch, name, value, message) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=message):
        Settings.from_env()


def test_project_config_defaults_without_file(tmp_path: Path) -> None:
    config = ProjectConfig.load(tmp_path)

    assert config.prd_dir == DEFAULT_PRD_DIR
    assert config.max_runtime == DEFAULT_MAX_RUNTIME_SECONDS
    assert config.prd_path == tmp_path / DEFAULT_PRD_DIR
    assert config.project_name == tmp_path.name


def test_project_config_reads_known_keys(tmp_path: Path) -> None:
    (tmp_path / PROJECT_CONFIG_FILE).write_text(
        json.dumps(
            {
                "prdDir": "specs",
                "maxRuntime": 900,
                "prdPriority": ["b", "a"],
                "branchPatterns": ["nw/"],
            },
        ),
        encoding="utf-8",
    )

    config = ProjectConfig.load(tmp_path)

    assert config.prd_path == tmp_path / "specs"
    assert config.max_runtime == 900
    assert config.prd_priority == ("b", "a")
    assert config.branch_patterns == ("nw/",)


def test_malformed_project_config_falls_back_to_defaults(tmp_path: Path, caplog) -> None:
    (tmp_path / PROJECT_CONFIG_FILE).write_text("{not json", encoding="utf-8")

    config = ProjectConfig.load(tmp_path)

    assert config.prd_dir == DEFAULT_PRD_DIR
    assert "Ignoring unreadable project config" in caplog.text


def test_priority_env_overrides_config(tmp_path: Path, monkeypatch) -> None:
    (tmp_path / PROJECT_CONFIG_FILE).write_text(
        json.dumps({"prdPriority": ["x"]}),
        encoding="utf-8",
    )
    monkeypatch.setenv("NW_PRD_PRIORITY", "c: a ::b")

    assert ProjectConfig.load(tmp_path).prd_priority == ("c", "a", "b")
