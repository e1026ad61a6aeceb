"""Runtime configuration for coordination, storage, and per-project settings."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

PROJECT_CONFIG_FILE = "night-watch.config.json"
DEFAULT_PRD_DIR = "docs/PRDs/night-watch"
DEFAULT_MAX_RUNTIME_SECONDS = 7_200
DEFAULT_BRANCH_PATTERNS: tuple[str, ...] = ("feat/", "night-watch/")


@dataclass(slots=True)
class StoreSettings:
    """SQLite state store settings."""

    db_path: Path = Path("~/.night-watch/state.db").expanduser()
    busy_timeout_ms: int = 5_000


@dataclass(slots=True)
class Settings:
    """Application settings shared by every process on the host."""

    home: Path = Path("~/.night-watch").expanduser()
    store: StoreSettings = field(default_factory=StoreSettings)
    lock_prefix: str = field(default_factory=lambda: _default_lock_prefix())
    history_max_records: int = 10
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with defaults rooted at ``~/.night-watch``."""

        home = Path(os.getenv("NIGHT_WATCH_HOME", "~/.night-watch")).expanduser()
        settings = cls(
            home=home,
            store=StoreSettings(
                db_path=db_path or _db_path_from_env(home),
                busy_timeout_ms=_env_int("NIGHT_WATCH_SQLITE_BUSY_TIMEOUT_MS", 5_000),
            ),
            lock_prefix=os.getenv("NIGHT_WATCH_LOCK_PREFIX", "").strip() or _default_lock_prefix(),
            history_max_records=_env_int("NIGHT_WATCH_HISTORY_MAX_RECORDS", 10),
            log_level=os.getenv("NIGHT_WATCH_LOG_LEVEL", "WARNING").strip().upper() or "WARNING",
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """Raise configuration error naming the offending variable."""

        if self.store.busy_timeout_ms <= 0:
            raise ValueError("NIGHT_WATCH_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.history_max_records <= 0:
            raise ValueError("NIGHT_WATCH_HISTORY_MAX_RECORDS must be > 0.")
        if logging.getLevelName(self.log_level) == f"Level {self.log_level}":
            raise ValueError(f"Invalid NIGHT_WATCH_LOG_LEVEL value: {self.log_level!r}")


@dataclass(slots=True)
class ProjectConfig:
    """Per-project settings loaded from ``night-watch.config.json``."""

    project_dir: Path
    prd_dir: str = DEFAULT_PRD_DIR
    max_runtime: int = DEFAULT_MAX_RUNTIME_SECONDS
    prd_priority: tuple[str, ...] = ()
    branch_patterns: tuple[str, ...] = DEFAULT_BRANCH_PATTERNS

    @property
    def prd_path(self) -> Path:
        return self.project_dir / self.prd_dir

    @property
    def project_name(self) -> str:
        return self.project_dir.name

    @classmethod
    def load(cls, project_dir: Path) -> ProjectConfig:
        """Read project config; missing or malformed files fall back to defaults."""

        config = cls(project_dir=project_dir)
        config_path = project_dir / PROJECT_CONFIG_FILE
        if not config_path.exists():
            return config
        try:
            payload = json.loads(config_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as error:
            logger.warning("Ignoring unreadable project config %s: %s", config_path, error)
            return config
        if not isinstance(payload, dict):
            logger.warning("Ignoring project config %s: expected a JSON object", config_path)
            return config

        prd_dir = payload.get("prdDir")
        if isinstance(prd_dir, str) and prd_dir.strip():
            config.prd_dir = prd_dir.strip()
        max_runtime = payload.get("maxRuntime")
        if isinstance(max_runtime, int) and not isinstance(max_runtime, bool) and max_runtime > 0:
            config.max_runtime = max_runtime
        config.prd_priority = _string_tuple(payload.get("prdPriority"), config.prd_priority)
        config.branch_patterns = _string_tuple(
            payload.get("branchPatterns"),
            config.branch_patterns,
        )

        env_priority = os.getenv("NW_PRD_PRIORITY", "").strip()
        if env_priority:
            config.prd_priority = tuple(
                part.strip() for part in env_priority.split(":") if part.strip()
            )
        return config


def _string_tuple(value: object, default: tuple[str, ...]) -> tuple[str, ...]:
    if not isinstance(value, list):
        return default
    return tuple(item.strip() for item in value if isinstance(item, str) and item.strip())


def _db_path_from_env(home: Path) -> Path:
    value = os.getenv("NIGHT_WATCH_DB_PATH", "").strip()
    return Path(value).expanduser() if value else home / "state.db"


def _default_lock_prefix() -> str:
    return os.path.join(tempfile.gettempdir(), "night-watch-")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error
