"""Domain models for locks, claims, work items, and the execution ledger."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any


class Role(str, Enum):
    """Worker roles that hold a per-project lock."""

    EXECUTOR = "executor"
    REVIEWER = "reviewer"
    AUDITOR = "auditor"


class DerivedStatus(str, Enum):
    """Computed lifecycle state of a work item."""

    READY = "ready"
    BLOCKED = "blocked"
    IN_PROGRESS = "in-progress"
    PENDING_REVIEW = "pending-review"
    DONE = "done"


DISPLAY_ORDER: tuple[DerivedStatus, ...] = (
    DerivedStatus.READY,
    DerivedStatus.BLOCKED,
    DerivedStatus.IN_PROGRESS,
    DerivedStatus.PENDING_REVIEW,
    DerivedStatus.DONE,
)


class ItemLocation(str, Enum):
    """Physical location of a work item file."""

    PENDING = "pending"
    CLAIMED = "claimed"
    DONE = "done"


class ExecutionOutcome(str, Enum):
    """Outcome classes recorded in the history ledger."""

    SUCCESS = "success"
    FAILURE = "failure"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"


class LockProbe(str, Enum):
    """Tri-state liveness probe; UNKNOWN must be treated as live."""

    ABSENT = "absent"
    DEAD = "dead"
    LIVE = "live"
    UNKNOWN = "unknown"


@dataclass(slots=True, frozen=True)
class LockState:
    """Result of a lock liveness check."""

    running: bool
    pid: int | None


@dataclass(slots=True, frozen=True)
class LockAcquireResult:
    """Structured result of a lock acquisition attempt."""

    acquired: bool
    path: Path
    owner_pid: int | None
    stale_cleaned: int | None = None


@dataclass(slots=True)
class ClaimInfo:
    """Advisory claim payload; presence of the file is what matters."""

    item_name: str
    path: Path
    timestamp: int | None
    hostname: str | None
    pid: int | None


@dataclass(slots=True)
class ReconcileResult:
    """Outcome of one orphaned-claim reconciliation pass."""

    lock_probe: LockProbe
    removed: list[str] = field(default_factory=list)
    kept: list[str] = field(default_factory=list)


@dataclass(slots=True)
class WorkItem:
    """One PRD file, identified by its filename without extension."""

    name: str
    path: Path
    location: ItemLocation
    dependencies: list[str] = field(default_factory=list)


@dataclass(slots=True)
class PrdInfo:
    """Derived status row rendered by status output."""

    name: str
    status: DerivedStatus
    dependencies: list[str] = field(default_factory=list)
    unmet_dependencies: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status.value,
            "dependencies": list(self.dependencies),
            "unmetDependencies": list(self.unmet_dependencies),
        }


@dataclass(slots=True, frozen=True)
class HistoryRecord:
    """Single execution outcome entry."""

    timestamp: int
    outcome: ExecutionOutcome
    exit_code: int
    attempt: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "outcome": self.outcome.value,
            "exitCode": self.exit_code,
            "attempt": self.attempt,
        }


@dataclass(slots=True, frozen=True)
class PersistedStatusEntry:
    """Externally written status that cannot be expressed by file movement."""

    status: str
    branch: str
    timestamp: int


@dataclass(slots=True, frozen=True)
class ProjectEntry:
    """Registered project."""

    name: str
    path: str
    channel_id: str | None = None


@dataclass(slots=True)
class BookmarkItem:
    """Roadmap item already turned into a PRD by the scanner."""

    title: str
    prd_file: str
    created_at: str


@dataclass(slots=True)
class ScannerBookmark:
    """Scanner processing state for one PRD directory."""

    version: int = 1
    last_scan: str = ""
    items: dict[str, BookmarkItem] = field(default_factory=dict)


@dataclass(slots=True)
class ProcessInfo:
    """Role process state derived from its lock file."""

    name: str
    running: bool
    pid: int | None
    lock_path: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "running": self.running,
            "pid": self.pid,
            "lockPath": self.lock_path,
        }


@dataclass(slots=True)
class StatusSnapshot:
    """Point-in-time status view for one project."""

    project_name: str
    project_dir: str
    runtime_key: str
    prds: list[PrdInfo]
    processes: list[ProcessInfo]
    active_prd: str | None
    reconcile: ReconcileResult | None
    sources: dict[str, Any]
    degraded_sources: dict[str, str]
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "projectName": self.project_name,
            "projectDir": self.project_dir,
            "runtimeKey": self.runtime_key,
            "prds": [prd.to_dict() for prd in self.prds],
            "processes": [process.to_dict() for process in self.processes],
            "activePrd": self.active_prd,
            "orphanedClaimsRemoved": list(self.reconcile.removed) if self.reconcile else [],
            "sources": self.sources,
            "degradedSources": dict(self.degraded_sources),
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(slots=True)
class MigrationResult:
    """Human-inspectable summary of a legacy JSON import."""

    projects_migrated: int = 0
    history_records_migrated: int = 0
    persisted_status_migrated: int = 0
    bookmarks_migrated: int = 0
    backup_dir: str = ""
    already_migrated: bool = False
    dry_run: bool = False
    planned_files: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "projectsMigrated": self.projects_migrated,
            "historyRecordsMigrated": self.history_records_migrated,
            "persistedStatusMigrated": self.persisted_status_migrated,
            "bookmarksMigrated": self.bookmarks_migrated,
            "backupDir": self.backup_dir,
            "alreadyMigrated": self.already_migrated,
            "dryRun": self.dry_run,
            "plannedFiles": list(self.planned_files),
        }
