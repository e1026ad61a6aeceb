"""Controllers for night-watch CLI commands."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from night_watch import actions
from night_watch.config import Settings
from night_watch.errors import NightWatchError
from night_watch.history import HistoryLedger
from night_watch.models import (
    ExecutionOutcome,
    HistoryRecord,
    PersistedStatusEntry,
    Role,
    StatusSnapshot,
)
from night_watch.prd.layout import normalize_item_name
from night_watch.project import ProjectContext
from night_watch.runtime.keys import RUNTIME_KEY_VERSION
from night_watch.snapshot import LogTailSource, build_snapshot
from night_watch.storage.common import epoch_now, with_busy_retry
from night_watch.storage.migration import migrate
from night_watch.storage.repositories import PersistedStatusRepository, ProjectRegistryRepository
from night_watch.storage.store import StateStore
from night_watch.worker import NightWatchWorker

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class StatusCommand:
    """CLI input for the project status snapshot."""

    project_dir: Path
    db_path: Path | None
    as_json: bool
    log_lines: int = 0


@dataclass(slots=True)
class ClearLockCommand:
    project_dir: Path
    role: Role


@dataclass(slots=True)
class CancelCommand:
    """CLI input for stopping running roles."""

    project_dir: Path
    cancel_type: str
    grace_seconds: float


@dataclass(slots=True)
class RetryCommand:
    project_dir: Path
    item: str


@dataclass(slots=True)
class MigrateCommand:
    db_path: Path | None
    dry_run: bool
    as_json: bool = False


@dataclass(slots=True)
class RunCommand:
    """CLI input for one worker invocation."""

    project_dir: Path
    db_path: Path | None
    role: Role
    command_template: str
    timeout_seconds: int | None


@dataclass(slots=True)
class KeyCommand:
    project_dir: Path
    role: Role | None


@dataclass(slots=True)
class HistoryRecordCommand:
    project_dir: Path
    db_path: Path | None
    item: str
    outcome: ExecutionOutcome
    exit_code: int
    attempt: int


@dataclass(slots=True)
class HistoryCheckCommand:
    project_dir: Path
    db_path: Path | None
    item: str
    cooldown_seconds: int | None


@dataclass(slots=True)
class HistoryShowCommand:
    project_dir: Path
    db_path: Path | None
    item: str | None


@dataclass(slots=True)
class PrdStateCommand:
    """CLI input for persisted status mutations and listing."""

    project_dir: Path
    db_path: Path | None
    item: str | None = None
    status: str | None = None
    branch: str = ""


@dataclass(slots=True)
class ProjectsCommand:
    db_path: Path | None
    project_dir: Path | None = None
    name: str | None = None


@dataclass(slots=True)
class CommandResult:
    """Lines to print plus the process exit code."""

    lines: list[str]
    exit_code: int = 0


class NightWatchCliController:
    """Coordinates status, actions, worker, and store CLI operations."""

    def status(self, command: StatusCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        project = ProjectContext.load(command.project_dir, settings)
        sources = [LogTailSource(max_lines=command.log_lines)] if command.log_lines > 0 else []
        store: StateStore | None = None
        store_error: str | None = None
        try:
            store = _open_store(settings)
        except NightWatchError as error:
            logger.warning("State store unavailable for status: %s", error)
            store_error = str(error)
        try:
            snapshot = build_snapshot(project, store, sources=sources, store_error=store_error)
        finally:
            if store is not None:
                store.close()
        if command.as_json:
            return [json.dumps(snapshot.to_dict(), indent=2)]
        return render_status_lines(snapshot)

    def clear_lock(self, command: ClearLockCommand) -> list[str]:
        settings = Settings.from_env()
        project = ProjectContext.load(command.project_dir, settings)
        result = actions.clear_lock(project, command.role)
        lines = [
            f"Cleared stale {result.role.value} lock."
            if result.lock_removed
            else f"No {result.role.value} lock to clear.",
        ]
        if result.reconcile.removed:
            lines.append(f"Removed orphaned claims: {', '.join(result.reconcile.removed)}")
        return lines

    def cancel(self, command: CancelCommand) -> CommandResult:
        settings = Settings.from_env()
        project = ProjectContext.load(command.project_dir, settings)
        roles = actions.CANCEL_TYPES[command.cancel_type]
        result = actions.stop(project, roles, grace_seconds=command.grace_seconds)
        lines: list[str] = []
        for outcome in result.outcomes:
            if not outcome.was_running:
                suffix = " (stale lock removed)" if outcome.lock_removed else ""
                lines.append(f"{outcome.role.value}: not running{suffix}")
            elif outcome.stopped:
                lines.append(f"{outcome.role.value}: stopped pid {outcome.pid}")
            else:
                lines.append(f"{outcome.role.value}: failed to stop pid {outcome.pid}")
        if result.reconcile is not None and result.reconcile.removed:
            lines.append(f"Removed orphaned claims: {', '.join(result.reconcile.removed)}")
        return CommandResult(lines=lines, exit_code=0 if result.success else 1)

    def retry(self, command: RetryCommand) -> list[str]:
        settings = Settings.from_env()
        project = ProjectContext.load(command.project_dir, settings)
        result = actions.retry(project, command.item)
        if result.already_pending:
            return [f'"{result.item_name}" is already pending, nothing to retry.']
        return [f'Moved "{result.item_name}" back to pending.']

    def migrate(self, command: MigrateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            result = migrate(
                store,
                settings.home,
                dry_run=command.dry_run,
                max_history_records=settings.history_max_records,
            )
        if command.as_json:
            return [json.dumps(result.to_dict(), indent=2)]
        if result.already_migrated:
            return ["Legacy JSON state already migrated."]
        prefix = "Would migrate" if result.dry_run else "Migrated"
        lines = [
            f"{prefix}: projects={result.projects_migrated} "
            f"history_records={result.history_records_migrated} "
            f"persisted_status={result.persisted_status_migrated} "
            f"bookmarks={result.bookmarks_migrated}",
        ]
        if result.dry_run:
            lines.extend(f"  source: {path}" for path in result.planned_files)
        else:
            lines.append(f"Backup: {result.backup_dir}")
        return lines

    def run(self, command: RunCommand) -> CommandResult:
        settings = Settings.from_env(db_path=command.db_path)
        project = ProjectContext.load(command.project_dir, settings)
        with _store(settings) as store:
            worker = NightWatchWorker(
                project=project,
                store=store,
                ledger=HistoryLedger(store, max_records=settings.history_max_records),
                role=command.role,
                command_template=command.command_template,
                timeout_seconds=command.timeout_seconds,
            )
            summary = worker.run_once()

        line = f"Worker summary: role={summary.role.value} status={summary.status.value}"
        if summary.item_name:
            line += f" item={summary.item_name}"
        if summary.task is not None:
            line += (
                f" exit_code={summary.task.exit_code}"
                f" duration={summary.task.duration_seconds:.1f}s"
            )
        if summary.record is not None:
            line += f" outcome={summary.record.outcome.value}"
        if summary.owner_pid is not None:
            line += f" owner_pid={summary.owner_pid}"
        lines = [line]
        if summary.stale_lock_cleaned is not None:
            lines.append(f"Removed stale lock left by pid {summary.stale_lock_cleaned}")
        failed = summary.status.value in {"failed", "interrupted"}
        return CommandResult(lines=lines, exit_code=1 if failed else 0)

    def key(self, command: KeyCommand) -> list[str]:
        settings = Settings.from_env()
        project = ProjectContext.load(command.project_dir, settings)
        if command.role is None:
            return [project.runtime_key]
        return [str(project.lock_path(command.role))]

    def key_details(self, command: KeyCommand) -> list[str]:
        settings = Settings.from_env()
        project = ProjectContext.load(command.project_dir, settings)
        return [
            f"version={RUNTIME_KEY_VERSION}",
            f"project_dir={project.project_dir}",
            f"runtime_key={project.runtime_key}",
            *(f"{role.value}_lock={project.lock_path(role)}" for role in Role),
        ]

    def history_record(self, command: HistoryRecordCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        project = ProjectContext.load(command.project_dir, settings)
        name = normalize_item_name(command.item)
        with _store(settings) as store:
            ledger = HistoryLedger(store, max_records=settings.history_max_records)
            record = HistoryRecord(
                timestamp=epoch_now(),
                outcome=command.outcome,
                exit_code=command.exit_code,
                attempt=command.attempt,
            )
            with_busy_retry(lambda: ledger.append(project.store_key, name, record))
        return [f"Recorded {record.outcome.value} for {name}"]

    def history_check(self, command: HistoryCheckCommand) -> CommandResult:
        """Exit 0 while the item is cooling down, 1 when it may run again."""

        settings = Settings.from_env(db_path=command.db_path)
        project = ProjectContext.load(command.project_dir, settings)
        name = normalize_item_name(command.item)
        period = command.cooldown_seconds or project.config.max_runtime
        with _store(settings) as store:
            ledger = HistoryLedger(store, max_records=settings.history_max_records)
            in_cooldown = ledger.is_in_cooldown(project.store_key, name, period)
        if in_cooldown:
            return CommandResult(lines=[f"{name}: in cooldown"], exit_code=0)
        return CommandResult(lines=[f"{name}: eligible"], exit_code=1)

    def history_show(self, command: HistoryShowCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        project = ProjectContext.load(command.project_dir, settings)
        with _store(settings) as store:
            ledger = HistoryLedger(store, max_records=settings.history_max_records)
            if command.item is not None:
                name = normalize_item_name(command.item)
                grouped = {name: ledger.records(project.store_key, name)}
            else:
                grouped = ledger.all_history().get(project.store_key, {})
        if not any(grouped.values()):
            return ["No execution history."]
        lines: list[str] = []
        for item_name, records in sorted(grouped.items()):
            lines.append(f"{item_name}:")
            lines.extend(
                f"  ts={record.timestamp} outcome={record.outcome.value} "
                f"exit_code={record.exit_code} attempt={record.attempt}"
                for record in records
            )
        return lines

    def prd_state_set(self, command: PrdStateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        project = ProjectContext.load(command.project_dir, settings)
        if not command.item or not command.status:
            raise ValueError("Both item and status are required.")
        name = normalize_item_name(command.item)
        with _store(settings) as store:
            entry = PersistedStatusEntry(
                status=command.status,
                branch=command.branch,
                timestamp=epoch_now(),
            )
            repository = PersistedStatusRepository(store)
            with_busy_retry(lambda: repository.set(project.store_key, name, entry))
        return [f"Set {name} -> {command.status}"]

    def prd_state_clear(self, command: PrdStateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        project = ProjectContext.load(command.project_dir, settings)
        if not command.item:
            raise ValueError("Item is required.")
        name = normalize_item_name(command.item)
        with _store(settings) as store:
            repository = PersistedStatusRepository(store)
            removed = with_busy_retry(lambda: repository.clear(project.store_key, name))
        if removed:
            return [f"Cleared state for {name}"]
        return [f"No state stored for {name}"]

    def prd_state_list(self, command: PrdStateCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        project = ProjectContext.load(command.project_dir, settings)
        with _store(settings) as store:
            repository = PersistedStatusRepository(store)
            if command.status:
                return repository.names_with_status(project.store_key, command.status)
            entries = repository.for_project(project.store_key)
        return [
            f"{name}\t{entry.status}\t{entry.branch}"
            for name, entry in sorted(entries.items())
        ]

    def projects_register(self, command: ProjectsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if command.project_dir is None:
            raise ValueError("Project directory is required.")
        with _store(settings) as store:
            registry = ProjectRegistryRepository(store)
            project_dir = command.project_dir
            entry = with_busy_retry(lambda: registry.register(project_dir, name=command.name))
        return [f"Registered {entry.name}: {entry.path}"]

    def projects_unregister(self, command: ProjectsCommand) -> CommandResult:
        settings = Settings.from_env(db_path=command.db_path)
        if command.project_dir is None:
            raise ValueError("Project directory is required.")
        with _store(settings) as store:
            registry = ProjectRegistryRepository(store)
            project_dir = command.project_dir
            removed = with_busy_retry(lambda: registry.unregister(project_dir))
        if removed:
            return CommandResult(lines=[f"Unregistered {command.project_dir}"])
        return CommandResult(lines=[f"Not registered: {command.project_dir}"], exit_code=1)

    def projects_list(self, command: ProjectsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _store(settings) as store:
            valid, invalid = ProjectRegistryRepository(store).validate()
        if not valid and not invalid:
            return ["No registered projects."]
        lines = [f"{entry.name}\t{entry.path}" for entry in valid]
        lines.extend(f"{entry.name}\t{entry.path}\t(missing)" for entry in invalid)
        return lines


def render_status_lines(snapshot: StatusSnapshot) -> list[str]:
    lines = [
        f"Project: {snapshot.project_name} ({snapshot.project_dir})",
        f"Runtime key: {snapshot.runtime_key}",
    ]
    for process in snapshot.processes:
        state = f"running (pid {process.pid})" if process.running else "idle"
        lines.append(f"  {process.name}: {state}")
    if snapshot.prds:
        lines.append("Work items:")
        for prd in snapshot.prds:
            line = f"  [{prd.status.value}] {prd.name}"
            if prd.unmet_dependencies:
                line += f" (waiting on: {', '.join(prd.unmet_dependencies)})"
            lines.append(line)
    else:
        lines.append("Work items: none")
    if snapshot.reconcile is not None and snapshot.reconcile.removed:
        lines.append(f"Orphaned claims removed: {', '.join(snapshot.reconcile.removed)}")
    for name, tail in snapshot.sources.items():
        if name == "logs":
            for role, role_lines in tail.items():
                if role_lines:
                    lines.append(f"{role} log:")
                    lines.extend(f"  {line}" for line in role_lines)
    for name, reason in snapshot.degraded_sources.items():
        lines.append(f"Source {name} unavailable: {reason}")
    return lines


def _open_store(settings: Settings) -> StateStore:
    store = StateStore(settings.store.db_path, busy_timeout_ms=settings.store.busy_timeout_ms)
    try:
        store.init_schema()
    except BaseException:
        store.close()
        raise
    return store


@contextmanager
def _store(settings: Settings) -> Iterator[StateStore]:
    store = _open_store(settings)
    try:
        yield store
    finally:
        store.close()
