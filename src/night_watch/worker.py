"""One scheduled worker invocation: lock, select, claim, execute, record, release."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from night_watch.history import HistoryLedger
from night_watch.models import ExecutionOutcome, HistoryRecord, ItemLocation, Role
from night_watch.prd.derivation import select_next
from night_watch.project import ProjectContext
from night_watch.runtime import claims
from night_watch.runtime.tasks import (
    TaskResult,
    build_command,
    run_task,
    stop_on_signals,
    task_marker_path,
)
from night_watch.snapshot import role_log_path
from night_watch.storage.common import with_busy_retry
from night_watch.storage.repositories import PersistedStatusRepository
from night_watch.storage.store import StateStore

logger = logging.getLogger(__name__)

RATE_LIMIT_MARKER = "429"
RATE_LIMIT_TAIL_LINES = 20


class WorkerStatus(str, Enum):
    """Why a worker invocation ended."""

    COMPLETED = "completed"
    FAILED = "failed"
    LOCKED = "locked"
    IDLE = "idle"
    CLAIM_CONFLICT = "claim_conflict"
    INTERRUPTED = "interrupted"


@dataclass(slots=True)
class WorkerRunSummary:
    """Result of one invocation, rendered by the CLI."""

    role: Role
    status: WorkerStatus
    item_name: str | None = None
    owner_pid: int | None = None
    task: TaskResult | None = None
    record: HistoryRecord | None = None
    stale_lock_cleaned: int | None = None


class NightWatchWorker:
    """Runs one role's command for a project under that role's lock."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        project: ProjectContext,
        store: StateStore,
        ledger: HistoryLedger,
        role: Role,
        command_template: str,
        timeout_seconds: int | None = None,
        graceful_shutdown_seconds: int = 5,
    ) -> None:
        self.project = project
        self.store = store
        self.ledger = ledger
        self.role = role
        self.command_template = command_template
        self.timeout_seconds = timeout_seconds or project.config.max_runtime
        self.graceful_shutdown_seconds = graceful_shutdown_seconds
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    def run_once(self) -> WorkerRunSummary:
        acquired = self.project.locks.acquire(self.project.runtime_key, self.role)
        if not acquired.acquired:
            logger.info(
                "%s already running for %s (pid %s)",
                self.role.value,
                self.project.project_dir,
                acquired.owner_pid,
            )
            return WorkerRunSummary(
                role=self.role,
                status=WorkerStatus.LOCKED,
                owner_pid=acquired.owner_pid,
            )

        try:
            with stop_on_signals(self._request_stop):
                if self.role is Role.EXECUTOR:
                    summary = self._run_executor()
                else:
                    summary = self._run_role_command()
        finally:
            self.project.locks.release(acquired.path)
        summary.stale_lock_cleaned = acquired.stale_cleaned
        return summary

    def _run_executor(self) -> WorkerRunSummary:
        repository = PersistedStatusRepository(self.store)
        persisted = with_busy_retry(lambda: repository.for_project(self.project.store_key))
        item = select_next(
            self.project,
            self.ledger,
            persisted,
            priority=self.project.config.prd_priority,
        )
        if item is None:
            logger.info("No eligible work item in %s", self.project.prd_dir)
            return WorkerRunSummary(role=self.role, status=WorkerStatus.IDLE)

        prd_dir = self.project.prd_dir
        if item.location is ItemLocation.CLAIMED:
            logger.warning("Taking over abandoned claim on %s", item.name)
            claims.clear(prd_dir, item.name)
        if not claims.claim(prd_dir, item.name):
            return WorkerRunSummary(
                role=self.role,
                status=WorkerStatus.CLAIM_CONFLICT,
                item_name=item.name,
            )

        try:
            task = self._execute(
                {
                    "prd_file": str(item.path),
                    "prd_name": item.name,
                    "project_dir": str(self.project.project_dir),
                },
            )
            outcome = classify_outcome(task, role_log_path(self.project.project_dir, self.role))
            if outcome is ExecutionOutcome.SUCCESS:
                self.project.layout.move_to_done(item.name)
            record = with_busy_retry(lambda: self._record(item.name, outcome, task.exit_code))
        finally:
            claims.clear(prd_dir, item.name)

        return WorkerRunSummary(
            role=self.role,
            status=_status_for(task, outcome),
            item_name=item.name,
            task=task,
            record=record,
        )

    def _record(self, item_name: str, outcome: ExecutionOutcome, exit_code: int) -> HistoryRecord:
        attempt = _next_attempt(self.ledger, self.project.store_key, item_name)
        return self.ledger.record_execution(
            self.project.store_key,
            item_name,
            outcome,
            exit_code,
            attempt=attempt,
        )

    def _run_role_command(self) -> WorkerRunSummary:
        task = self._execute({"project_dir": str(self.project.project_dir)})
        outcome = classify_outcome(task, role_log_path(self.project.project_dir, self.role))
        return WorkerRunSummary(role=self.role, status=_status_for(task, outcome), task=task)

    def _execute(self, values: dict[str, str]) -> TaskResult:
        args = build_command(self.command_template, values)
        return run_task(
            args=args,
            cwd=self.project.project_dir,
            timeout_seconds=self.timeout_seconds,
            log_path=role_log_path(self.project.project_dir, self.role),
            env={"NIGHT_WATCH_ROLE": self.role.value},
            shutdown_requested=lambda: self._stop_requested,
            graceful_shutdown_seconds=self.graceful_shutdown_seconds,
            marker_path=task_marker_path(self.project.lock_path(self.role)),
        )

    def _request_stop(self, signal_name: str) -> None:
        self._stop_requested = True
        self._stop_signal_name = signal_name
        logger.warning("Stop requested by %s, finishing current task", signal_name)


def classify_outcome(task: TaskResult, log_path: Path) -> ExecutionOutcome:
    if task.timed_out:
        return ExecutionOutcome.TIMEOUT
    if task.exit_code == 0 and not task.interrupted:
        return ExecutionOutcome.SUCCESS
    if _log_tail_contains(log_path, RATE_LIMIT_MARKER):
        return ExecutionOutcome.RATE_LIMITED
    return ExecutionOutcome.FAILURE


def _log_tail_contains(log_path: Path, marker: str) -> bool:
    try:
        lines = log_path.read_text(encoding="utf-8", errors="replace").splitlines()
    except FileNotFoundError:
        return False
    return any(marker in line for line in lines[-RATE_LIMIT_TAIL_LINES:])


def _status_for(task: TaskResult, outcome: ExecutionOutcome) -> WorkerStatus:
    if task.interrupted:
        return WorkerStatus.INTERRUPTED
    if outcome is ExecutionOutcome.SUCCESS:
        return WorkerStatus.COMPLETED
    return WorkerStatus.FAILED


def _next_attempt(ledger: HistoryLedger, project_path: str, item_name: str) -> int:
    last = ledger.last(project_path, item_name)
    if last is None or last.outcome is ExecutionOutcome.SUCCESS:
        return 1
    return last.attempt + 1
