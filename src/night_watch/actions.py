"""Operator actions: stop a role, clear a lock, retry a finished item."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from night_watch.errors import LockConflictError, WorkItemNotFoundError
from night_watch.models import ReconcileResult, Role
from night_watch.prd.layout import normalize_item_name
from night_watch.project import ProjectContext
from night_watch.runtime.claims import reconcile
from night_watch.runtime.tasks import (
    read_task_marker,
    task_marker_path,
    terminate_pid,
    terminate_process_group,
)

logger = logging.getLogger(__name__)

CANCEL_TYPES: dict[str, tuple[Role, ...]] = {
    "run": (Role.EXECUTOR,),
    "review": (Role.REVIEWER,),
    "audit": (Role.AUDITOR,),
    "all": tuple(Role),
}


@dataclass(slots=True)
class StopOutcome:
    role: Role
    pid: int | None
    was_running: bool
    stopped: bool
    lock_removed: bool
    task_pgid: int | None = None


@dataclass(slots=True)
class StopResult:
    outcomes: list[StopOutcome] = field(default_factory=list)
    reconcile: ReconcileResult | None = None

    @property
    def success(self) -> bool:
        return all(outcome.stopped or not outcome.was_running for outcome in self.outcomes)


@dataclass(slots=True)
class ClearLockResult:
    role: Role
    lock_removed: bool
    reconcile: ReconcileResult


@dataclass(slots=True)
class RetryResult:
    item_name: str
    moved: bool
    already_pending: bool


def stop(
    project: ProjectContext,
    roles: tuple[Role, ...],
    *,
    grace_seconds: float = 3.0,
) -> StopResult:
    """Terminate each role's lock owner, release its lock, then reconcile claims."""

    result = StopResult()
    for role in roles:
        path = project.lock_path(role)
        marker = task_marker_path(path)
        task_pgid = read_task_marker(marker)
        state = project.locks.check(path)
        if not state.running or state.pid is None:
            if task_pgid is not None:
                _stop_task_group(role, marker, task_pgid, grace_seconds)
            removed = project.locks.remove_if_dead(path)
            result.outcomes.append(
                StopOutcome(
                    role=role,
                    pid=state.pid,
                    was_running=False,
                    stopped=False,
                    lock_removed=removed,
                    task_pgid=task_pgid,
                ),
            )
            continue

        logger.info("Stopping %s pid %s", role.value, state.pid)
        try:
            stopped = terminate_pid(state.pid, grace_seconds=grace_seconds)
        except PermissionError as error:
            logger.warning("Cannot signal %s pid %s: %s", role.value, state.pid, error)
            stopped = False
        if stopped and task_pgid is not None:
            stopped = _stop_task_group(role, marker, task_pgid, grace_seconds)
        removed = project.locks.remove_if_dead(path) if stopped else False
        result.outcomes.append(
            StopOutcome(
                role=role,
                pid=state.pid,
                was_running=True,
                stopped=stopped,
                lock_removed=removed,
                task_pgid=task_pgid,
            ),
        )

    result.reconcile = reconcile(project.prd_dir, project.locks, project.executor_lock)
    return result


def _stop_task_group(role: Role, marker: Path, pgid: int, grace_seconds: float) -> bool:
    """Terminate the task group a stopped or dead worker left behind."""

    try:
        gone = terminate_process_group(pgid, grace_seconds=grace_seconds)
    except PermissionError as error:
        logger.warning("Cannot signal %s task group %s: %s", role.value, pgid, error)
        return False
    if gone:
        logger.info("Stopped %s task group %s", role.value, pgid)
        marker.unlink(missing_ok=True)
    else:
        logger.warning("%s task group %s survived SIGKILL", role.value, pgid)
    return gone


def clear_lock(project: ProjectContext, role: Role = Role.EXECUTOR) -> ClearLockResult:
    """Remove a stale lock; refuse with ``LockConflictError`` while its owner lives."""

    path = project.lock_path(role)
    state = project.locks.check(path)
    if state.running:
        raise LockConflictError(
            f"{role.value} is running (pid {state.pid}); stop it before clearing the lock",
            pid=state.pid,
        )
    marker = task_marker_path(path)
    task_pgid = read_task_marker(marker)
    if task_pgid is not None:
        _stop_task_group(role, marker, task_pgid, grace_seconds=3.0)
    removed = project.locks.remove_if_dead(path)
    if removed:
        logger.info("Cleared stale %s lock %s", role.value, path)
    return ClearLockResult(
        role=role,
        lock_removed=removed,
        reconcile=reconcile(project.prd_dir, project.locks, project.executor_lock),
    )


def retry(project: ProjectContext, item: str) -> RetryResult:
    """Move a terminal item back to pending; no-op when it is already pending."""

    name = normalize_item_name(item)
    layout = project.layout
    if layout.pending_path(name).exists():
        return RetryResult(item_name=name, moved=False, already_pending=True)
    if not layout.done_path(name).exists():
        available = ", ".join(sorted(layout.done_names())) or "none"
        raise WorkItemNotFoundError(f"Work item {name!r} not found (done items: {available})")
    try:
        layout.move_to_pending(name)
    except FileExistsError:
        return RetryResult(item_name=name, moved=False, already_pending=True)
    return RetryResult(item_name=name, moved=True, already_pending=False)
