"""Point-in-time status view of one project."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path
from typing import Any, Protocol

from night_watch.errors import NightWatchError, ProjectUnreadableError
from night_watch.models import (
    DerivedStatus,
    PersistedStatusEntry,
    ProcessInfo,
    Role,
    StatusSnapshot,
)
from night_watch.prd.derivation import derive
from night_watch.project import ProjectContext
from night_watch.runtime.claims import reconcile
from night_watch.storage.common import utc_now
from night_watch.storage.repositories import PersistedStatusRepository
from night_watch.storage.store import StateStore

logger = logging.getLogger(__name__)

LOG_DIR_NAME = "logs"


class SnapshotSource(Protocol):
    """Optional extra data attached to a snapshot; failures are reported, not fatal."""

    name: str

    def collect(self, project: ProjectContext) -> Any: ...


class PullRequestLookup(Protocol):
    def open_pull_requests(
        self,
        project_dir: Path,
        branch_patterns: Sequence[str],
    ) -> list[dict[str, Any]]: ...


class LogTailSource:
    """Last lines of each role's log under ``<project>/logs``."""

    name = "logs"

    def __init__(self, *, max_lines: int = 20, roles: Sequence[Role] = tuple(Role)) -> None:
        self.max_lines = max_lines
        self.roles = tuple(roles)

    def collect(self, project: ProjectContext) -> dict[str, list[str]]:
        tails: dict[str, list[str]] = {}
        for role in self.roles:
            log_path = role_log_path(project.project_dir, role)
            if not log_path.exists():
                tails[role.value] = []
                continue
            lines = log_path.read_text(encoding="utf-8", errors="replace").splitlines()
            tails[role.value] = lines[-self.max_lines :]
        return tails


class PullRequestSource:
    """Open pull requests matching the project's branch patterns."""

    name = "pullRequests"

    def __init__(self, lookup: PullRequestLookup) -> None:
        self.lookup = lookup

    def collect(self, project: ProjectContext) -> list[dict[str, Any]]:
        return self.lookup.open_pull_requests(project.project_dir, project.config.branch_patterns)


def role_log_path(project_dir: Path, role: Role) -> Path:
    return project_dir / LOG_DIR_NAME / f"{role.value}.log"


def build_snapshot(
    project: ProjectContext,
    store: StateStore | None,
    *,
    sources: Sequence[SnapshotSource] = (),
    store_error: str | None = None,
) -> StatusSnapshot:
    """Reconcile orphaned claims, then derive statuses and collect extra sources.

    A ``None`` store derives without persisted statuses and reports
    ``store_error`` under ``persistedStatus``. Raises ``ProjectUnreadableError``
    when the project directory is missing or the PRD directory cannot be listed.
    """

    if not project.project_dir.is_dir():
        raise ProjectUnreadableError(f"Project directory not found: {project.project_dir}")

    degraded: dict[str, str] = {}
    reconcile_result = reconcile(project.prd_dir, project.locks, project.executor_lock)
    if reconcile_result.removed:
        logger.info(
            "Cleaned %s orphaned claims in %s",
            len(reconcile_result.removed),
            project.prd_dir,
        )

    processes: list[ProcessInfo] = []
    for role in Role:
        path = project.lock_path(role)
        state = project.locks.check(path)
        processes.append(
            ProcessInfo(
                name=role.value,
                running=state.running,
                pid=state.pid,
                lock_path=str(path),
            ),
        )
    executor = project.locks.check(project.executor_lock)

    items = project.layout.scan()
    persisted: dict[str, PersistedStatusEntry] = {}
    if store is None:
        degraded["persistedStatus"] = store_error or "state store unavailable"
    else:
        try:
            persisted = PersistedStatusRepository(store).for_project(project.store_key)
        except NightWatchError as error:
            logger.warning("Persisted statuses unavailable for %s: %s", project.project_dir, error)
            degraded["persistedStatus"] = str(error)

    prds = derive(project, persisted, executor=executor, items=items)
    active = next((prd.name for prd in prds if prd.status is DerivedStatus.IN_PROGRESS), None)

    collected: dict[str, Any] = {}
    for source in sources:
        try:
            collected[source.name] = source.collect(project)
        except Exception as error:  # noqa: BLE001
            logger.warning("Status source %s failed: %s", source.name, error)
            degraded[source.name] = f"{type(error).__name__}: {error}"

    return StatusSnapshot(
        project_name=project.config.project_name,
        project_dir=str(project.project_dir),
        runtime_key=project.runtime_key,
        prds=prds,
        processes=processes,
        active_prd=active,
        reconcile=reconcile_result,
        sources=collected,
        degraded_sources=degraded,
        timestamp=utc_now(),
    )
