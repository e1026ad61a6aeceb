"""Derive one lifecycle status per work item from files, locks, and stored state.

Precedence, highest first: ``done`` (terminal location), ``blocked`` (an
unmet dependency), ``pending-review`` (persisted status), ``in-progress``
(claim under a live executor lock), ``ready``.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable, Mapping, Sequence

from night_watch.history import HistoryLedger
from night_watch.models import (
    DISPLAY_ORDER,
    DerivedStatus,
    ItemLocation,
    LockState,
    PersistedStatusEntry,
    PrdInfo,
    WorkItem,
)
from night_watch.prd.dependencies import unmet_dependencies
from night_watch.project import ProjectContext
from night_watch.runtime.claims import read_claim
from night_watch.runtime.locks import pid_alive

logger = logging.getLogger(__name__)

PENDING_REVIEW_STATUS = DerivedStatus.PENDING_REVIEW.value
_DISPLAY_RANK = {status: rank for rank, status in enumerate(DISPLAY_ORDER)}


def derive(
    project: ProjectContext,
    persisted_status: Mapping[str, PersistedStatusEntry],
    *,
    executor: LockState | None = None,
    items: Sequence[WorkItem] | None = None,
    now: int | None = None,
) -> list[PrdInfo]:
    """Compute statuses for every item, sorted for display.

    Run orphan reconciliation first; this function itself does not modify
    anything on disk.
    """

    current = int(time.time()) if now is None else now
    if items is None:
        items = project.layout.scan()
    if executor is None:
        executor = project.locks.check(project.executor_lock)
    done_names = {item.name for item in items if item.location is ItemLocation.DONE}

    infos = [
        _derive_one(project, item, done_names, persisted_status, executor, current)
        for item in items
    ]
    return sort_for_display(infos)


def sort_for_display(infos: Iterable[PrdInfo]) -> list[PrdInfo]:
    return sorted(infos, key=lambda info: (_DISPLAY_RANK[info.status], info.name))


def _derive_one(
    project: ProjectContext,
    item: WorkItem,
    done_names: set[str],
    persisted_status: Mapping[str, PersistedStatusEntry],
    executor: LockState,
    now: int,
) -> PrdInfo:
    if item.location is ItemLocation.DONE:
        return PrdInfo(
            name=item.name,
            status=DerivedStatus.DONE,
            dependencies=list(item.dependencies),
        )

    unmet = unmet_dependencies(item.dependencies, done_names)
    if unmet:
        status = DerivedStatus.BLOCKED
    elif _persisted(persisted_status, item.name) == PENDING_REVIEW_STATUS:
        status = DerivedStatus.PENDING_REVIEW
    elif (
        item.location is ItemLocation.CLAIMED
        and executor.running
        and _claim_fresh(project, item.name, now)
    ):
        status = DerivedStatus.IN_PROGRESS
    else:
        status = DerivedStatus.READY
    return PrdInfo(
        name=item.name,
        status=status,
        dependencies=list(item.dependencies),
        unmet_dependencies=unmet,
    )


def select_next(
    project: ProjectContext,
    ledger: HistoryLedger,
    persisted_status: Mapping[str, PersistedStatusEntry],
    *,
    priority: Sequence[str] = (),
    cooldown_seconds: int | None = None,
    now: int | None = None,
) -> WorkItem | None:
    """Pick the next eligible pending item for an executor holding the lock.

    Skips items with an active claim, unmet dependencies, a pending review,
    or a recent non-success run. A claim whose recorded PID is gone, or that
    is older than the project's max runtime, is considered abandoned.
    """

    current = int(time.time()) if now is None else now
    cooldown = project.config.max_runtime if cooldown_seconds is None else cooldown_seconds
    items = project.layout.scan()
    done_names = {item.name for item in items if item.location is ItemLocation.DONE}
    candidates = [item for item in items if item.location is not ItemLocation.DONE]

    for item in order_by_priority(candidates, priority):
        claimed = item.location is ItemLocation.CLAIMED
        if claimed and not _claim_abandoned(project, item.name, current):
            logger.debug("Skipping %s: claimed by another worker", item.name)
            continue
        if unmet_dependencies(item.dependencies, done_names):
            logger.debug("Skipping %s: unmet dependencies", item.name)
            continue
        if _persisted(persisted_status, item.name) == PENDING_REVIEW_STATUS:
            logger.debug("Skipping %s: pending review", item.name)
            continue
        if ledger.is_in_cooldown(project.store_key, item.name, cooldown, now=current):
            logger.debug("Skipping %s: in cooldown", item.name)
            continue
        return item
    return None


def order_by_priority(items: Sequence[WorkItem], priority: Sequence[str]) -> list[WorkItem]:
    """Items named in ``priority`` first, in that order; the rest by name."""

    by_name = {item.name: item for item in items}
    ordered = [by_name[name] for name in dict.fromkeys(priority) if name in by_name]
    chosen = {item.name for item in ordered}
    rest = [item for item in items if item.name not in chosen]
    ordered.extend(sorted(rest, key=lambda item: item.name))
    return ordered


def _persisted(persisted_status: Mapping[str, PersistedStatusEntry], name: str) -> str | None:
    entry = persisted_status.get(name)
    return entry.status if entry is not None else None


def _claim_fresh(project: ProjectContext, name: str, now: int) -> bool:
    info = read_claim(project.prd_dir, name)
    if info is None:
        return False
    if info.timestamp is None:
        return True
    return now - info.timestamp < project.config.max_runtime


def _claim_abandoned(project: ProjectContext, name: str, now: int) -> bool:
    info = read_claim(project.prd_dir, name)
    if info is None:
        return True
    if info.timestamp is not None and now - info.timestamp >= project.config.max_runtime:
        return True
    return info.pid is not None and not pid_alive(info.pid)
