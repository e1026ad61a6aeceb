from __future__ import annotations

import os
import shutil

import allure
import pytest

from night_watch.errors import ProjectUnreadableError, StoreBusyTimeoutError
from night_watch.models import DerivedStatus, PersistedStatusEntry, Role
from night_watch.runtime import claims
from night_watch.snapshot import (
    LogTailSource,
    PullRequestSource,
    build_snapshot,
    role_log_path,
)
from night_watch.storage.repositories import PersistedStatusRepository

pytestmark = [
    allure.epic("Status"),
    allure.feature("Status Snapshot"),
]


class _StaticLookup:
    def __init__(self) -> None:
        self.calls: list[tuple[str, ...]] = []

    def open_pull_requests(self, project_dir, branch_patterns):
        self.calls.append(tuple(branch_patterns))
        return [{"number": 7, "branch": "night-watch/feature"}]


class _BrokenSource:
    name = "ci"

    def collect(self, project):
        raise ConnectionError("ci unreachable")


def test_snapshot_reconciles_orphans_before_deriving(project, store, write_item) -> None:
    write_item(project.prd_dir, "a")
    write_item(project.prd_dir, "b")
    claims.claim(project.prd_dir, "a")
    PersistedStatusRepository(store).set(
        project.store_key,
        "b",
        PersistedStatusEntry(status="pending-review", branch="feat/b", timestamp=1),
    )

    snapshot = build_snapshot(project, store)

    assert snapshot.reconcile is not None
    assert snapshot.reconcile.removed == ["a"]
    assert claims.list_claims(project.prd_dir) == []
    assert {prd.name: prd.status for prd in snapshot.prds} == {
        "a": DerivedStatus.READY,
        "b": DerivedStatus.PENDING_REVIEW,
    }
    assert snapshot.active_prd is None
    assert [process.name for process in snapshot.processes] == [role.value for role in Role]
    assert snapshot.runtime_key == project.runtime_key


def test_snapshot_reports_active_item_under_live_executor(project, store, write_item) -> None:
    write_item(project.prd_dir, "a")
    claims.claim(project.prd_dir, "a")
    project.executor_lock.parent.mkdir(parents=True, exist_ok=True)
    project.executor_lock.write_text(f"{os.getpid()}\n", encoding="utf-8")

    snapshot = build_snapshot(project, store)

    assert snapshot.active_prd == "a"
    executor = next(p for p in snapshot.processes if p.name == Role.EXECUTOR.value)
    assert executor.running
    assert executor.pid == os.getpid()
    payload = snapshot.to_dict()
    assert payload["activePrd"] == "a"
    assert payload["orphanedClaimsRemoved"] == []


def test_failing_sources_degrade_instead_of_failing(project, store, write_item) -> None:
    write_item(project.prd_dir, "a")
    log_path = role_log_path(project.project_dir, Role.EXECUTOR)
    log_path.parent.mkdir(parents=True)
    log_path.write_text("\n".join(f"line {n}" for n in range(30)), encoding="utf-8")
    lookup = _StaticLookup()

    snapshot = build_snapshot(
        project,
        store,
        sources=[LogTailSource(max_lines=5), PullRequestSource(lookup), _BrokenSource()],
    )

    assert snapshot.sources["logs"]["executor"] == [f"line {n}" for n in range(25, 30)]
    assert snapshot.sources["logs"]["reviewer"] == []
    assert snapshot.sources["pullRequests"][0]["number"] == 7
    assert lookup.calls == [project.config.branch_patterns]
    assert snapshot.degraded_sources == {"ci": "ConnectionError: ci unreachable"}
    assert [prd.name for prd in snapshot.prds] == ["a"]


def test_store_failure_degrades_persisted_status(project, store, write_item, monkeypatch) -> None:
    write_item(project.prd_dir, "a")

    def _busy(self, project_path):
        raise StoreBusyTimeoutError("State store busy: database is locked")

    monkeypatch.setattr(PersistedStatusRepository, "for_project", _busy)

    snapshot = build_snapshot(project, store)

    assert "persistedStatus" in snapshot.degraded_sources
    assert snapshot.prds[0].status is DerivedStatus.READY


def test_snapshot_without_store_reports_the_open_failure(project, write_item) -> None:
    write_item(project.prd_dir, "a")

    snapshot = build_snapshot(project, None, store_error="State store busy: database is locked")

    assert snapshot.degraded_sources == {"persistedStatus": "State store busy: database is locked"}
    assert snapshot.prds[0].status is DerivedStatus.READY


def test_missing_project_is_unreadable(project, store) -> None:
    shutil.rmtree(project.project_dir)

    with pytest.raises(ProjectUnreadableError):
        build_snapshot(project, store)
