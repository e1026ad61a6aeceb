from __future__ import annotations

import os
from pathlib import Path

import allure

from night_watch.models import Role
from night_watch.runtime.keys import (
    canonical_project_path,
    lock_path,
    project_lock_path,
    project_runtime_key,
    project_store_key,
)

pytestmark = [
    allure.epic("Coordination"),
    allure.feature("Runtime Keys"),
]


def test_runtime_key_is_basename_and_short_digest(tmp_path: Path) -> None:
    project = tmp_path / "my-app"
    project.mkdir()

    key = project_runtime_key(project)

    name, digest = key.rsplit("-", 1)
    assert name == "my-app"
    assert len(digest) == 12
    assert all(char in "0123456789abcdef" for char in digest)


def test_runtime_key_is_stable_across_path_spellings(tmp_path: Path, monkeypatch) -> None:
    project = tmp_path / "repo"
    project.mkdir()
    link = tmp_path / "repo-link"
    link.symlink_to(project)
    monkeypatch.chdir(tmp_path)

    keys = {
        project_runtime_key(project),
        project_runtime_key("repo"),
        project_runtime_key("./repo/"),
        project_runtime_key(str(project) + "/."),
        project_runtime_key(link),
    }

    assert len(keys) == 1


def test_runtime_keys_differ_for_same_basename(tmp_path: Path) -> None:
    first = tmp_path / "a" / "app"
    second = tmp_path / "b" / "app"
    first.mkdir(parents=True)
    second.mkdir(parents=True)

    assert project_runtime_key(first) != project_runtime_key(second)


def test_lock_path_layout_per_role(tmp_path: Path) -> None:
    prefix = str(tmp_path / "nw-")

    paths = {role: lock_path(prefix, "app-0123456789ab", role) for role in Role}

    assert paths[Role.EXECUTOR] == tmp_path / "nw-app-0123456789ab-executor.lock"
    assert paths[Role.REVIEWER].name == "nw-app-0123456789ab-reviewer.lock"
    assert lock_path(prefix, "app-0123456789ab", "auditor") == paths[Role.AUDITOR]


def test_project_lock_path_uses_runtime_key(tmp_path: Path) -> None:
    project = tmp_path / "svc"
    project.mkdir()
    prefix = str(tmp_path / "locks-")

    path = project_lock_path(prefix, project, Role.EXECUTOR)

    assert path.name == f"locks-{project_runtime_key(project)}-executor.lock"


def test_canonical_path_and_store_key_are_absolute(tmp_path: Path, monkeypatch) -> None:
    (tmp_path / "proj").mkdir()
    monkeypatch.chdir(tmp_path)

    assert canonical_project_path("proj") == os.path.realpath(tmp_path / "proj")
    assert project_store_key("proj") == os.path.join(os.getcwd(), "proj")
