"""Canonical derivation of project runtime keys and lock paths.

Every producer and consumer of lock files (worker, status reader, operator
actions, shell launchers via ``night-watch key``) goes through this module so
that they always agree on the same path for the same project.
"""

from __future__ import annotations

import hashlib
import os
from pathlib import Path

from night_watch.models import Role

RUNTIME_KEY_VERSION = 1
_DIGEST_CHARS = 12


def canonical_project_path(project_dir: str | os.PathLike[str]) -> str:
    """Absolute path with symlinks resolved; spelling-independent."""

    return os.path.realpath(os.path.abspath(os.fspath(project_dir)))


def project_runtime_key(project_dir: str | os.PathLike[str]) -> str:
    """Return ``<basename>-<sha1(canonical path)[:12]>``."""

    canonical = canonical_project_path(project_dir)
    digest = hashlib.sha1(canonical.encode("utf-8")).hexdigest()[:_DIGEST_CHARS]
    basename = os.path.basename(canonical) or "root"
    return f"{basename}-{digest}"


def lock_path(lock_prefix: str, project_key: str, role: Role | str) -> Path:
    role_value = role.value if isinstance(role, Role) else Role(role).value
    return Path(f"{lock_prefix}{project_key}-{role_value}.lock")


def project_lock_path(
    lock_prefix: str,
    project_dir: str | os.PathLike[str],
    role: Role | str,
) -> Path:
    return lock_path(lock_prefix, project_runtime_key(project_dir), role)


def project_store_key(project_dir: str | os.PathLike[str]) -> str:
    """Absolute project path keying stored rows; symlinks are kept as spelled."""

    return os.path.abspath(os.fspath(project_dir))
