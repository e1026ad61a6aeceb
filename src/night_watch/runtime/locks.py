"""PID-file mutual exclusion per (project, role).

A lock file holds the owner's decimal PID followed by a newline. The file is
published with ``os.link`` from a fully written temp file, so readers never
observe a half-written lock.
"""

from __future__ import annotations

import logging
import os
import uuid
from pathlib import Path

from night_watch.models import LockAcquireResult, LockProbe, LockState, Role
from night_watch.runtime.keys import lock_path

logger = logging.getLogger(__name__)


class LockManager:
    """Acquire, inspect, and release role locks under a shared path prefix."""

    def __init__(self, lock_prefix: str) -> None:
        self.lock_prefix = lock_prefix

    def path_for(self, project_key: str, role: Role | str) -> Path:
        return lock_path(self.lock_prefix, project_key, role)

    def acquire(self, project_key: str, role: Role | str) -> LockAcquireResult:
        """Try to take the lock without blocking.

        A dead or unparseable owner is removed and creation is retried once.
        """

        path = self.path_for(project_key, role)
        path.parent.mkdir(parents=True, exist_ok=True)
        pid = os.getpid()
        stale_cleaned: int | None = None

        for _ in range(2):
            if _publish_lock(path, pid):
                logger.debug("Acquired %s lock %s as pid %s", role, path, pid)
                return LockAcquireResult(
                    acquired=True,
                    path=path,
                    owner_pid=pid,
                    stale_cleaned=stale_cleaned,
                )

            try:
                owner = read_lock_pid(path)
            except FileNotFoundError:
                continue
            except OSError as error:
                logger.warning("Cannot read lock %s, assuming it is held: %s", path, error)
                return LockAcquireResult(acquired=False, path=path, owner_pid=None)

            if owner is not None and pid_alive(owner):
                return LockAcquireResult(acquired=False, path=path, owner_pid=owner)

            if _remove_stale(path, owner):
                stale_cleaned = owner
                logger.warning("Removed stale %s lock %s left by pid %s", role, path, owner)

        try:
            owner = read_lock_pid(path)
        except OSError:
            owner = None
        return LockAcquireResult(
            acquired=False,
            path=path,
            owner_pid=owner,
            stale_cleaned=stale_cleaned,
        )

    def release(self, path: Path) -> bool:
        """Remove the lock only when it records the calling process."""

        try:
            owner = read_lock_pid(path)
        except FileNotFoundError:
            return False
        if owner != os.getpid():
            logger.warning("Refusing to release lock %s owned by pid %s", path, owner)
            return False
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True

    def check(self, path: Path) -> LockState:
        try:
            owner = read_lock_pid(path)
        except OSError:
            return LockState(running=False, pid=None)
        if owner is None:
            return LockState(running=False, pid=None)
        return LockState(running=pid_alive(owner), pid=owner)

    def probe(self, path: Path) -> LockProbe:
        """Liveness for reconciliation; anything not confirmed absent or dead is not safe."""

        try:
            owner = read_lock_pid(path)
        except FileNotFoundError:
            return LockProbe.ABSENT
        except OSError as error:
            logger.warning("Lock %s unreadable, treating owner as live: %s", path, error)
            return LockProbe.UNKNOWN
        if owner is None:
            return LockProbe.DEAD
        try:
            return LockProbe.LIVE if _pid_alive_strict(owner) else LockProbe.DEAD
        except OSError as error:
            logger.warning("Cannot probe pid %s for %s: %s", owner, path, error)
            return LockProbe.UNKNOWN

    def remove_if_dead(self, path: Path) -> bool:
        """Delete a lock whose owner is gone; never touches a live owner's lock."""

        try:
            owner = read_lock_pid(path)
        except FileNotFoundError:
            return False
        if owner is not None and pid_alive(owner):
            return False
        return _remove_stale(path, owner)


def read_lock_pid(path: Path) -> int | None:
    """Return the recorded PID, ``None`` for unparseable content."""

    content = path.read_text(encoding="utf-8").strip()
    try:
        pid = int(content)
    except ValueError:
        return None
    return pid if pid > 0 else None


def pid_alive(pid: int) -> bool:
    try:
        return _pid_alive_strict(pid)
    except OSError:
        return True


def _pid_alive_strict(pid: int) -> bool:
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return not _is_zombie(pid)


def _is_zombie(pid: int) -> bool:
    stat_path = Path(f"/proc/{pid}/stat")
    try:
        stat = stat_path.read_text(encoding="utf-8")
    except OSError:
        return False
    # state follows the parenthesised command name, which may contain spaces
    _, _, rest = stat.rpartition(")")
    return rest.strip().startswith("Z")


def _publish_lock(path: Path, pid: int) -> bool:
    temp_path = path.with_name(f".{path.name}.{pid}.{uuid.uuid4().hex}.tmp")
    fd = os.open(str(temp_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(f"{pid}\n")
        try:
            os.link(temp_path, path)
        except FileExistsError:
            return False
        return True
    finally:
        temp_path.unlink(missing_ok=True)


def _remove_stale(path: Path, expected_owner: int | None) -> bool:
    """Delete a lock still owned by ``expected_owner`` (or any dead owner).

    Only the holder of the ``.break`` companion lock may unlink a stale lock,
    so a fresh lock published by a racer is never removed.
    """

    breaker = path.with_name(f"{path.name}.break")
    if not _publish_lock(breaker, os.getpid()):
        _clear_dead_breaker(breaker)
        return False
    try:
        try:
            owner = read_lock_pid(path)
        except FileNotFoundError:
            return False
        if owner != expected_owner and owner is not None and pid_alive(owner):
            logger.debug("Lock %s was re-acquired by pid %s", path, owner)
            return False
        path.unlink(missing_ok=True)
        return True
    finally:
        breaker.unlink(missing_ok=True)


def _clear_dead_breaker(breaker: Path) -> None:
    try:
        owner = read_lock_pid(breaker)
    except FileNotFoundError:
        return
    if owner is None or not pid_alive(owner):
        logger.warning("Removing abandoned lock breaker %s", breaker)
        breaker.unlink(missing_ok=True)
