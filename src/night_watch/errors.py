"""Exception taxonomy for coordination and storage failures."""

from __future__ import annotations


class NightWatchError(RuntimeError):
    """Base class for errors surfaced to CLI callers."""


class LockConflictError(NightWatchError):
    """A live process owns the lock; the caller must not proceed."""

    def __init__(self, message: str, *, pid: int | None) -> None:
        super().__init__(message)
        self.pid = pid


class StoreBusyTimeoutError(NightWatchError):
    """Another process held the write lock past the busy timeout. Retryable."""


class StoreCorruptError(NightWatchError):
    """The state database is unreadable or malformed. Not retryable."""


class MigrationPartialFailureError(NightWatchError):
    """Legacy import failed and was rolled back; backup kept for recovery."""

    def __init__(self, message: str, *, backup_dir: str) -> None:
        super().__init__(message)
        self.backup_dir = backup_dir


class ProjectUnreadableError(NightWatchError):
    """Project directory is missing or cannot be listed."""


class WorkItemNotFoundError(NightWatchError):
    """Named work item does not exist in pending or done locations."""
