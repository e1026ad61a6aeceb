"""On-disk layout of work items: pending at the top level, terminal in ``done/``."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from night_watch.errors import ProjectUnreadableError, WorkItemNotFoundError
from night_watch.models import ItemLocation, WorkItem
from night_watch.prd.dependencies import parse_dependencies
from night_watch.runtime.claims import claim_path

logger = logging.getLogger(__name__)

DONE_DIR_NAME = "done"
SUMMARY_FILE_NAME = "NIGHT-WATCH-SUMMARY.md"
ITEM_SUFFIX = ".md"


def normalize_item_name(name: str) -> str:
    """Accept ``name`` or ``name.md``; reject anything that is not a bare filename."""

    cleaned = name.strip()
    if cleaned.endswith(ITEM_SUFFIX):
        cleaned = cleaned[: -len(ITEM_SUFFIX)]
    if not cleaned or "/" in cleaned or "\\" in cleaned or cleaned in {".", ".."}:
        raise ValueError(f"Invalid work item name: {name!r}")
    return cleaned


class PrdLayout:
    """Work items of one PRD directory."""

    def __init__(self, prd_dir: Path) -> None:
        self.prd_dir = prd_dir
        self.done_dir = prd_dir / DONE_DIR_NAME

    def pending_path(self, name: str) -> Path:
        return self.prd_dir / f"{name}{ITEM_SUFFIX}"

    def done_path(self, name: str) -> Path:
        return self.done_dir / f"{name}{ITEM_SUFFIX}"

    def pending_names(self) -> list[str]:
        return sorted(_markdown_names(self.prd_dir, exclude={SUMMARY_FILE_NAME}))

    def done_names(self) -> set[str]:
        return set(_markdown_names(self.done_dir, exclude=set()))

    def scan(self) -> list[WorkItem]:
        """Pending, claimed, and done items with parsed dependencies.

        Raises ``ProjectUnreadableError`` when the PRD directory exists but
        cannot be listed. A missing directory has no items.
        """

        if not self.prd_dir.exists():
            return []
        try:
            pending = self.pending_names()
            done = sorted(self.done_names())
        except OSError as error:
            raise ProjectUnreadableError(f"Cannot list {self.prd_dir}: {error}") from error

        items: list[WorkItem] = []
        for name in pending:
            path = self.pending_path(name)
            location = (
                ItemLocation.CLAIMED
                if claim_path(self.prd_dir, name).exists()
                else ItemLocation.PENDING
            )
            items.append(
                WorkItem(
                    name=name,
                    path=path,
                    location=location,
                    dependencies=_read_dependencies(path),
                ),
            )
        for name in done:
            if name in pending:
                continue
            path = self.done_path(name)
            items.append(
                WorkItem(
                    name=name,
                    path=path,
                    location=ItemLocation.DONE,
                    dependencies=_read_dependencies(path),
                ),
            )
        return items

    def move_to_done(self, name: str) -> Path:
        source = self.pending_path(name)
        if not source.exists():
            raise WorkItemNotFoundError(f"Pending work item not found: {name}")
        self.done_dir.mkdir(parents=True, exist_ok=True)
        target = self.done_path(name)
        os.replace(source, target)
        logger.info("Moved %s to %s", source, target)
        return target

    def move_to_pending(self, name: str) -> Path:
        """Move a terminal item back to pending without clobbering a pending copy."""

        source = self.done_path(name)
        target = self.pending_path(name)
        if not source.exists():
            raise WorkItemNotFoundError(f"Work item not found in {self.done_dir}: {name}")
        os.link(source, target)
        source.unlink()
        logger.info("Moved %s back to %s", source, target)
        return target


def _markdown_names(directory: Path, *, exclude: set[str]) -> list[str]:
    if not directory.is_dir():
        return []
    return [
        entry.name[: -len(ITEM_SUFFIX)]
        for entry in directory.iterdir()
        if entry.name.endswith(ITEM_SUFFIX)
        and entry.name not in exclude
        and not entry.name.startswith(".")
        and entry.is_file()
    ]


def _read_dependencies(path: Path) -> list[str]:
    try:
        return parse_dependencies(path.read_text(encoding="utf-8"))
    except (OSError, UnicodeDecodeError) as error:
        logger.warning("Cannot read dependencies from %s: %s", path, error)
        return []
