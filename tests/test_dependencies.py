from __future__ import annotations

from pathlib import Path

import allure
import pytest

from night_watch.errors import ProjectUnreadableError, WorkItemNotFoundError
from night_watch.models import ItemLocation
from night_watch.prd.dependencies import parse_dependencies, unmet_dependencies
from night_watch.prd.layout import PrdLayout, normalize_item_name
from night_watch.runtime import claims

pytestmark = [
    allure.epic("Work Items"),
    allure.feature("Dependencies & Layout"),
]


@pytest.mark.parametrize(
    ("content", "expected"),
    [
        ("Depends on: a, b", ["a", "b"]),
        ("**Depends on:** `phase-1.md`, **phase-2**", ["phase-1", "phase-2"]),
        ("| Depends on: | x |", ["x"]),
        ("depends ON: one,one , two", ["one", "two"]),
        ("Depends on:\nnext line", []),
        ("No dependencies here", []),
    ],
)
def test_parse_dependencies(content: str, expected: list[str]) -> None:
    assert parse_dependencies(content) == expected


def test_only_first_declaration_counts() -> None:
    content = "# Title\nDepends on: first\n\nDepends on: second\n"

    assert parse_dependencies(content) == ["first"]


def test_unmet_dependencies_keeps_declaration_order() -> None:
    assert unmet_dependencies(["c", "a", "b"], {"a"}) == ["c", "b"]


@pytest.mark.parametrize("name", ["", "  ", "../x", "a/b", ".", ".md"])
def test_normalize_item_name_rejects_paths(name: str) -> None:
    with pytest.raises(ValueError, match="Invalid work item name"):
        normalize_item_name(name)


def test_normalize_item_name_strips_suffix() -> None:
    assert normalize_item_name(" feature.md ") == "feature"


def test_scan_reports_locations_and_skips_summary(tmp_path: Path, write_item) -> None:
    prd_dir = tmp_path / "prds"
    write_item(prd_dir, "a", "Depends on: b")
    write_item(prd_dir, "b", done=True)
    write_item(prd_dir, "c")
    write_item(prd_dir, "NIGHT-WATCH-SUMMARY")
    (prd_dir / "notes.txt").write_text("ignored", encoding="utf-8")
    (prd_dir / "nested").mkdir()
    write_item(prd_dir / "nested", "deep")
    claims.claim(prd_dir, "c")

    items = {item.name: item for item in PrdLayout(prd_dir).scan()}

    assert set(items) == {"a", "b", "c"}
    assert items["a"].location is ItemLocation.PENDING
    assert items["a"].dependencies == ["b"]
    assert items["b"].location is ItemLocation.DONE
    assert items["c"].location is ItemLocation.CLAIMED


def test_scan_of_missing_directory_is_empty(tmp_path: Path) -> None:
    assert PrdLayout(tmp_path / "missing").scan() == []


def test_scan_raises_when_directory_cannot_be_listed(tmp_path: Path, monkeypatch) -> None:
    layout = PrdLayout(tmp_path)

    def _denied() -> list[str]:
        raise PermissionError("denied")

    monkeypatch.setattr(layout, "pending_names", _denied)

    with pytest.raises(ProjectUnreadableError):
        layout.scan()


def test_moves_between_pending_and_done(tmp_path: Path, write_item) -> None:
    layout = PrdLayout(tmp_path)
    write_item(tmp_path, "a")

    layout.move_to_done("a")
    assert layout.done_path("a").exists()
    assert not layout.pending_path("a").exists()

    layout.move_to_pending("a")
    assert layout.pending_path("a").exists()
    assert not layout.done_path("a").exists()

    with pytest.raises(WorkItemNotFoundError):
        layout.move_to_pending("a")
