"""Parse ``Depends on:`` declarations from PRD markdown."""

from __future__ import annotations

import re
from collections.abc import Iterable

DEPENDS_ON_PATTERN = re.compile(r"(?:\*\*)?Depends on:(?:\*\*)?[^\S\n]*([^\n]*)", re.IGNORECASE)


def parse_dependencies(content: str) -> list[str]:
    """Return dependency names from the first ``Depends on:`` line.

    Accepts optional bold markers around the label, backticks, bold text and
    table pipes around names, and a trailing ``.md``.
    """

    match = DEPENDS_ON_PATTERN.search(content)
    if match is None:
        return []
    names: list[str] = []
    for part in match.group(1).split(","):
        name = part.replace("`", "").replace("**", "").replace("|", "").strip()
        if name.endswith(".md"):
            name = name[: -len(".md")].strip()
        if name and name not in names:
            names.append(name)
    return names


def unmet_dependencies(dependencies: Iterable[str], done_names: set[str]) -> list[str]:
    return [name for name in dependencies if name not in done_names]
