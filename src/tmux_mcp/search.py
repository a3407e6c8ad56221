"""Regex search over captured pane output."""

from __future__ import annotations

import re

from pydantic import BaseModel, Field

NO_MATCHES = "No matches found"


class SearchOptions(BaseModel):
    """Parameters accepted by the ``search`` argument of ``get_output``."""

    pattern: str = Field(..., description='Python regex, without delimiters (e.g. "error|warning").')
    context_lines: int = Field(default=2, ge=0, description="Lines shown before and after each match.")
    include_line_numbers: bool = Field(
        default=True,
        description="Prefix lines with their 1-based position from the top of the scrollback.",
    )


def search_output(
    text: str,
    pattern: str,
    context_lines: int = 2,
    include_line_numbers: bool = True,
) -> str:
    """Return matching lines with context, contiguous runs grouped and separated by ``---``."""

    try:
        regex = re.compile(pattern)
    except re.error as exc:
        return f"Search error: {exc}"

    lines = text.split("\n")
    context_lines = max(0, context_lines)
    selected: set[int] = set()
    for index, line in enumerate(lines):
        if regex.search(line):
            start = max(0, index - context_lines)
            stop = min(len(lines) - 1, index + context_lines)
            selected.update(range(start, stop + 1))

    groups: list[list[str]] = []
    previous = -2
    for index in sorted(selected):
        if index - previous > 1:
            groups.append([])
        groups[-1].append(f"{index + 1}: {lines[index]}" if include_line_numbers else lines[index])
        previous = index

    if not groups:
        return NO_MATCHES
    return "\n---\n".join("\n".join(group) for group in groups)


__all__ = ["NO_MATCHES", "SearchOptions", "search_output"]
