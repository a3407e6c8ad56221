from __future__ import annotations

import pytest
from pydantic import ValidationError

from tmux_mcp.search import NO_MATCHES, SearchOptions, search_output

SCROLLBACK = "\n".join(
    [
        "collecting",
        "test_a PASSED",
        "test_b FAILED",
        "trace line",
        "test_c PASSED",
        "test_d PASSED",
        "test_e PASSED",
        "test_f PASSED",
        "summary: 1 failed",
    ]
)


def test_groups_matches_with_context() -> None:
    result = search_output(SCROLLBACK, "FAILED|failed", context_lines=1)

    assert result == "2: test_a PASSED\n3: test_b FAILED\n4: trace line\n---\n8: test_f PASSED\n9: summary: 1 failed"


def test_overlapping_context_merges_into_one_group() -> None:
    result = search_output(SCROLLBACK, "test_[bc]", context_lines=1, include_line_numbers=False)

    assert result == "test_a PASSED\ntest_b FAILED\ntrace line\ntest_c PASSED\ntest_d PASSED"


def test_zero_context_and_no_matches() -> None:
    assert search_output(SCROLLBACK, "trace", context_lines=0) == "4: trace line"
    assert search_output(SCROLLBACK, "segfault") == NO_MATCHES


def test_invalid_pattern_is_reported() -> None:
    assert search_output(SCROLLBACK, "(unclosed").startswith("Search error:")


def test_options_validation() -> None:
    options = SearchOptions.model_validate({"pattern": "error"})
    assert options.context_lines == 2
    assert options.include_line_numbers is True

    with pytest.raises(ValidationError):
        SearchOptions.model_validate({"pattern": "error", "context_lines": -1})
