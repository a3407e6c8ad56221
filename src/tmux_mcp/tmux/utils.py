"""Utility helpers for the tmux adapter."""

from __future__ import annotations

import os
from typing import Mapping

# Inherited from a parent tmux client; tmux refuses nested clients while they are set.
_SANITIZED_VARS = {
    "TMUX",
    "TMUX_PANE",
}


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return a sanitized environment suitable for tmux subprocess execution."""

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env


def session_target(session_name: str, window: str | None = None) -> str:
    """Build a tmux target string, optionally scoped to a window."""

    if window is None:
        return session_name
    return f"{session_name}:{window}"


def split_lines(output: str) -> list[str]:
    return [line.strip() for line in output.splitlines() if line.strip()]
