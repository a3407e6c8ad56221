"""tmux subprocess adapter."""

from .adapter import (
    FakeTmuxAdapter,
    TmuxAdapter,
    TmuxCommandError,
    TmuxError,
    TmuxNotFoundError,
    TmuxResult,
    TmuxServerNotRunningError,
    TmuxSessionNotFoundError,
    TmuxTimeoutError,
)

__all__ = [
    "FakeTmuxAdapter",
    "TmuxAdapter",
    "TmuxCommandError",
    "TmuxError",
    "TmuxNotFoundError",
    "TmuxResult",
    "TmuxServerNotRunningError",
    "TmuxSessionNotFoundError",
    "TmuxTimeoutError",
]
