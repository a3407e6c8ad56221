"""Command execution inside managed sessions."""

from .engine import CommandExecutor, recovery_suggestion
from .models import (
    CommandTimeoutError,
    ExecutionError,
    ExecutionResult,
    ExecutionState,
    SendKeysError,
    SessionLostError,
)
from .protocol import EXIT_MARKER, CaptureSplit, split_capture_artifact, wrap_command

__all__ = [
    "EXIT_MARKER",
    "CaptureSplit",
    "CommandExecutor",
    "CommandTimeoutError",
    "ExecutionError",
    "ExecutionResult",
    "ExecutionState",
    "SendKeysError",
    "SessionLostError",
    "recovery_suggestion",
    "split_capture_artifact",
    "wrap_command",
]
