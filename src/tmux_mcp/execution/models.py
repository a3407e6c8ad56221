"""Result and error types for command execution."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any


class ExecutionState(str, Enum):
    SUBMITTED = "submitted"
    AWAITING_COMPLETION = "awaiting_completion"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    SESSION_LOST = "session_lost"


class ExecutionError(RuntimeError):
    """Base class for failures of a single execution attempt."""

    recoverable = True

    def __init__(self, message: str, *, session_id: str | None = None, partial_output: str = "") -> None:
        super().__init__(message)
        self.session_id = session_id
        self.partial_output = partial_output


class CommandTimeoutError(ExecutionError):
    """The sentinel did not appear before the deadline; the session is still alive."""


class SessionLostError(ExecutionError):
    """The session disappeared while a command was in flight."""

    recoverable = False


class SendKeysError(ExecutionError):
    """The wrapped command could not be typed into the pane."""


@dataclass(slots=True)
class ExecutionResult:
    """Outcome of one ``execute_command`` call.

    ``exit_code`` is only meaningful when the completion marker was seen;
    timeouts, lost sessions and exhausted retries report ``-1``.
    """

    stdout: str
    stderr: str
    exit_code: int
    session_id: str
    execution_id: str
    working_directory: str | None = None
    attempts: int = 1
    error_type: str | None = None
    recoverable: bool | None = None

    @property
    def ok(self) -> bool:
        return self.error_type is None and self.exit_code == 0

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "stdout": self.stdout,
            "stderr": self.stderr,
            "exit_code": self.exit_code,
            "session_id": self.session_id,
            "execution_id": self.execution_id,
            "working_directory": self.working_directory,
            "attempts": self.attempts,
        }
        if self.error_type is not None:
            payload["error_type"] = self.error_type
            payload["recoverable"] = self.recoverable
        return payload


__all__ = [
    "CommandTimeoutError",
    "ExecutionError",
    "ExecutionResult",
    "ExecutionState",
    "SendKeysError",
    "SessionLostError",
]
