"""Data models for persisted execution history."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any


@dataclass(slots=True)
class ExecutionHistoryEntry:
    session_id: str
    command: str
    exit_code: int
    execution_id: str
    recorded_at: datetime
    working_directory: str | None = None
    attempts: int = 1
    error_type: str | None = None
    stdout: str = ""

    @classmethod
    def from_payload(cls, session_id: str, payload: dict[str, Any], recorded_at: datetime) -> "ExecutionHistoryEntry":
        return cls(
            session_id=session_id,
            command=payload.get("command", ""),
            exit_code=int(payload.get("exit_code", -1)),
            execution_id=payload.get("execution_id", ""),
            recorded_at=recorded_at,
            working_directory=payload.get("working_directory"),
            attempts=int(payload.get("attempts", 1)),
            error_type=payload.get("error_type"),
            stdout=payload.get("stdout", ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "command": self.command,
            "exit_code": self.exit_code,
            "execution_id": self.execution_id,
            "recorded_at": self.recorded_at.isoformat(),
            "working_directory": self.working_directory,
            "attempts": self.attempts,
            "error_type": self.error_type,
            "stdout": self.stdout,
        }


__all__ = ["ExecutionHistoryEntry"]
