"""Data models for tracked sessions."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    UNKNOWN = "unknown"


@dataclass(slots=True)
class SessionRecord:
    """Registry entry mirroring one live tmux session.

    ``created_at``, ``last_accessed`` and ``last_health_check`` come from the
    registry's monotonic clock; ``started_at`` is wall-clock time for display.
    """

    session_id: str
    purpose: str
    created_at: float
    last_accessed: float
    started_at: datetime
    layout: str = "default"
    command_count: int = 0
    working_directory: str | None = None
    health_status: HealthStatus = HealthStatus.UNKNOWN
    last_health_check: float | None = None
    windows: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "purpose": self.purpose,
            "layout": self.layout,
            "started_at": self.started_at.isoformat(),
            "command_count": self.command_count,
            "working_directory": self.working_directory,
            "health_status": self.health_status.value,
            "windows": list(self.windows),
        }


@dataclass(slots=True)
class SessionHealth:
    """Point-in-time health snapshot for a session."""

    exists: bool
    healthy: bool = False
    session_id: str | None = None
    reason: str | None = None
    tracked: bool = False
    purpose: str = "unknown"
    age_minutes: float = 0.0
    idle_minutes: float = 0.0
    command_count: int = 0
    working_directory: str | None = None
    health_status: HealthStatus = HealthStatus.UNKNOWN
    last_health_check_seconds: float | None = None
    needs_cleanup: bool = False

    def to_dict(self) -> dict[str, Any]:
        if not self.exists:
            payload: dict[str, Any] = {"exists": False, "healthy": False}
            if self.session_id is not None:
                payload["session_id"] = self.session_id
            if self.reason:
                payload["reason"] = self.reason
            return payload
        return {
            "exists": True,
            "healthy": self.healthy,
            "session_id": self.session_id,
            "tracked": self.tracked,
            "purpose": self.purpose,
            "age_minutes": self.age_minutes,
            "idle_minutes": self.idle_minutes,
            "command_count": self.command_count,
            "working_directory": self.working_directory,
            "health_status": self.health_status.value,
            "last_health_check_seconds": self.last_health_check_seconds,
            "needs_cleanup": self.needs_cleanup,
        }


__all__ = ["HealthStatus", "SessionHealth", "SessionRecord"]
