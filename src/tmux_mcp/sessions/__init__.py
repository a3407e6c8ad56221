"""Session registry and lifecycle management."""

from .manager import (
    InvalidSessionIdError,
    SessionCreateError,
    SessionError,
    SessionManager,
    SessionMisconfiguredError,
    SessionNotFoundError,
)
from .models import HealthStatus, SessionHealth, SessionRecord
from .registry import SessionRegistry

__all__ = [
    "HealthStatus",
    "InvalidSessionIdError",
    "SessionCreateError",
    "SessionError",
    "SessionHealth",
    "SessionManager",
    "SessionMisconfiguredError",
    "SessionNotFoundError",
    "SessionRecord",
    "SessionRegistry",
]
