"""In-memory registry of tracked sessions."""

from __future__ import annotations

import time
from dataclasses import fields
from datetime import datetime, timezone
from typing import Any, Callable, Iterator

from .models import HealthStatus, SessionRecord

_RECORD_FIELDS = frozenset(f.name for f in fields(SessionRecord))


class SessionRegistry:
    """Map of session id to ``SessionRecord``.

    The registry is a cache of tmux state. It never talks to tmux itself;
    callers validate a session before asking for a record to be created.
    """

    def __init__(
        self,
        *,
        clock: Callable[[], float] | None = None,
        wall_clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._clock = clock or time.monotonic
        self._wall_clock = wall_clock or (lambda: datetime.now(timezone.utc))
        self._records: dict[str, SessionRecord] = {}

    def now(self) -> float:
        return self._clock()

    def new_record(
        self,
        session_id: str,
        *,
        purpose: str = "general",
        layout: str = "default",
        windows: list[str] | None = None,
        working_directory: str | None = None,
        health_status: HealthStatus = HealthStatus.HEALTHY,
    ) -> SessionRecord:
        now = self._clock()
        return SessionRecord(
            session_id=session_id,
            purpose=purpose,
            created_at=now,
            last_accessed=now,
            started_at=self._wall_clock(),
            layout=layout,
            working_directory=working_directory,
            health_status=health_status,
            last_health_check=now,
            windows=list(windows or []),
        )

    def get(self, session_id: str) -> SessionRecord | None:
        return self._records.get(session_id)

    def upsert(
        self,
        session_id: str,
        *,
        default: Callable[[], SessionRecord] | None = None,
        **updates: Any,
    ) -> SessionRecord | None:
        """Apply ``updates`` to a record.

        A missing record is only created when ``default`` is given; otherwise
        the call is a no-op returning ``None``.
        """

        unknown = set(updates) - _RECORD_FIELDS
        if unknown:
            raise AttributeError(f"Unknown session record fields: {sorted(unknown)}")

        record = self._records.get(session_id)
        if record is None:
            if default is None:
                return None
            record = default()
            self._records[session_id] = record
        for key, value in updates.items():
            setattr(record, key, value)
        return record

    def delete(self, session_id: str) -> bool:
        return self._records.pop(session_id, None) is not None

    def ids(self) -> list[str]:
        return list(self._records)

    def records(self) -> list[SessionRecord]:
        return list(self._records.values())

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._records

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._records))


__all__ = ["SessionRegistry"]
