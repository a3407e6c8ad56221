"""Chroma-backed execution history."""

from __future__ import annotations

import json
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Iterable, Protocol

from .models import ExecutionHistoryEntry

if TYPE_CHECKING:
    from ..execution import ExecutionResult

EXECUTION_EVENT = "command_execution"
LIFECYCLE_EVENT = "session_lifecycle"

_OUTPUT_PREVIEW_CHARS = 2000


class ChromaUnavailableError(RuntimeError):
    """Raised when the Chroma client cannot be constructed."""


class CollectionProtocol(Protocol):
    """The slice of the Chroma collection API the history store relies on."""

    def add(
        self,
        *,
        documents: Iterable[str],
        metadatas: Iterable[dict[str, Any]],
        ids: Iterable[str],
    ) -> None:
        ...

    def get(
        self,
        *,
        ids: Iterable[str] | None = None,
        where: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> dict[str, list[Any]]:
        ...


class ClientProtocol(Protocol):
    def get_or_create_collection(self, name: str) -> CollectionProtocol:
        ...


@dataclass(slots=True)
class HistoryEvent:
    """One stored document plus its metadata."""

    id: str
    session_id: str
    event_type: str
    document: str
    metadata: dict[str, Any]
    timestamp: datetime


def _where(filters: dict[str, Any] | None) -> dict[str, Any] | None:
    # Chroma only accepts a single field per where clause unless combined with $and.
    if not filters:
        return None
    if len(filters) == 1:
        return dict(filters)
    return {"$and": [{key: value} for key, value in filters.items()]}


def _scalar_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    # Chroma metadata values must be str, int, float or bool.
    cleaned: dict[str, Any] = {}
    for key, value in metadata.items():
        if value is None:
            continue
        cleaned[key] = value if isinstance(value, (str, int, float, bool)) else json.dumps(value)
    return cleaned


class ChromaStore:
    """Record command executions and session lifecycle events in ChromaDB.

    The client is created lazily on first use, so constructing a store never
    touches the filesystem. ``chromadb`` is an optional dependency; without it
    the first call raises ``ChromaUnavailableError``.
    """

    def __init__(
        self,
        path: Path,
        *,
        collection_name: str = "tmux_mcp_history",
        client_factory: Callable[[], ClientProtocol] | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._path = Path(path)
        self._collection_name = collection_name
        self._client_factory = client_factory or self._default_client_factory
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._client: ClientProtocol | None = None
        self._collection: CollectionProtocol | None = None
        self._counters: dict[str, int] = defaultdict(int)

    @property
    def path(self) -> Path:
        return self._path

    def _default_client_factory(self) -> ClientProtocol:
        try:
            import chromadb
        except ImportError as exc:  # pragma: no cover - depends on environment
            raise ChromaUnavailableError(
                "chromadb package is not installed; install tmux-mcp with the persistence extra"
            ) from exc

        self._path.mkdir(parents=True, exist_ok=True)
        return chromadb.PersistentClient(path=str(self._path))

    def _ensure_collection(self) -> CollectionProtocol:
        if self._collection is None:
            client = self._client or self._client_factory()
            self._client = client
            self._collection = client.get_or_create_collection(self._collection_name)
        return self._collection

    def _convert_result(self, result: dict[str, list[Any]]) -> list[HistoryEvent]:
        events: list[HistoryEvent] = []
        for event_id, document, metadata in zip(
            result.get("ids") or [], result.get("documents") or [], result.get("metadatas") or []
        ):
            metadata = dict(metadata or {})
            timestamp_raw = metadata.get("timestamp")
            timestamp = (
                datetime.fromisoformat(timestamp_raw) if isinstance(timestamp_raw, str) else self._clock()
            )
            events.append(
                HistoryEvent(
                    id=event_id,
                    session_id=metadata.get("session_id", ""),
                    event_type=metadata.get("event_type", ""),
                    document=document or "",
                    metadata=metadata,
                    timestamp=timestamp,
                )
            )
        events.sort(key=lambda event: (event.timestamp, event.metadata.get("sequence", 0)))
        return events

    def ping(self) -> bool:
        """Verify that the underlying collection can be obtained."""

        self._ensure_collection()
        return True

    def record_event(
        self,
        *,
        session_id: str,
        event_type: str,
        body: Any,
        metadata: dict[str, Any] | None = None,
    ) -> HistoryEvent:
        collection = self._ensure_collection()
        self._counters[session_id] += 1
        event_id = f"{session_id}:{uuid.uuid4().hex}"
        timestamp = self._clock()

        document = body if isinstance(body, str) else json.dumps(body)
        record_metadata = {
            "session_id": session_id,
            "event_type": event_type,
            "timestamp": timestamp.isoformat(),
            "sequence": self._counters[session_id],
        }
        if metadata:
            record_metadata.update(_scalar_metadata(metadata))

        collection.add(documents=[document], metadatas=[record_metadata], ids=[event_id])
        return HistoryEvent(
            id=event_id,
            session_id=session_id,
            event_type=event_type,
            document=document,
            metadata=record_metadata,
            timestamp=timestamp,
        )

    def record_execution(self, result: ExecutionResult, command: str) -> ExecutionHistoryEntry:
        """Store one execution; stdout is truncated to a preview."""

        payload = {
            "command": command,
            "exit_code": result.exit_code,
            "execution_id": result.execution_id,
            "working_directory": result.working_directory,
            "attempts": result.attempts,
            "error_type": result.error_type,
            "stdout": result.stdout[-_OUTPUT_PREVIEW_CHARS:],
        }
        event = self.record_event(
            session_id=result.session_id,
            event_type=EXECUTION_EVENT,
            body=payload,
            metadata={
                "exit_code": result.exit_code,
                "execution_id": result.execution_id,
                "error_type": result.error_type,
            },
        )
        return ExecutionHistoryEntry.from_payload(result.session_id, payload, event.timestamp)

    def record_lifecycle(self, session_id: str, action: str, **details: Any) -> HistoryEvent:
        return self.record_event(
            session_id=session_id,
            event_type=LIFECYCLE_EVENT,
            body={"action": action, **details},
            metadata={"action": action},
        )

    def fetch_session_events(self, session_id: str, *, limit: int | None = None) -> list[HistoryEvent]:
        events = self.search_events(filters={"session_id": session_id})
        return events[-limit:] if limit else events

    def list_executions(
        self, session_id: str | None = None, *, limit: int | None = None
    ) -> list[ExecutionHistoryEntry]:
        """Return executions oldest first; ``limit`` keeps the most recent ones."""

        filters: dict[str, Any] = {"event_type": EXECUTION_EVENT}
        if session_id:
            filters["session_id"] = session_id
        entries = [
            ExecutionHistoryEntry.from_payload(event.session_id, json.loads(event.document), event.timestamp)
            for event in self.search_events(filters=filters)
        ]
        return entries[-limit:] if limit else entries

    def search_events(
        self,
        query: str | None = None,
        *,
        filters: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[HistoryEvent]:
        collection = self._ensure_collection()
        events = self._convert_result(collection.get(where=_where(filters)))
        if query:
            needle = query.lower()
            events = [
                event
                for event in events
                if needle in event.document.lower()
                or any(needle in str(value).lower() for value in event.metadata.values())
            ]
        return events[:limit] if limit else events


__all__ = [
    "EXECUTION_EVENT",
    "LIFECYCLE_EVENT",
    "ChromaStore",
    "ChromaUnavailableError",
    "HistoryEvent",
]
