"""Optional persistence of execution history."""

from .chroma import EXECUTION_EVENT, LIFECYCLE_EVENT, ChromaStore, ChromaUnavailableError, HistoryEvent
from .models import ExecutionHistoryEntry

__all__ = [
    "EXECUTION_EVENT",
    "LIFECYCLE_EVENT",
    "ChromaStore",
    "ChromaUnavailableError",
    "ExecutionHistoryEntry",
    "HistoryEvent",
]
