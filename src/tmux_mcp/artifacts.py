"""Per-execution files exchanged with the shell running inside tmux."""

from __future__ import annotations

import logging
import re
import secrets
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

ARTIFACT_PREFIX = "tmux_mcp_"
_SUFFIXES = (".out", ".done", ".cwd")

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ExecutionArtifacts:
    """Paths used by one wrapped command.

    ``capture`` receives combined output plus the exit-status line,
    ``sentinel`` is created last and only its existence matters, and
    ``cwd`` records the directory the command finished in.
    """

    execution_id: str
    capture: Path
    sentinel: Path
    cwd: Path

    @property
    def paths(self) -> tuple[Path, Path, Path]:
        return (self.capture, self.sentinel, self.cwd)


def new_execution_id() -> str:
    return secrets.token_hex(6)


def new_artifacts(directory: Path, session_id: str, kind: str = "exec") -> ExecutionArtifacts:
    """Allocate collision-resistant artifact paths namespaced by session."""

    execution_id = new_execution_id()
    stem = f"{ARTIFACT_PREFIX}{session_id}_{kind}_{execution_id}"
    return ExecutionArtifacts(
        execution_id=execution_id,
        capture=directory / f"{stem}.out",
        sentinel=directory / f"{stem}.done",
        cwd=directory / f"{stem}.cwd",
    )


def session_artifacts(directory: Path, session_id: str) -> list[Path]:
    """Return every artifact currently on disk for ``session_id``."""

    if not directory.is_dir():
        return []
    own = re.compile(rf"^{ARTIFACT_PREFIX}{re.escape(session_id)}_[a-z]+_[0-9a-f]{{12}}$")
    return sorted(
        path
        for path in directory.glob(f"{ARTIFACT_PREFIX}{session_id}_*")
        if path.suffix in _SUFFIXES and own.match(path.stem)
    )


def remove_artifacts(paths: Iterable[Path]) -> None:
    """Best-effort deletion that tolerates files that are already gone."""

    for path in paths:
        try:
            path.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Failed to remove artifact", extra={"path": str(path), "error": str(exc)})


def sweep_stale_artifacts(
    directory: Path,
    max_age_seconds: float,
    *,
    now: float | None = None,
) -> list[Path]:
    """Delete artifacts whose modification time is older than ``max_age_seconds``."""

    if not directory.is_dir():
        return []
    cutoff = (now if now is not None else time.time()) - max_age_seconds
    removed: list[Path] = []
    for path in directory.glob(f"{ARTIFACT_PREFIX}*"):
        if path.suffix not in _SUFFIXES:
            continue
        try:
            if path.stat().st_mtime >= cutoff:
                continue
            path.unlink()
        except FileNotFoundError:
            continue
        except OSError as exc:
            logger.warning("Failed to sweep artifact", extra={"path": str(path), "error": str(exc)})
            continue
        removed.append(path)
    if removed:
        logger.info("Swept stale artifacts", extra={"count": len(removed), "directory": str(directory)})
    return removed


__all__ = [
    "ARTIFACT_PREFIX",
    "ExecutionArtifacts",
    "new_artifacts",
    "new_execution_id",
    "remove_artifacts",
    "session_artifacts",
    "sweep_stale_artifacts",
]
