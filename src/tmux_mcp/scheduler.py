"""Background reaping of idle and unresponsive sessions."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .execution import CommandExecutor
from .sessions import HealthStatus, SessionError, SessionManager
from .tmux import TmuxError

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CleanupReport:
    """What one sweep did."""

    cleaned: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)
    stale_artifacts: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "cleaned": list(self.cleaned),
            "failed": dict(self.failed),
            "skipped": list(self.skipped),
            "stale_artifacts": self.stale_artifacts,
        }


class CleanupScheduler:
    """Periodically destroy sessions that are idle past the threshold or unhealthy.

    Only sessions with a registry record are considered, so sessions this
    process never created or adopted are left alone. Sessions with a
    command in flight are skipped until the next tick.
    """

    def __init__(
        self,
        manager: SessionManager,
        executor: CommandExecutor | None = None,
        *,
        interval: float = 600.0,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.manager = manager
        self.executor = executor
        self.interval = interval
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> CleanupReport:
        report = CleanupReport()
        for session_id in await self.manager.list_sessions():
            if session_id not in self.manager.registry:
                continue
            if self.executor is not None and self.executor.is_busy(session_id):
                report.skipped.append(session_id)
                continue
            try:
                health = await self.manager.get_session_health(session_id)
                if not health.exists:
                    continue
                unhealthy = health.health_status is HealthStatus.UNHEALTHY
                if not (health.needs_cleanup or unhealthy):
                    continue
                logger.info(
                    "Cleaning up session",
                    extra={
                        "session_id": session_id,
                        "reason": "unhealthy" if unhealthy else "idle",
                        "idle_minutes": health.idle_minutes,
                    },
                )
                if await self.manager.destroy_session(session_id):
                    report.cleaned.append(session_id)
                if self.executor is not None:
                    self.executor.forget_session(session_id)
            except (TmuxError, SessionError) as exc:
                report.failed[session_id] = str(exc)
                logger.error(
                    "Failed to clean up session",
                    extra={"session_id": session_id, "error": str(exc)},
                )

        report.stale_artifacts = len(self._sweep_artifacts())
        if report.cleaned:
            logger.info(
                "Background cleanup removed sessions",
                extra={"count": len(report.cleaned), "sessions": report.cleaned},
            )
        return report

    def _sweep_artifacts(self) -> list[Path]:
        if self.executor is None:
            return []
        return self.executor.sweep_stale_artifacts()

    def start(self) -> None:
        if self.running:
            return
        self._sweep_artifacts()
        self._task = asyncio.get_running_loop().create_task(self._loop(), name="tmux-mcp-cleanup")
        logger.info("Started background cleanup", extra={"interval": self.interval})

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Stopped background cleanup")

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.run_once()
            except Exception:
                logger.exception("Background cleanup failed")


__all__ = ["CleanupReport", "CleanupScheduler"]
