"""Session lifecycle management on top of the tmux adapter."""

from __future__ import annotations

import asyncio
import logging
import re
import secrets
from pathlib import Path
from typing import Any, Awaitable, Callable, Mapping, Sequence

from ..artifacts import remove_artifacts, session_artifacts
from ..layouts import DEFAULT_LAYOUT, SessionLayout
from ..tmux import (
    TmuxAdapter,
    TmuxError,
    TmuxNotFoundError,
    TmuxServerNotRunningError,
    TmuxSessionNotFoundError,
)
from ..tmux.utils import session_target
from .models import HealthStatus, SessionHealth
from .registry import SessionRegistry

_SESSION_ID_RE = re.compile(r"[A-Za-z0-9_-]{1,64}")
_SHELLS = frozenset({"sh", "bash", "dash", "zsh", "ksh", "mksh", "ash", "fish", "tcsh", "csh"})

logger = logging.getLogger(__name__)


class SessionError(RuntimeError):
    """Base class for session lifecycle errors."""

    def __init__(self, message: str, *, session_id: str | None = None) -> None:
        super().__init__(message)
        self.session_id = session_id


class SessionNotFoundError(SessionError):
    """Raised when a session that must exist is missing."""


class SessionMisconfiguredError(SessionError):
    """Raised when a session lacks windows its layout requires."""

    def __init__(self, session_id: str, missing_windows: Sequence[str]) -> None:
        super().__init__(
            f"Session {session_id} is missing required windows: {', '.join(missing_windows)}",
            session_id=session_id,
        )
        self.missing_windows = list(missing_windows)


class SessionCreateError(SessionError):
    """Raised when session creation fails after all attempts."""

    def __init__(self, session_id: str, attempts: int, last_error: BaseException | None) -> None:
        super().__init__(
            f"Failed to create tmux session {session_id} after {attempts} attempts: {last_error}",
            session_id=session_id,
        )
        self.attempts = attempts
        self.last_error = last_error


class InvalidSessionIdError(SessionError, ValueError):
    """Raised for session ids tmux cannot address safely."""


class SessionManager:
    """Create, validate and destroy tmux sessions while keeping the registry in sync.

    Every managed tmux session is named ``<session_id><session_suffix>`` so
    sessions the user created by hand are never listed or reaped.
    """

    def __init__(
        self,
        adapter: TmuxAdapter,
        registry: SessionRegistry | None = None,
        *,
        layouts: Mapping[str, SessionLayout] | None = None,
        session_suffix: str = "-MCP",
        start_directory: str = "/tmp",
        artifact_dir: Path | None = None,
        create_attempts: int = 3,
        create_retry_delay: float = 0.5,
        idle_threshold_minutes: float = 30.0,
        health_check_interval: float = 300.0,
        probe_attempts: int = 10,
        probe_interval: float = 0.1,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        self.adapter = adapter
        self.registry = registry if registry is not None else SessionRegistry()
        self._layouts: dict[str, SessionLayout] = {DEFAULT_LAYOUT.id: DEFAULT_LAYOUT}
        if layouts:
            self._layouts.update(layouts)
        self._suffix = session_suffix
        self._start_directory = start_directory
        self._artifact_dir = artifact_dir
        self._create_attempts = create_attempts
        self._create_retry_delay = create_retry_delay
        self.idle_threshold_minutes = idle_threshold_minutes
        self.health_check_interval = health_check_interval
        self._probe_attempts = probe_attempts
        self._probe_interval = probe_interval
        self._sleep = sleep or asyncio.sleep

    @property
    def layouts(self) -> dict[str, SessionLayout]:
        return dict(self._layouts)

    @staticmethod
    def validate_session_id(session_id: Any) -> str:
        if not isinstance(session_id, str) or not _SESSION_ID_RE.fullmatch(session_id):
            raise InvalidSessionIdError(
                "Session ID must be 1-64 characters of letters, digits, '_' or '-'",
                session_id=session_id if isinstance(session_id, str) else None,
            )
        return session_id

    def tmux_name(self, session_id: str) -> str:
        return f"{session_id}{self._suffix}"

    def layout_for(self, session_id: str) -> SessionLayout:
        record = self.registry.get(session_id)
        if record is not None and record.layout in self._layouts:
            return self._layouts[record.layout]
        return DEFAULT_LAYOUT

    def execution_window(self, session_id: str) -> str:
        return self.layout_for(session_id).execution_window

    def target(self, session_id: str, window: str | None = None) -> str:
        return session_target(self.tmux_name(session_id), window or self.execution_window(session_id))

    def _resolve_layout(self, layout: str | None, session_id: str) -> SessionLayout:
        if layout is None:
            return self.layout_for(session_id)
        try:
            return self._layouts[layout]
        except KeyError:
            raise ValueError(
                f"Unknown layout '{layout}'. Available layouts: {', '.join(sorted(self._layouts))}"
            ) from None

    def _forget(self, session_id: str) -> None:
        if self.registry.delete(session_id):
            logger.info("Dropped stale registry entry", extra={"session_id": session_id})

    async def _probe_windows(self, session_id: str) -> list[str] | None:
        try:
            return await self.adapter.list_windows(self.tmux_name(session_id))
        except (TmuxSessionNotFoundError, TmuxServerNotRunningError) as exc:
            logger.debug(
                "Session probe failed",
                extra={"session_id": session_id, "error": str(exc)},
            )
            self._forget(session_id)
            return None

    async def session_exists(self, session_id: str) -> bool:
        """Return whether the tmux session is live, dropping stale registry entries."""

        try:
            self.validate_session_id(session_id)
        except InvalidSessionIdError:
            return False
        return await self._probe_windows(session_id) is not None

    async def validate_session(
        self, session_id: str, *, layout: SessionLayout | None = None
    ) -> list[str]:
        """Return the session's windows, or raise if it is missing or misconfigured."""

        self.validate_session_id(session_id)
        windows = await self._probe_windows(session_id)
        if windows is None:
            raise SessionNotFoundError(f"Session {session_id} not found", session_id=session_id)
        expected = layout or self.layout_for(session_id)
        missing = [name for name in expected.window_names if name not in windows]
        if missing:
            raise SessionMisconfiguredError(session_id, missing)
        self.registry.upsert(session_id, windows=windows)
        return windows

    async def create_session(
        self,
        session_id: str | None = None,
        purpose: str = "general",
        layout: str | None = None,
    ) -> str:
        """Create a session, or refresh it if a correctly configured one already exists."""

        if session_id is None:
            session_id = f"mcp_{secrets.token_hex(4)}"
        self.validate_session_id(session_id)
        chosen = self._resolve_layout(layout, session_id)

        try:
            windows = await self.validate_session(session_id, layout=chosen)
        except SessionNotFoundError:
            pass
        except SessionMisconfiguredError as exc:
            logger.warning(
                "Recreating misconfigured session",
                extra={"session_id": session_id, "missing_windows": exc.missing_windows},
            )
            await self.destroy_session(session_id)
        else:
            self.registry.upsert(
                session_id,
                default=lambda: self.registry.new_record(
                    session_id, purpose=purpose, layout=chosen.id, windows=windows
                ),
                last_accessed=self.registry.now(),
            )
            logger.debug("Session already exists", extra={"session_id": session_id})
            return session_id

        last_error: BaseException | None = None
        for attempt in range(1, self._create_attempts + 1):
            try:
                await self._create_backend_session(session_id, chosen)
                windows = await self.validate_session(session_id, layout=chosen)
            except TmuxNotFoundError:
                raise
            except (TmuxError, SessionError) as exc:
                last_error = exc
                logger.warning(
                    "Failed to create tmux session",
                    extra={"session_id": session_id, "attempt": attempt, "error": str(exc)},
                )
                if attempt < self._create_attempts:
                    await self._discard_partial_session(session_id)
                    await self._sleep(self._create_retry_delay)
                continue

            self.registry.delete(session_id)
            self.registry.upsert(
                session_id,
                default=lambda: self.registry.new_record(
                    session_id,
                    purpose=purpose,
                    layout=chosen.id,
                    windows=windows,
                    working_directory=self._window_directory(chosen, 0),
                ),
            )
            logger.info(
                "Created tmux session",
                extra={"session_id": session_id, "purpose": purpose, "layout": chosen.id},
            )
            return session_id

        raise SessionCreateError(session_id, self._create_attempts, last_error)

    async def ensure_session(self, session_id: str, purpose: str = "general") -> str:
        """Create the session if needed and make sure the registry tracks it.

        Sessions that outlived a previous server, or were started by hand under
        the managed name, are adopted with a fresh record.
        """

        return await self.create_session(session_id, purpose)

    def _window_directory(self, layout: SessionLayout, index: int) -> str:
        return layout.windows[index].start_directory or layout.start_directory or self._start_directory

    async def _create_backend_session(self, session_id: str, layout: SessionLayout) -> None:
        name = self.tmux_name(session_id)
        await self.adapter.new_session(name, layout.windows[0].name, self._window_directory(layout, 0))
        for index, window in enumerate(layout.windows[1:], start=1):
            await self.adapter.new_window(name, window.name, self._window_directory(layout, index))

    async def _discard_partial_session(self, session_id: str) -> None:
        try:
            await self.adapter.kill_session(self.tmux_name(session_id))
        except TmuxNotFoundError:
            raise
        except TmuxError:
            logger.debug("No partial session to discard", extra={"session_id": session_id})

    async def destroy_session(self, session_id: str, *, must_exist: bool = False) -> bool:
        """Kill a session and drop its record and artifacts.

        Returns ``False`` when tmux no longer has the session, unless
        ``must_exist`` is set, in which case ``SessionNotFoundError`` is raised.
        """

        self.validate_session_id(session_id)
        if not await self.session_exists(session_id):
            self._remove_session_artifacts(session_id)
            if must_exist:
                raise SessionNotFoundError(
                    f"Session {session_id} not found. Cannot destroy a nonexistent session.",
                    session_id=session_id,
                )
            return False

        try:
            await self.adapter.kill_session(self.tmux_name(session_id))
        except TmuxSessionNotFoundError:
            logger.info("Session vanished before kill", extra={"session_id": session_id})
            self._forget(session_id)
            self._remove_session_artifacts(session_id)
            if must_exist:
                raise SessionNotFoundError(
                    f"Session {session_id} was destroyed concurrently", session_id=session_id
                ) from None
            return False

        self.registry.delete(session_id)
        self._remove_session_artifacts(session_id)
        logger.info("Destroyed tmux session", extra={"session_id": session_id})
        return True

    def _remove_session_artifacts(self, session_id: str) -> None:
        if self._artifact_dir is not None:
            remove_artifacts(session_artifacts(self._artifact_dir, session_id))

    async def list_sessions(self) -> list[str]:
        """Return ids of live sessions managed by this server."""

        names = await self.adapter.list_sessions()
        if not self._suffix:
            return names
        return [
            name[: -len(self._suffix)]
            for name in names
            if name.endswith(self._suffix) and len(name) > len(self._suffix)
        ]

    async def list_windows(self, session_id: str) -> list[str]:
        self.validate_session_id(session_id)
        return await self._probe_windows(session_id) or []

    async def list_workspaces(self) -> list[dict[str, Any]]:
        workspaces: list[dict[str, Any]] = []
        for session_id in await self.list_sessions():
            if not _SESSION_ID_RE.fullmatch(session_id):
                continue
            windows = await self.list_windows(session_id)
            record = self.registry.get(session_id)
            entry: dict[str, Any] = {"session_id": session_id, "windows": windows, "tracked": record is not None}
            if record is not None:
                entry.update(
                    purpose=record.purpose,
                    command_count=record.command_count,
                    working_directory=record.working_directory,
                    health_status=record.health_status.value,
                )
            workspaces.append(entry)
        return workspaces

    async def create_window(self, session_id: str, window: str) -> bool:
        """Ensure ``window`` exists in the session, creating the session if needed."""

        if not window or any(char in window for char in ".:"):
            raise ValueError("Window name must be non-empty and must not contain '.' or ':'")
        await self.ensure_session(session_id)
        windows = await self.list_windows(session_id)
        if window in windows:
            return False
        record = self.registry.get(session_id)
        directory = (record.working_directory if record else None) or self._start_directory
        await self.adapter.new_window(self.tmux_name(session_id), window, directory)
        self.registry.upsert(session_id, windows=[*windows, window])
        logger.info("Created window", extra={"session_id": session_id, "window": window})
        return True

    async def submit(self, session_id: str, text: str, window: str | None = None) -> None:
        """Type ``text`` into a window and press Enter, without existence checks."""

        await self.adapter.send_keys(self.target(session_id, window), text, "C-m")

    async def send_keys(
        self,
        session_id: str,
        window: str,
        keys: Sequence[str],
        *,
        literal: bool = False,
    ) -> None:
        if not keys:
            raise ValueError("At least one key is required")
        await self.create_window(session_id, window)
        await self.adapter.send_keys(self.target(session_id, window), *keys, literal=literal)
        self.touch(session_id)

    async def send_input(self, session_id: str, window: str, text: str) -> None:
        """Type ``text`` literally and press Enter."""

        await self.create_window(session_id, window)
        target = self.target(session_id, window)
        if text:
            await self.adapter.send_keys(target, text, literal=True)
        await self.adapter.send_keys(target, "Enter")
        self.touch(session_id)

    async def capture_pane(self, session_id: str, window: str | None = None, lines: int | None = None) -> str:
        if lines is not None and lines <= 0:
            raise ValueError("lines must be a positive integer")
        window = window or self.execution_window(session_id)
        await self.create_window(session_id, window)
        output = await self.adapter.capture_pane(self.target(session_id, window), lines)
        self.touch(session_id)
        return output

    def touch(self, session_id: str) -> None:
        self.registry.upsert(session_id, last_accessed=self.registry.now())

    async def probe_session(self, session_id: str) -> bool:
        """Echo a unique tag into the execution window and wait for it to appear."""

        tag = f"tmux_mcp_probe_{secrets.token_hex(4)}"
        target = self.target(session_id)
        healthy = False
        try:
            await self.adapter.send_keys(target, f"echo {tag}", "C-m")
            for _ in range(self._probe_attempts):
                await self._sleep(self._probe_interval)
                output = await self.adapter.capture_pane(target, 50)
                if any(line.strip() == tag for line in output.splitlines()):
                    healthy = True
                    break
        except TmuxNotFoundError:
            raise
        except TmuxError as exc:
            logger.warning(
                "Health probe failed",
                extra={"session_id": session_id, "error": str(exc)},
            )

        self.registry.upsert(
            session_id,
            health_status=HealthStatus.HEALTHY if healthy else HealthStatus.UNHEALTHY,
            last_health_check=self.registry.now(),
        )
        if not healthy:
            logger.warning("Session unresponsive", extra={"session_id": session_id})
        return healthy

    async def _shell_in_foreground(self, session_id: str) -> bool:
        """Return whether the execution window is sitting at a shell prompt."""

        try:
            command = await self.adapter.pane_current_command(self.target(session_id))
        except TmuxNotFoundError:
            raise
        except TmuxError as exc:
            logger.debug(
                "Could not read foreground command",
                extra={"session_id": session_id, "error": str(exc)},
            )
            return True
        return Path(command.lstrip("-")).name in _SHELLS

    async def get_session_health(self, session_id: str, *, probe: bool = True) -> SessionHealth:
        """Return a health snapshot, probing the session when a check is due.

        The probe types into the execution window, so it is skipped when
        ``probe`` is false or a program other than the shell owns the
        foreground. The last known status is reported in that case.
        """

        try:
            self.validate_session_id(session_id)
        except InvalidSessionIdError as exc:
            return SessionHealth(exists=False, reason=str(exc))

        if not await self.session_exists(session_id):
            return SessionHealth(exists=False, session_id=session_id, reason="Session does not exist")

        record = self.registry.get(session_id)
        if record is None:
            return SessionHealth(exists=True, session_id=session_id, tracked=False)

        now = self.registry.now()
        due = record.last_health_check is None or now - record.last_health_check > self.health_check_interval
        if due and probe:
            if await self._shell_in_foreground(session_id):
                await self.probe_session(session_id)
            else:
                logger.debug("Skipping probe of busy window", extra={"session_id": session_id})

        idle_minutes = (now - record.last_accessed) / 60
        return SessionHealth(
            exists=True,
            healthy=record.health_status is HealthStatus.HEALTHY,
            session_id=session_id,
            tracked=True,
            purpose=record.purpose,
            age_minutes=round((now - record.created_at) / 60, 1),
            idle_minutes=round(idle_minutes, 1),
            command_count=record.command_count,
            working_directory=record.working_directory,
            health_status=record.health_status,
            last_health_check_seconds=(
                round(now - record.last_health_check, 1) if record.last_health_check is not None else None
            ),
            needs_cleanup=idle_minutes > self.idle_threshold_minutes,
        )

    async def record_command_execution(self, session_id: str, working_directory: str | None = None) -> None:
        """Bump usage counters for a tracked session and remember its cwd."""

        record = self.registry.get(session_id)
        if record is None:
            return
        if working_directory is None:
            try:
                working_directory = await self.adapter.pane_current_path(self.target(session_id)) or None
            except TmuxError as exc:
                logger.warning(
                    "Could not retrieve working directory",
                    extra={"session_id": session_id, "error": str(exc)},
                )
        updates: dict[str, Any] = {
            "last_accessed": self.registry.now(),
            "command_count": record.command_count + 1,
        }
        if working_directory:
            updates["working_directory"] = working_directory
        self.registry.upsert(session_id, **updates)

    async def cleanup_all_sessions(self) -> list[str]:
        destroyed: list[str] = []
        for session_id in self.registry.ids():
            try:
                if await self.destroy_session(session_id):
                    destroyed.append(session_id)
            except (TmuxError, SessionError) as exc:
                logger.error(
                    "Failed to destroy session",
                    extra={"session_id": session_id, "error": str(exc)},
                )
        return destroyed


__all__ = [
    "InvalidSessionIdError",
    "SessionCreateError",
    "SessionError",
    "SessionManager",
    "SessionMisconfiguredError",
    "SessionNotFoundError",
]
