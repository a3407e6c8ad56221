"""Command execution engine built on the sentinel-file protocol."""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from collections import Counter
from pathlib import Path
from typing import Any, Awaitable, Callable

from ..artifacts import new_artifacts, remove_artifacts, sweep_stale_artifacts
from ..sessions import SessionError, SessionManager
from ..tmux import TmuxError, TmuxNotFoundError, TmuxServerNotRunningError, TmuxSessionNotFoundError
from .models import (
    CommandTimeoutError,
    ExecutionError,
    ExecutionResult,
    ExecutionState,
    SendKeysError,
    SessionLostError,
)
from .protocol import split_capture_artifact, wrap_command

logger = logging.getLogger(__name__)

_TIMEOUT_WARNING_RATIO = 0.7


def recovery_suggestion(error: BaseException) -> str:
    """Return guidance for a failed execution, phrased for the calling agent."""

    if isinstance(error, CommandTimeoutError):
        return "Increase the timeout for long-running commands (builds, installs, etc.)"
    if isinstance(error, SessionLostError):
        return (
            "The tmux session was terminated while the command ran. This might indicate "
            "an external issue or a problem with the command itself."
        )
    if isinstance(error, TmuxNotFoundError):
        return str(error)
    if isinstance(error, TmuxServerNotRunningError):
        return "The tmux server may not be running. Try creating a new session with create_session."
    if isinstance(error, (SendKeysError, TmuxSessionNotFoundError)):
        return "Check that the session exists. Use session_health to verify session state."
    return "Check command syntax and session state. Use list_sessions to see available sessions."


class CommandExecutor:
    """Run shell commands inside managed sessions and wait for them to finish.

    Executions against one session are serialized with a per-session lock;
    different sessions run concurrently on the same event loop.
    """

    def __init__(
        self,
        manager: SessionManager,
        *,
        artifact_dir: Path,
        poll_interval: float = 0.1,
        max_retries: int = 2,
        retry_delay: float = 1.0,
        default_timeout: float = 30.0,
        default_session: str = "default",
        health_check_timeout: float = 3.0,
        stale_artifact_age: float = 1800.0,
        clock: Callable[[], float] | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        self.manager = manager
        self.artifact_dir = Path(artifact_dir)
        self.poll_interval = poll_interval
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.default_timeout = default_timeout
        self.default_session = default_session
        self.health_check_timeout = health_check_timeout
        self.stale_artifact_age = stale_artifact_age
        self._clock = clock or time.monotonic
        self._sleep = sleep or asyncio.sleep
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: Counter[str] = Counter()

    def is_busy(self, session_id: str) -> bool:
        lock = self._locks.get(session_id)
        return lock is not None and lock.locked()

    def _lock_for(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    def forget_session(self, session_id: str) -> None:
        """Drop the lock of a destroyed session unless an execution still uses it."""

        if self._lock_users[session_id] or self.is_busy(session_id):
            return
        self._locks.pop(session_id, None)

    async def execute_command(
        self,
        command: str,
        session_id: str | None = None,
        timeout: float | None = None,
    ) -> ExecutionResult:
        """Run ``command`` and return its output, exit code and working directory.

        Failures after the retry budget is spent come back as a result with
        ``exit_code == -1`` and ``error_type`` set; only invalid arguments
        raise.
        """

        if not isinstance(command, str) or not command.strip():
            raise ValueError("Command must be a non-empty string")
        if timeout is None:
            timeout = self.default_timeout
        if timeout <= 0:
            raise ValueError("Timeout must be a positive number of seconds")
        session_id = self.manager.validate_session_id(session_id or self.default_session)

        lock = self._lock_for(session_id)
        self._lock_users[session_id] += 1
        try:
            async with lock:
                return await self._execute_with_retries(command, session_id, float(timeout))
        finally:
            self._lock_users[session_id] -= 1
            if not self._lock_users[session_id]:
                del self._lock_users[session_id]

    async def _execute_with_retries(self, command: str, session_id: str, timeout: float) -> ExecutionResult:
        effective_id = session_id
        last_error: BaseException | None = None
        attempt = 0
        while attempt <= self.max_retries:
            attempt += 1
            try:
                if attempt == 1:
                    await self.manager.ensure_session(effective_id, "command_execution")
                else:
                    await self._sleep(self.retry_delay)
                    effective_id = await self.repair_session(effective_id)
                return await self._attempt(command, effective_id, timeout, attempt)
            except (CommandTimeoutError, SessionLostError, TmuxNotFoundError) as exc:
                last_error = exc
                logger.warning(
                    "Command execution failed",
                    extra={"session_id": effective_id, "attempt": attempt, "error": str(exc)},
                )
                break
            except (ExecutionError, TmuxError, SessionError) as exc:
                last_error = exc
                logger.warning(
                    "Command execution attempt failed",
                    extra={"session_id": effective_id, "attempt": attempt, "error": str(exc)},
                )
        return self._error_result(effective_id, last_error, attempt)

    async def _attempt(self, command: str, session_id: str, timeout: float, attempt: int) -> ExecutionResult:
        self.artifact_dir.mkdir(parents=True, exist_ok=True)
        artifacts = new_artifacts(self.artifact_dir, session_id)
        log_extra = {"session_id": session_id, "execution_id": artifacts.execution_id, "attempt": attempt}
        try:
            await self._submit(session_id, wrap_command(command, artifacts))
            self._transition(ExecutionState.SUBMITTED, log_extra)

            self._transition(ExecutionState.AWAITING_COMPLETION, log_extra)
            completed = await self._wait_for_sentinel(artifacts.sentinel, timeout, log_extra)
            if not completed:
                partial = self._read_partial(artifacts.capture)
                if await self._session_gone(session_id):
                    self._transition(ExecutionState.SESSION_LOST, log_extra)
                    raise SessionLostError(
                        f"Session {session_id} was killed before command completion",
                        session_id=session_id,
                        partial_output=partial,
                    )
                self._transition(ExecutionState.TIMED_OUT, log_extra)
                raise CommandTimeoutError(
                    f"Command timed out after {timeout:g} seconds",
                    session_id=session_id,
                    partial_output=partial,
                )

            self._transition(ExecutionState.COMPLETED, log_extra)
            split = split_capture_artifact(self._read_text(artifacts.capture))
            working_directory = self._read_text(artifacts.cwd).strip() or None
            await self.manager.record_command_execution(session_id, working_directory)
            record = self.manager.registry.get(session_id)
            if record is not None and record.working_directory:
                working_directory = record.working_directory
            return ExecutionResult(
                stdout=split.body.strip("\n"),
                stderr="",
                exit_code=split.exit_code,
                session_id=session_id,
                execution_id=artifacts.execution_id,
                working_directory=working_directory,
                attempts=attempt,
            )
        finally:
            remove_artifacts(artifacts.paths)

    async def _session_gone(self, session_id: str) -> bool:
        try:
            return not await self.manager.session_exists(session_id)
        except TmuxNotFoundError:
            raise
        except TmuxError as exc:
            logger.warning(
                "Could not confirm session after timeout",
                extra={"session_id": session_id, "error": str(exc)},
            )
            return False

    async def _submit(self, session_id: str, line: str) -> None:
        try:
            await self.manager.submit(session_id, line)
        except TmuxNotFoundError:
            raise
        except TmuxError as exc:
            raise SendKeysError(f"tmux send-keys failed: {exc}", session_id=session_id) from exc

    async def _wait_for_sentinel(self, sentinel: Path, timeout: float, log_extra: dict[str, Any]) -> bool:
        started = self._clock()
        deadline = started + timeout
        warned = False
        while not sentinel.exists():
            now = self._clock()
            remaining = deadline - now
            if remaining <= 0:
                return False
            if not warned and now - started > timeout * _TIMEOUT_WARNING_RATIO:
                warned = True
                logger.warning(
                    "Command approaching timeout",
                    extra={**log_extra, "elapsed": round(now - started, 1), "timeout": timeout},
                )
            await self._sleep(min(self.poll_interval, remaining))
        return True

    @staticmethod
    def _transition(state: ExecutionState, log_extra: dict[str, Any]) -> None:
        logger.debug("Execution state changed", extra={**log_extra, "state": state.value})

    @staticmethod
    def _read_text(path: Path) -> str:
        try:
            return path.read_text(encoding="utf-8", errors="replace")
        except OSError:
            return ""

    def _read_partial(self, capture: Path) -> str:
        return self._read_text(capture).strip("\n")

    def _error_result(self, session_id: str, error: BaseException | None, attempts: int) -> ExecutionResult:
        if error is None:
            error = ExecutionError("Command was not attempted", session_id=session_id)
        if isinstance(error, ExecutionError):
            recoverable = error.recoverable
            partial = error.partial_output
        else:
            recoverable = not isinstance(error, TmuxNotFoundError)
            partial = ""
        stderr = (
            f"Command failed after {attempts} attempts: {error}\n\n"
            f"SUGGESTION: {recovery_suggestion(error)}"
        )
        return ExecutionResult(
            stdout=partial,
            stderr=stderr,
            exit_code=-1,
            session_id=session_id,
            execution_id="failed",
            attempts=attempts,
            error_type=type(error).__name__,
            recoverable=recoverable,
        )

    async def repair_session(self, session_id: str, purpose: str = "recovered_session") -> str:
        """Make ``session_id`` usable again and return the id to run against."""

        if not await self.manager.session_exists(session_id):
            logger.info("Recreating missing session", extra={"session_id": session_id})
            return await self.manager.create_session(session_id, purpose)
        if not await self.validate_session_health(session_id):
            logger.info("Recreating unresponsive session", extra={"session_id": session_id})
            await self.manager.destroy_session(session_id)
            return await self.manager.create_session(session_id, purpose)
        return session_id

    async def validate_session_health(self, session_id: str) -> bool:
        """Run an ``echo`` through the completion protocol with a short deadline."""

        token = f"health_check_{secrets.token_hex(4)}"
        self.artifact_dir.mkdir(parents=True, exist_ok=True)
        artifacts = new_artifacts(self.artifact_dir, session_id, kind="health")
        try:
            await self._submit(session_id, wrap_command(f"echo {token}", artifacts))
            completed = await self._wait_for_sentinel(
                artifacts.sentinel, self.health_check_timeout, {"session_id": session_id}
            )
            if not completed:
                return False
            split = split_capture_artifact(self._read_text(artifacts.capture))
            return split.exit_code == 0 and token in split.body
        except TmuxNotFoundError:
            raise
        except (ExecutionError, TmuxError) as exc:
            logger.debug("Health check failed", extra={"session_id": session_id, "error": str(exc)})
            return False
        finally:
            remove_artifacts(artifacts.paths)

    async def run_command(
        self, command: str, session_id: str | None = None, window: str | None = None
    ) -> dict[str, Any]:
        """Type ``command`` into a window without waiting for it to finish.

        Returns a short snapshot of the pane taken one poll interval later.
        Useful for long-running or interactive programs.
        """

        if not isinstance(command, str) or not command.strip():
            raise ValueError("Command must be a non-empty string")
        session_id = self.manager.validate_session_id(session_id or self.default_session)
        window = window or self.manager.execution_window(session_id)
        await self.manager.send_input(session_id, window, command)
        await self._sleep(self.poll_interval)
        content = await self.manager.capture_pane(session_id, window, 50)
        return {
            "session_id": session_id,
            "window": window,
            "submitted": command,
            "terminal_content": content.rstrip("\n"),
        }

    async def get_session_info(self, session_id: str) -> dict[str, Any]:
        if not await self.manager.session_exists(session_id):
            return {"exists": False}
        result = await self.execute_command("pwd", session_id, 5)
        if result.error_type is not None:
            return {"exists": True, "session_id": session_id, "error": result.stderr}
        return {
            "exists": True,
            "session_id": session_id,
            "current_directory": result.stdout.strip(),
            "active": True,
        }

    def sweep_stale_artifacts(self, *, now: float | None = None) -> list[Path]:
        return sweep_stale_artifacts(self.artifact_dir, self.stale_artifact_age, now=now)


__all__ = ["CommandExecutor", "recovery_suggestion"]
