"""Tool registration for tmux-mcp."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from fastmcp import Context, FastMCP

from ..config import TmuxMcpSettings
from ..execution import CommandExecutor, ExecutionError, recovery_suggestion
from ..scheduler import CleanupScheduler
from ..search import SearchOptions, search_output
from ..sessions import (
    InvalidSessionIdError,
    SessionCreateError,
    SessionError,
    SessionManager,
    SessionNotFoundError,
)
from ..storage import ChromaStore, ChromaUnavailableError
from ..tmux import TmuxError, TmuxNotFoundError

logger = logging.getLogger(__name__)

_HANDLED_ERRORS = (TmuxError, SessionError, ExecutionError, ChromaUnavailableError, ValueError)


@dataclass(slots=True)
class ToolHandles:
    create_session: Any
    destroy_session: Any
    list_sessions: Any
    execute_command: Any
    run_command: Any
    send_input: Any
    send_keys: Any
    get_output: Any
    create_window: Any
    session_health: Any
    session_info: Any
    cleanup_sessions: Any
    session_history: Any


def error_hint(exc: BaseException) -> str:
    """Recovery guidance attached to every error-shaped tool result."""

    if isinstance(exc, TmuxNotFoundError):
        return "Install tmux and restart the server, or point TMUX_PATH at the binary."
    if isinstance(exc, InvalidSessionIdError):
        return "Session IDs may only contain letters, digits, '_' and '-' (max 64 characters)."
    if isinstance(exc, SessionNotFoundError):
        return "Use list_sessions to see available sessions, or create_session to start one."
    if isinstance(exc, SessionCreateError):
        return "tmux refused to create the session. Check the start directory and the tmux server logs."
    if isinstance(exc, ChromaUnavailableError):
        return "Install the persistence extra and set TMUX_MCP_HISTORY_ENABLED=true."
    if isinstance(exc, ValueError):
        return "Check the tool arguments and try again."
    return recovery_suggestion(exc)


def error_payload(exc: BaseException) -> dict[str, Any]:
    return {"error": str(exc), "error_type": type(exc).__name__, "hint": error_hint(exc)}


def register_tools(
    server: FastMCP,
    *,
    manager: SessionManager,
    executor: CommandExecutor,
    scheduler: CleanupScheduler,
    settings: TmuxMcpSettings,
    history_store: ChromaStore | None,
) -> ToolHandles:
    """Register the tmux tools on the server."""

    def _session(session_id: str | None) -> str:
        return session_id or settings.default_session

    def _failed(context: Context | None, tool: str, exc: BaseException, **extra: Any) -> dict[str, Any]:
        _emit_log(
            context,
            "warning",
            "Tool call failed",
            extra={"tool": tool, "error_type": type(exc).__name__, "error": str(exc), **extra},
        )
        return error_payload(exc)

    def _record_history(action: str, *, session_id: str, **details: Any) -> None:
        if history_store is None:
            return
        try:
            if action == "execute":
                history_store.record_execution(details["result"], details["command"])
            else:
                history_store.record_lifecycle(session_id, action, **details)
        except Exception as exc:
            logger.warning(
                "Failed to record history",
                extra={"session_id": session_id, "action": action, "error": str(exc)},
            )

    async def _create_session(
        session_id: str | None = None,
        purpose: str = "general",
        layout: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        try:
            created_id = await manager.create_session(session_id, purpose, layout)
        except _HANDLED_ERRORS as exc:
            return _failed(context, "create_session", exc, session_id=session_id)

        record = manager.registry.get(created_id)
        _record_history("created", session_id=created_id, purpose=purpose, layout=layout)
        _emit_log(context, "info", "Session ready", extra={"session_id": created_id})
        payload: dict[str, Any] = {"session_id": created_id, "tmux_session": manager.tmux_name(created_id)}
        if record is not None:
            payload.update(record.to_dict())
        return payload

    async def _destroy_session(session_id: str, context: Context | None = None) -> dict[str, Any]:
        try:
            destroyed = await manager.destroy_session(session_id)
        except _HANDLED_ERRORS as exc:
            return _failed(context, "destroy_session", exc, session_id=session_id)
        executor.forget_session(session_id)

        if destroyed:
            _record_history("destroyed", session_id=session_id)
        _emit_log(
            context,
            "info",
            "Session destroyed" if destroyed else "Session already gone",
            extra={"session_id": session_id},
        )
        return {"session_id": session_id, "destroyed": destroyed}

    async def _list_sessions(context: Context | None = None) -> dict[str, Any]:
        try:
            sessions = await manager.list_workspaces()
        except _HANDLED_ERRORS as exc:
            return _failed(context, "list_sessions", exc)
        _emit_log(context, "debug", "Listing sessions", extra={"count": len(sessions)})
        return {"sessions": sessions}

    async def _execute_command(
        command: str,
        session_id: str | None = None,
        timeout: float | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        session_id = _session(session_id)
        try:
            result = await executor.execute_command(command, session_id, timeout)
        except _HANDLED_ERRORS as exc:
            return _failed(context, "execute_command", exc, session_id=session_id)

        _record_history("execute", session_id=result.session_id, result=result, command=command)
        _emit_log(
            context,
            "info" if result.error_type is None else "warning",
            "Command executed",
            extra={
                "session_id": result.session_id,
                "exit_code": result.exit_code,
                "attempts": result.attempts,
                "error_type": result.error_type,
            },
        )
        return result.to_dict()

    async def _run_command(
        command: str,
        session_id: str | None = None,
        window_name: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        session_id = _session(session_id)
        try:
            return await executor.run_command(command, session_id, window_name)
        except _HANDLED_ERRORS as exc:
            return _failed(context, "run_command", exc, session_id=session_id)

    async def _send_input(
        text: str,
        session_id: str | None = None,
        window_name: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        session_id = _session(session_id)
        try:
            window = window_name or manager.execution_window(session_id)
            await manager.send_input(session_id, window, text)
        except _HANDLED_ERRORS as exc:
            return _failed(context, "send_input", exc, session_id=session_id)
        return {"session_id": session_id, "window": window, "sent": text}

    async def _send_keys(
        keys: list[str],
        session_id: str | None = None,
        window_name: str | None = None,
        literal: bool = False,
        context: Context | None = None,
    ) -> dict[str, Any]:
        session_id = _session(session_id)
        try:
            window = window_name or manager.execution_window(session_id)
            await manager.send_keys(session_id, window, keys, literal=literal)
        except _HANDLED_ERRORS as exc:
            return _failed(context, "send_keys", exc, session_id=session_id)
        return {"session_id": session_id, "window": window, "keys": list(keys)}

    async def _get_output(
        session_id: str | None = None,
        window_name: str | None = None,
        lines: int | None = None,
        search: dict[str, Any] | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        session_id = _session(session_id)
        try:
            if lines is not None and search is not None:
                raise ValueError("Cannot specify both lines and search")
            options = SearchOptions.model_validate(search) if search is not None else None
            window = window_name or manager.execution_window(session_id)
            output = await manager.capture_pane(session_id, window, lines)
        except _HANDLED_ERRORS as exc:
            return _failed(context, "get_output", exc, session_id=session_id)

        payload: dict[str, Any] = {"session_id": session_id, "window": window}
        if options is not None:
            payload["matches"] = search_output(
                output, options.pattern, options.context_lines, options.include_line_numbers
            )
        else:
            payload["output"] = output
        return payload

    async def _create_window(
        session_id: str,
        window_name: str,
        context: Context | None = None,
    ) -> dict[str, Any]:
        try:
            created = await manager.create_window(session_id, window_name)
            windows = await manager.list_windows(session_id)
        except _HANDLED_ERRORS as exc:
            return _failed(context, "create_window", exc, session_id=session_id)
        return {"session_id": session_id, "window": window_name, "created": created, "windows": windows}

    async def _session_health(session_id: str, context: Context | None = None) -> dict[str, Any]:
        try:
            health = await manager.get_session_health(session_id, probe=not executor.is_busy(session_id))
        except _HANDLED_ERRORS as exc:
            return _failed(context, "session_health", exc, session_id=session_id)
        return health.to_dict()

    async def _session_info(session_id: str, context: Context | None = None) -> dict[str, Any]:
        try:
            return await executor.get_session_info(session_id)
        except _HANDLED_ERRORS as exc:
            return _failed(context, "session_info", exc, session_id=session_id)

    async def _cleanup_sessions(context: Context | None = None) -> dict[str, Any]:
        try:
            report = await scheduler.run_once()
        except _HANDLED_ERRORS as exc:
            return _failed(context, "cleanup_sessions", exc)
        for session_id in report.cleaned:
            _record_history("reaped", session_id=session_id)
        _emit_log(context, "info", "Cleanup sweep finished", extra=report.to_dict())
        return report.to_dict()

    def _session_history(session_id: str, limit: int = 20, context: Context | None = None) -> dict[str, Any]:
        try:
            if history_store is None:
                raise ChromaUnavailableError("Execution history is disabled")
            if limit <= 0:
                raise ValueError("limit must be a positive integer")
            entries = history_store.list_executions(session_id, limit=limit)
        except _HANDLED_ERRORS as exc:
            return _failed(context, "session_history", exc, session_id=session_id)
        return {"session_id": session_id, "executions": [entry.to_dict() for entry in entries]}

    tool_create = server.tool(
        name="create_session",
        description=(
            "Create a durable tmux session, or reuse it if it already exists. Optionally "
            "pick a layout (see the status resource for available layouts)."
        ),
    )(_create_session)

    tool_destroy = server.tool(
        name="destroy_session",
        description="Kill a tmux session and discard its tracked state.",
        annotations={"destructiveHint": True},
    )(_destroy_session)

    tool_list = server.tool(
        name="list_sessions",
        description="List managed tmux sessions with their windows and usage statistics.",
    )(_list_sessions)

    tool_execute = server.tool(
        name="execute_command",
        description=(
            "Run a shell command in a session and wait for it to finish. Returns stdout "
            "(stderr merged), the exit code and the working directory. The session is "
            "created on first use and 'cd' persists between calls."
        ),
    )(_execute_command)

    tool_run = server.tool(
        name="run_command",
        description=(
            "Start a command in a tmux window and return immediately. To stop a running "
            "command, use send_keys with [\"C-c\"]."
        ),
    )(_run_command)

    tool_send_input = server.tool(
        name="send_input",
        description="Send text to a window (automatically appends Enter).",
    )(_send_input)

    tool_send_keys = server.tool(
        name="send_keys",
        description=(
            "Send key sequences using tmux syntax. Common keys: C-c (interrupt), C-d (EOF), "
            "C-z (suspend), Up/Down/Left/Right, Enter, Tab, Escape."
        ),
    )(_send_keys)

    tool_get_output = server.tool(
        name="get_output",
        description=(
            "Capture terminal output. Use either lines mode OR search mode "
            "({pattern, context_lines, include_line_numbers}), not both."
        ),
    )(_get_output)

    tool_create_window = server.tool(
        name="create_window",
        description="Create a named window in a session if it does not exist yet.",
    )(_create_window)

    tool_health = server.tool(
        name="session_health",
        description="Report existence, responsiveness, age and idle time for a session.",
    )(_session_health)

    tool_info = server.tool(
        name="session_info",
        description="Report whether a session exists and its current directory.",
    )(_session_info)

    tool_cleanup = server.tool(
        name="cleanup_sessions",
        description="Destroy idle or unresponsive sessions now instead of waiting for the background sweep.",
        annotations={"destructiveHint": True},
    )(_cleanup_sessions)

    tool_history = server.tool(
        name="session_history",
        description="List recent command executions recorded for a session (requires persistence).",
    )(_session_history)

    return ToolHandles(
        create_session=tool_create,
        destroy_session=tool_destroy,
        list_sessions=tool_list,
        execute_command=tool_execute,
        run_command=tool_run,
        send_input=tool_send_input,
        send_keys=tool_send_keys,
        get_output=tool_get_output,
        create_window=tool_create_window,
        session_health=tool_health,
        session_info=tool_info,
        cleanup_sessions=tool_cleanup,
        session_history=tool_history,
    )


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Best-effort logging that prefers the MCP context logger when available."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)


__all__ = ["ToolHandles", "error_hint", "error_payload", "register_tools"]
