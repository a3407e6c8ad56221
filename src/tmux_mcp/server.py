"""FastMCP server bootstrap for tmux-mcp."""

import asyncio
import json
import logging
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Optional

from fastmcp import Context, FastMCP

from . import __version__
from .config import TmuxMcpSettings, get_settings
from .execution import CommandExecutor
from .layouts import DEFAULT_LAYOUT, LayoutLoadError, LayoutLoader
from .scheduler import CleanupScheduler
from .sessions import SessionManager, SessionRegistry
from .storage import ChromaStore, ChromaUnavailableError
from .tmux import TmuxAdapter, TmuxError, TmuxNotFoundError
from .tools import register_tools

KEYS_REFERENCE = """Common tmux key sequences:

Control keys:
- C-c: Interrupt process (SIGINT)
- C-d: End of input (EOF)
- C-z: Suspend process (SIGTSTP)
- C-\\: Quit process (SIGQUIT)

Navigation keys:
- Up, Down, Left, Right: Arrow keys
- PageUp, PageDown: Page navigation
- Home, End: Line navigation

Other keys:
- Enter: Return key (can also use C-m)
- Tab: Tab completion
- Escape: Escape key
- Space: Space bar
- BSpace: Backspace

Examples:
- To stop a running process: send_keys(["C-c"])
- To navigate command history: send_keys(["Up", "Up", "Enter"])
- To send EOF to close input: send_keys(["C-d"])
- To background a process: send_keys(["C-z"])
"""

COMMON_PATTERNS = """Common tmux-mcp usage patterns:

Running a command and waiting for it:
1. Use execute_command; it returns stdout, the exit code and the working directory
2. Raise timeout for builds and installs; a timed-out command keeps running
3. 'cd' persists between execute_command calls in the same session

Running a long-lived or interactive program:
1. Start it with run_command (e.g. 'python3', 'npm run dev', 'docker compose up')
2. Use send_input to type into it and get_output to see results
3. Use send_keys(["C-c"]) to stop it, or send_keys(["C-d"]) to close its input

Searching output:
1. Use get_output with the search parameter
2. Patterns use Python regex syntax (no delimiters)
3. Example: search: {"pattern": "error|warning", "context_lines": 3}

Managing multiple tasks:
1. Create separate sessions for separate projects
2. Use window_name to organize related commands
3. Use list_sessions and session_health to see what is running
"""


def configure_logging(level: str) -> None:
    """Configure root logging for the tmux-mcp server.

    Logs go to stderr; stdout carries the MCP stdio transport.
    """

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _run_sync(coro):
    """Execute an async coroutine on a dedicated event loop."""

    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


def create_server(
    settings: Optional[TmuxMcpSettings] = None,
    adapter: TmuxAdapter | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server, its session machinery and resources.

    Raises ``TmuxNotFoundError`` when no adapter is given and tmux is missing.
    """

    settings = settings or get_settings()
    log = logging.getLogger(__name__)

    adapter_provided = adapter is not None
    if adapter is None:
        adapter = TmuxAdapter(
            Path(settings.tmux_path) if settings.tmux_path else None,
            default_timeout=settings.adapter_timeout,
        )
    tmux_metadata: dict[str, Any] = {
        "path": str(adapter.executable),
        "version": None,
        "error": None,
    }
    if not adapter_provided:
        try:
            tmux_metadata["version"] = _run_sync(adapter.version())
        except TmuxError as exc:
            tmux_metadata["error"] = str(exc)

    layout_loader = LayoutLoader(settings.layout_paths)
    layout_error: str | None = None
    try:
        layouts = layout_loader.load_all()
    except LayoutLoadError as exc:
        log.warning("Failed to load layouts", extra={"error": str(exc)})
        layouts = {DEFAULT_LAYOUT.id: DEFAULT_LAYOUT}
        layout_error = str(exc)

    registry = SessionRegistry()
    manager = SessionManager(
        adapter,
        registry,
        layouts=layouts,
        session_suffix=settings.session_suffix,
        start_directory=settings.start_directory,
        artifact_dir=settings.artifact_dir,
        create_attempts=settings.create_attempts,
        create_retry_delay=settings.create_retry_delay,
        idle_threshold_minutes=settings.idle_threshold_minutes,
        health_check_interval=settings.health_check_interval,
    )
    executor = CommandExecutor(
        manager,
        artifact_dir=settings.artifact_dir,
        poll_interval=settings.poll_interval,
        max_retries=settings.max_retries,
        retry_delay=settings.retry_delay,
        default_timeout=settings.command_timeout,
        default_session=settings.default_session,
        stale_artifact_age=settings.stale_artifact_minutes * 60,
    )
    scheduler = CleanupScheduler(manager, executor, interval=settings.cleanup_interval)

    history_store: ChromaStore | None = None
    history_metadata: dict[str, Any] = {
        "enabled": settings.history_enabled,
        "available": False,
        "path": str(settings.history_persist_path),
        "collection": "tmux_mcp_history",
        "error": None,
    }
    if settings.history_enabled:
        try:
            history_store = ChromaStore(settings.history_persist_path)
            history_store.ping()
            history_metadata["available"] = True
        except ChromaUnavailableError as exc:
            history_metadata["error"] = str(exc)
            history_store = None

    @asynccontextmanager
    async def lifespan(_server: FastMCP) -> AsyncIterator[None]:
        if settings.background_cleanup:
            scheduler.start()
        try:
            yield
        finally:
            await scheduler.stop()

    server = FastMCP(
        name="tmux-mcp",
        version=__version__,
        instructions=(
            "tmux-mcp runs shell commands inside durable tmux sessions. Use execute_command "
            "to run a command and wait for its exit code, run_command/send_input/get_output "
            "for long-running or interactive programs, and session_health to check a session."
        ),
        lifespan=lifespan,
    )

    handles = register_tools(
        server,
        manager=manager,
        executor=executor,
        scheduler=scheduler,
        settings=settings,
        history_store=history_store,
    )

    @server.resource(
        "tmux://keys-reference",
        name="keys_reference",
        title="Tmux Keys Reference",
        description="Common tmux key sequences and their meanings.",
        mime_type="text/plain",
    )
    def keys_reference() -> str:
        return KEYS_REFERENCE

    @server.resource(
        "tmux://common-patterns",
        name="common_patterns",
        title="Common Tmux Patterns",
        description="Common usage patterns and examples.",
        mime_type="text/plain",
    )
    def common_patterns() -> str:
        return COMMON_PATTERNS

    @server.resource(
        "resource://tmux-mcp/status",
        name="tmux_mcp_status",
        title="tmux-mcp Status",
        description="Provides the current runtime status for the tmux-mcp server.",
        mime_type="application/json",
        tags={"status", "health"},
    )
    def status_resource(context: Context) -> str:
        """Return a JSON string summarizing basic runtime state."""

        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "tmux": tmux_metadata,
            "layouts": {
                "ids": sorted(manager.layouts),
                "error": layout_error,
            },
            "sessions": {
                "tracked": len(registry),
                "records": [record.to_dict() for record in registry.records()],
                "suffix": settings.session_suffix,
            },
            "execution": {
                "artifact_dir": str(settings.artifact_dir),
                "poll_interval": settings.poll_interval,
                "command_timeout": settings.command_timeout,
                "max_retries": settings.max_retries,
            },
            "cleanup": {
                "running": scheduler.running,
                "interval": settings.cleanup_interval,
                "idle_threshold_minutes": settings.idle_threshold_minutes,
            },
            "history": history_metadata,
            "request_id": getattr(context, "request_id", None),
        }
        return json.dumps(payload)

    setattr(server, "session_manager", manager)
    setattr(server, "executor", executor)
    setattr(server, "scheduler", scheduler)
    setattr(server, "history_store", history_store)
    setattr(server, "history_metadata", history_metadata)
    setattr(server, "tmux_metadata", tmux_metadata)
    setattr(server, "tool_handles", handles)
    return server


def main() -> None:
    """Entry point for running the tmux-mcp server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)
    log = logging.getLogger(__name__)

    try:
        server = create_server(settings)
    except TmuxNotFoundError as exc:
        log.error("Cannot start tmux-mcp: %s", exc)
        raise SystemExit(1) from exc

    log.info(
        "Launching tmux-mcp server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "tmux_version": getattr(server, "tmux_metadata", {}).get("version"),
            "history_available": getattr(server, "history_metadata", {}).get("available"),
        },
    )
    server.run()


if __name__ == "__main__":
    main()
