from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from tmux_mcp.config import TmuxMcpSettings
from tmux_mcp.execution import CommandExecutor, ExecutionResult
from tmux_mcp.scheduler import CleanupScheduler
from tmux_mcp.sessions import SessionManager
from tmux_mcp.storage import ExecutionHistoryEntry
from tmux_mcp.tmux import FakeTmuxAdapter, TmuxNotFoundError
from tmux_mcp.tools import error_payload, register_tools


class StubTool:
    def __init__(self, fn, name):
        self.fn = fn
        self.name = name


class StubServer:
    def __init__(self) -> None:
        self._tools: dict[str, StubTool] = {}

    def tool(self, *args, **kwargs):
        provided_name = kwargs.get("name")

        def decorator(fn):
            tool = StubTool(fn, provided_name or fn.__name__)
            self._tools[tool.name] = tool
            return tool

        return decorator


class StubHistoryStore:
    def __init__(self) -> None:
        self.executions: list[tuple[ExecutionResult, str]] = []
        self.lifecycle: list[tuple[str, str, dict[str, Any]]] = []

    def record_execution(self, result: ExecutionResult, command: str) -> None:
        self.executions.append((result, command))

    def record_lifecycle(self, session_id: str, action: str, **details: Any) -> None:
        self.lifecycle.append((session_id, action, details))

    def list_executions(self, session_id=None, *, limit=None) -> list[ExecutionHistoryEntry]:
        entries = [
            ExecutionHistoryEntry(
                session_id=result.session_id,
                command=command,
                exit_code=result.exit_code,
                execution_id=result.execution_id,
                recorded_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
            )
            for result, command in self.executions
            if session_id is None or result.session_id == session_id
        ]
        return entries[-limit:] if limit else entries


class BrokenHistoryStore(StubHistoryStore):
    def record_lifecycle(self, session_id: str, action: str, **details: Any) -> None:
        raise RuntimeError("disk full")


async def no_sleep(_delay: float) -> None:
    return None


def build(adapter: FakeTmuxAdapter, artifact_dir: Path, history_store=None, **manager_kwargs):
    artifact_dir.mkdir(parents=True, exist_ok=True)
    manager_kwargs.setdefault("start_directory", str(artifact_dir))
    manager = SessionManager(adapter, artifact_dir=artifact_dir, sleep=no_sleep, **manager_kwargs)
    executor = CommandExecutor(manager, artifact_dir=artifact_dir, poll_interval=0.02, retry_delay=0)
    scheduler = CleanupScheduler(manager, executor)
    settings = TmuxMcpSettings()
    settings.default_session = "main"
    server = StubServer()
    server.executor = executor
    handles = register_tools(
        server,  # type: ignore[arg-type]
        manager=manager,
        executor=executor,
        scheduler=scheduler,
        settings=settings,
        history_store=history_store,  # type: ignore[arg-type]
    )
    return server, handles, manager


def test_all_tools_are_registered(tmp_path: Path) -> None:
    server, _, _ = build(FakeTmuxAdapter(), tmp_path)

    assert sorted(server._tools) == [
        "cleanup_sessions",
        "create_session",
        "create_window",
        "destroy_session",
        "execute_command",
        "get_output",
        "list_sessions",
        "run_command",
        "send_input",
        "send_keys",
        "session_health",
        "session_history",
        "session_info",
    ]


def test_session_lifecycle_tools(tmp_path: Path) -> None:
    fake = FakeTmuxAdapter()
    history = StubHistoryStore()
    _, handles, _ = build(fake, tmp_path, history)

    created = asyncio.run(handles.create_session.fn(session_id="build", purpose="ci"))
    listed = asyncio.run(handles.list_sessions.fn())
    destroyed = asyncio.run(handles.destroy_session.fn(session_id="build"))
    again = asyncio.run(handles.destroy_session.fn(session_id="build"))

    assert created["session_id"] == "build"
    assert created["tmux_session"] == "build-MCP"
    assert created["purpose"] == "ci"
    assert listed["sessions"][0]["session_id"] == "build"
    assert listed["sessions"][0]["tracked"] is True
    assert destroyed == {"session_id": "build", "destroyed": True}
    assert again == {"session_id": "build", "destroyed": False}
    assert [action for _, action, _ in history.lifecycle] == ["created", "destroyed"]


def test_errors_come_back_as_payloads(tmp_path: Path) -> None:
    _, handles, _ = build(FakeTmuxAdapter(), tmp_path)

    result = asyncio.run(handles.create_session.fn(session_id="has space"))

    assert result["error_type"] == "InvalidSessionIdError"
    assert "letters, digits" in result["hint"]


def test_error_payload_for_missing_tmux() -> None:
    payload = error_payload(TmuxNotFoundError("tmux is not installed"))

    assert payload["error"] == "tmux is not installed"
    assert payload["error_type"] == "TmuxNotFoundError"
    assert "Install tmux" in payload["hint"]


def test_execute_command_uses_default_session_and_records_history(shell_tmux, tmp_path: Path) -> None:
    history = StubHistoryStore()
    _, handles, _ = build(shell_tmux.adapter, tmp_path / "artifacts", history)

    result = asyncio.run(handles.execute_command.fn(command="echo hello; exit 4", timeout=5))
    recorded = handles.session_history.fn(session_id="main")

    assert result["session_id"] == "main"
    assert result["stdout"] == "hello"
    assert result["exit_code"] == 4
    assert "error_type" not in result
    assert [entry["command"] for entry in recorded["executions"]] == ["echo hello; exit 4"]


def test_execute_command_rejects_empty_command(tmp_path: Path) -> None:
    _, handles, _ = build(FakeTmuxAdapter(), tmp_path)

    result = asyncio.run(handles.execute_command.fn(command=" "))

    assert result["error_type"] == "ValueError"


def test_interactive_tools_share_a_window(tmp_path: Path) -> None:
    fake = FakeTmuxAdapter()
    _, handles, _ = build(fake, tmp_path)

    started = asyncio.run(handles.run_command.fn(command="echo booting", window_name="server"))
    sent = asyncio.run(handles.send_input.fn(text="echo ready", window_name="server"))
    keys = asyncio.run(handles.send_keys.fn(keys=["C-c"], window_name="server"))
    output = asyncio.run(handles.get_output.fn(window_name="server"))

    assert started["terminal_content"].splitlines()[-1] == "booting"
    assert sent == {"session_id": "main", "window": "server", "sent": "echo ready"}
    assert keys["keys"] == ["C-c"]
    assert output["output"].splitlines() == ["$ echo booting", "booting", "$ echo ready", "ready"]
    assert list(fake.sessions["main-MCP"]) == ["main", "server"]


def test_get_output_search_and_exclusivity(tmp_path: Path) -> None:
    _, handles, _ = build(FakeTmuxAdapter(), tmp_path)
    asyncio.run(handles.send_input.fn(text="echo error: disk full"))

    found = asyncio.run(
        handles.get_output.fn(search={"pattern": "disk", "context_lines": 0, "include_line_numbers": False})
    )
    both = asyncio.run(handles.get_output.fn(lines=10, search={"pattern": "x"}))
    invalid = asyncio.run(handles.get_output.fn(search={"pattern": "x", "context_lines": -1}))

    assert found["matches"] == "$ echo error: disk full\nerror: disk full"
    assert both["error_type"] == "ValueError"
    assert "Cannot specify both" in both["error"]
    assert invalid["error_type"] == "ValidationError"


def test_create_window_and_health(tmp_path: Path) -> None:
    _, handles, _ = build(FakeTmuxAdapter(), tmp_path)

    window = asyncio.run(handles.create_window.fn(session_id="web", window_name="logs"))
    health = asyncio.run(handles.session_health.fn(session_id="web"))
    missing = asyncio.run(handles.session_health.fn(session_id="nope"))

    assert window == {"session_id": "web", "window": "logs", "created": True, "windows": ["main", "logs"]}
    assert health["exists"] is True
    assert health["healthy"] is True
    assert missing == {"exists": False, "healthy": False, "session_id": "nope", "reason": "Session does not exist"}


def test_session_info_for_missing_session(tmp_path: Path) -> None:
    _, handles, _ = build(FakeTmuxAdapter(), tmp_path)

    assert asyncio.run(handles.session_info.fn(session_id="ghost")) == {"exists": False}


def test_cleanup_sessions_reports_and_records(tmp_path: Path) -> None:
    fake = FakeTmuxAdapter()
    history = StubHistoryStore()
    _, handles, manager = build(fake, tmp_path, history, idle_threshold_minutes=0.0001)
    asyncio.run(manager.create_session("old"))
    manager.registry.get("old").last_accessed -= 60

    report = asyncio.run(handles.cleanup_sessions.fn())

    assert report["cleaned"] == ["old"]
    assert ("old", "reaped", {}) in history.lifecycle


def test_history_failures_do_not_break_tools(tmp_path: Path) -> None:
    _, handles, _ = build(FakeTmuxAdapter(), tmp_path, BrokenHistoryStore())

    created = asyncio.run(handles.create_session.fn(session_id="build"))

    assert created["session_id"] == "build"


def test_session_history_requires_store(tmp_path: Path) -> None:
    _, handles, _ = build(FakeTmuxAdapter(), tmp_path)

    result = handles.session_history.fn(session_id="build")

    assert result["error_type"] == "ChromaUnavailableError"
    assert "persistence" in result["hint"]


def test_session_health_leaves_running_executions_alone(tmp_path: Path) -> None:
    fake = FakeTmuxAdapter()
    server, handles, manager = build(fake, tmp_path)
    asyncio.run(manager.create_session("web"))
    manager.registry.get("web").last_health_check = None

    async def scenario() -> dict[str, Any]:
        async with server.executor._lock_for("web"):
            return await handles.session_health.fn(session_id="web")

    health = asyncio.run(scenario())

    assert health["exists"] is True
    assert health["health_status"] == "healthy"
    assert not any(call[0] == "send-keys" for call in fake.invocations)


def test_destroy_session_releases_execution_lock(tmp_path: Path) -> None:
    server, handles, manager = build(FakeTmuxAdapter(), tmp_path)
    asyncio.run(manager.create_session("build"))
    server.executor._lock_for("build")

    asyncio.run(handles.destroy_session.fn(session_id="build"))

    assert "build" not in server.executor._locks
