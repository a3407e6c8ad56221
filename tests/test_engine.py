from __future__ import annotations

import asyncio
import os
import time
from pathlib import Path

import pytest

from tmux_mcp.execution import CommandExecutor, ExecutionState
from tmux_mcp.scheduler import CleanupScheduler
from tmux_mcp.sessions import SessionManager
from tmux_mcp.tmux import FakeTmuxAdapter, TmuxNotFoundError, TmuxTimeoutError


class FakeClock:
    """Monotonic clock advanced by the executor's own sleeps."""

    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.now += delay


def make_executor(
    adapter: FakeTmuxAdapter,
    artifact_dir: Path,
    *,
    start_directory: Path | None = None,
    clock: FakeClock | None = None,
    **kwargs,
) -> CommandExecutor:
    artifact_dir.mkdir(parents=True, exist_ok=True)
    manager = SessionManager(
        adapter,
        start_directory=str(start_directory or artifact_dir),
        artifact_dir=artifact_dir,
        sleep=clock.sleep if clock else None,
        probe_interval=0.01,
    )
    options = {"poll_interval": 0.02, "retry_delay": 0.0, "health_check_timeout": 1.0}
    options.update(kwargs)
    if clock is not None:
        options.update(clock=clock, sleep=clock.sleep)
    return CommandExecutor(manager, artifact_dir=artifact_dir, **options)


def leftover_artifacts(artifact_dir: Path) -> list[Path]:
    return sorted(artifact_dir.glob("tmux_mcp_*"))


def test_exit_code_and_output(shell_tmux, tmp_path: Path, workdir: Path) -> None:
    executor = make_executor(shell_tmux.adapter, tmp_path / "artifacts", start_directory=workdir)

    result = asyncio.run(executor.execute_command("echo hi; exit 3", "build", timeout=5))

    assert result.exit_code == 3
    assert result.stdout == "hi"
    assert result.stderr == ""
    assert result.error_type is None
    assert result.attempts == 1
    assert result.working_directory == str(workdir)
    assert leftover_artifacts(tmp_path / "artifacts") == []
    record = executor.manager.registry.get("build")
    assert record.command_count == 1


def test_directory_changes_persist(shell_tmux, tmp_path: Path, workdir: Path) -> None:
    (workdir / "src").mkdir()
    executor = make_executor(shell_tmux.adapter, tmp_path / "artifacts", start_directory=workdir)

    async def scenario():
        first = await executor.execute_command("cd src", "build", timeout=5)
        second = await executor.execute_command("pwd", "build", timeout=5)
        return first, second

    first, second = asyncio.run(scenario())

    assert first.exit_code == 0
    assert first.working_directory == str(workdir / "src")
    assert second.stdout == str(workdir / "src")


def test_marker_shaped_output_is_not_completion(shell_tmux, tmp_path: Path) -> None:
    executor = make_executor(shell_tmux.adapter, tmp_path / "artifacts")

    result = asyncio.run(executor.execute_command("echo __TMUX_MCP_EXIT__:9", "build", timeout=5))

    assert result.exit_code == 0
    assert result.stdout == "__TMUX_MCP_EXIT__:9"


def test_timeout_returns_promptly_with_partial_output(shell_tmux, tmp_path: Path) -> None:
    executor = make_executor(shell_tmux.adapter, tmp_path / "artifacts", poll_interval=0.1)

    async def scenario():
        await executor.manager.create_session("build")
        started = time.monotonic()
        result = await executor.execute_command("echo started; sleep 10", "build", timeout=1)
        return result, time.monotonic() - started

    result, elapsed = asyncio.run(scenario())

    assert elapsed < 2.5
    assert result.exit_code == -1
    assert result.error_type == "CommandTimeoutError"
    assert result.recoverable is True
    assert result.attempts == 1
    assert result.stdout == "started"
    assert "SUGGESTION:" in result.stderr
    assert leftover_artifacts(tmp_path / "artifacts") == []


def test_session_killed_mid_execution_is_lost(tmp_path: Path, caplog) -> None:
    fake = FakeTmuxAdapter()
    fake.on_send_keys = lambda session, window, text: fake.sessions.pop(session, None)
    clock = FakeClock()
    executor = make_executor(fake, tmp_path, clock=clock)

    with caplog.at_level("DEBUG", logger="tmux_mcp.execution.engine"):
        result = asyncio.run(executor.execute_command("make", "build", timeout=3))

    assert result.error_type == "SessionLostError"
    assert result.recoverable is False
    assert result.attempts == 1
    assert result.exit_code == -1
    states = [record.state for record in caplog.records if hasattr(record, "state")]
    assert states == [
        ExecutionState.SUBMITTED.value,
        ExecutionState.AWAITING_COMPLETION.value,
        ExecutionState.SESSION_LOST.value,
    ]
    assert clock.now >= 3.0


def test_recoverable_failure_is_retried(shell_tmux, tmp_path: Path) -> None:
    executor = make_executor(shell_tmux.adapter, tmp_path / "artifacts")
    asyncio.run(executor.manager.create_session("build"))
    shell_tmux.adapter.fail_next("send-keys", "server exited unexpectedly")

    result = asyncio.run(executor.execute_command("echo recovered", "build", timeout=5))

    assert result.exit_code == 0
    assert result.stdout == "recovered"
    assert result.attempts == 2


def test_retries_exhausted_returns_error_result(tmp_path: Path) -> None:
    fake = FakeTmuxAdapter()
    for _ in range(10):
        fake.fail_next("send-keys", "server exited unexpectedly")
    executor = make_executor(fake, tmp_path, clock=FakeClock(), max_retries=2)

    result = asyncio.run(executor.execute_command("ls", "build", timeout=5))

    assert result.error_type == "SendKeysError"
    assert result.attempts == 3
    assert result.recoverable is True
    assert result.execution_id == "failed"
    assert result.stderr.startswith("Command failed after 3 attempts")
    assert "SUGGESTION:" in result.stderr
    assert result.to_dict()["exit_code"] == -1


def test_missing_binary_short_circuits(tmp_path: Path) -> None:
    class MissingTmux(FakeTmuxAdapter):
        async def send_keys(self, target, *keys, literal=False):
            raise TmuxNotFoundError("tmux is not installed")

    executor = make_executor(MissingTmux(), tmp_path, clock=FakeClock())

    result = asyncio.run(executor.execute_command("ls", "build"))

    assert result.error_type == "TmuxNotFoundError"
    assert result.attempts == 1
    assert result.recoverable is False


def test_invalid_arguments_raise(tmp_path: Path) -> None:
    executor = make_executor(FakeTmuxAdapter(), tmp_path)

    with pytest.raises(ValueError):
        asyncio.run(executor.execute_command("   ", "build"))
    with pytest.raises(ValueError):
        asyncio.run(executor.execute_command("ls", "build", timeout=0))
    with pytest.raises(ValueError):
        asyncio.run(executor.execute_command("ls", "no spaces allowed"))


def test_same_session_executions_are_serialized(shell_tmux, tmp_path: Path) -> None:
    executor = make_executor(shell_tmux.adapter, tmp_path / "artifacts")

    async def scenario():
        await executor.manager.create_session("build")
        slow = asyncio.create_task(executor.execute_command("sleep 0.3; echo slow", "build", timeout=5))
        await asyncio.sleep(0.05)
        busy = executor.is_busy("build")
        fast = await executor.execute_command("echo fast", "build", timeout=5)
        return busy, await slow, fast

    busy, slow, fast = asyncio.run(scenario())

    assert busy is True
    assert slow.stdout == "slow"
    assert fast.stdout == "fast"
    assert executor.is_busy("build") is False


def test_repair_recreates_unresponsive_session(tmp_path: Path) -> None:
    fake = FakeTmuxAdapter()
    executor = make_executor(fake, tmp_path, clock=FakeClock())
    asyncio.run(executor.manager.create_session("build"))
    fake.unresponsive.add("build-MCP")
    first_pane = fake.pane("build-MCP", "main")

    effective = asyncio.run(executor.repair_session("build"))

    assert effective == "build"
    assert fake.pane("build-MCP", "main") is not first_pane
    assert executor.manager.registry.get("build").purpose == "recovered_session"


def test_repair_recreates_missing_session(tmp_path: Path) -> None:
    fake = FakeTmuxAdapter()
    executor = make_executor(fake, tmp_path, clock=FakeClock())

    assert asyncio.run(executor.repair_session("gone")) == "gone"
    assert "gone-MCP" in fake.sessions


def test_validate_session_health_runs_probe(shell_tmux, tmp_path: Path) -> None:
    executor = make_executor(shell_tmux.adapter, tmp_path / "artifacts")
    asyncio.run(executor.manager.create_session("build"))

    assert asyncio.run(executor.validate_session_health("build")) is True


def test_session_info(shell_tmux, tmp_path: Path, workdir: Path) -> None:
    executor = make_executor(shell_tmux.adapter, tmp_path / "artifacts", start_directory=workdir)

    assert asyncio.run(executor.get_session_info("build")) == {"exists": False}

    asyncio.run(executor.manager.create_session("build"))
    info = asyncio.run(executor.get_session_info("build"))

    assert info == {"exists": True, "session_id": "build", "current_directory": str(workdir), "active": True}


def test_run_command_returns_immediately(tmp_path: Path) -> None:
    fake = FakeTmuxAdapter()
    executor = make_executor(fake, tmp_path, clock=FakeClock())

    payload = asyncio.run(executor.run_command("echo started", "build"))

    assert payload["window"] == "main"
    assert payload["terminal_content"].splitlines()[-1] == "started"


def test_sweep_removes_only_stale_artifacts(tmp_path: Path) -> None:
    executor = make_executor(FakeTmuxAdapter(), tmp_path, stale_artifact_age=60)
    stale = tmp_path / "tmux_mcp_build_exec_aaaaaaaaaaaa.done"
    fresh = tmp_path / "tmux_mcp_build_exec_bbbbbbbbbbbb.out"
    unrelated = tmp_path / "notes.txt"
    for path in (stale, fresh, unrelated):
        path.write_text("", encoding="utf-8")
    old = time.time() - 3600
    os.utime(stale, (old, old))
    os.utime(unrelated, (old, old))

    removed = executor.sweep_stale_artifacts()

    assert removed == [stale]
    assert fresh.exists() and unrelated.exists()


def test_existing_session_is_adopted_and_later_reaped(shell_tmux, tmp_path: Path, workdir: Path) -> None:
    shell_tmux.adapter.add_session("build-MCP", cwd=str(workdir))
    executor = make_executor(shell_tmux.adapter, tmp_path / "artifacts", start_directory=workdir)

    result = asyncio.run(executor.execute_command("echo hi", "build", timeout=5))

    assert result.stdout == "hi"
    record = executor.manager.registry.get("build")
    assert record is not None
    assert record.command_count == 1
    assert ("new-session",) not in [call[:1] for call in shell_tmux.adapter.invocations]

    record.last_accessed -= 3600
    report = asyncio.run(CleanupScheduler(executor.manager, executor).run_once())

    assert report.cleaned == ["build"]
    assert "build-MCP" not in shell_tmux.adapter.sessions


def test_slow_liveness_check_is_reported_as_timeout(tmp_path: Path) -> None:
    class SlowListWindows(FakeTmuxAdapter):
        slow = False

        async def list_windows(self, name):
            if self.slow:
                raise TmuxTimeoutError("tmux command timed out after 10s: tmux list-windows")
            return await super().list_windows(name)

    fake = SlowListWindows()
    fake.on_send_keys = lambda session, window, text: setattr(fake, "slow", True)
    executor = make_executor(fake, tmp_path, clock=FakeClock())

    result = asyncio.run(executor.execute_command("make", "build", timeout=2))

    assert result.error_type == "CommandTimeoutError"
    assert result.recoverable is True
    assert executor.manager.registry.get("build") is not None


def test_forget_session_drops_idle_locks_only(tmp_path: Path) -> None:
    executor = make_executor(FakeTmuxAdapter(), tmp_path, clock=FakeClock())
    asyncio.run(executor.execute_command("make", "build", timeout=1))
    assert "build" in executor._locks

    async def held() -> bool:
        async with executor._lock_for("other"):
            executor.forget_session("other")
            return "other" in executor._locks

    assert asyncio.run(held()) is True

    asyncio.run(executor.manager.destroy_session("build"))
    executor.forget_session("build")
    executor.forget_session("never-used")

    assert "build" not in executor._locks
