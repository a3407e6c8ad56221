from __future__ import annotations

import asyncio
import os
import time
from datetime import datetime, timezone
from pathlib import Path

import pytest

from tmux_mcp.execution import CommandExecutor
from tmux_mcp.scheduler import CleanupScheduler
from tmux_mcp.sessions import SessionManager, SessionRegistry
from tmux_mcp.tmux import FakeTmuxAdapter


class FakeClock:
    def __init__(self) -> None:
        self.now = 10_000.0

    def __call__(self) -> float:
        return self.now


async def no_sleep(_delay: float) -> None:
    return None


def build(tmp_path: Path, **scheduler_kwargs):
    fake = FakeTmuxAdapter()
    clock = FakeClock()
    registry = SessionRegistry(clock=clock, wall_clock=lambda: datetime(2025, 1, 1, tzinfo=timezone.utc))
    manager = SessionManager(
        fake,
        registry,
        artifact_dir=tmp_path,
        idle_threshold_minutes=30,
        health_check_interval=300,
        probe_attempts=2,
        sleep=no_sleep,
    )
    executor = CommandExecutor(manager, artifact_dir=tmp_path, stale_artifact_age=60, sleep=no_sleep)
    scheduler = CleanupScheduler(manager, executor, **scheduler_kwargs)
    return fake, clock, manager, executor, scheduler


def test_idle_sessions_are_reaped(tmp_path: Path) -> None:
    fake, clock, manager, _, scheduler = build(tmp_path)
    asyncio.run(manager.create_session("old"))
    asyncio.run(manager.create_session("fresh"))

    clock.now += 31 * 60
    manager.touch("fresh")
    report = asyncio.run(scheduler.run_once())

    assert report.cleaned == ["old"]
    assert report.failed == {}
    assert list(fake.sessions) == ["fresh-MCP"]
    assert "old" not in manager.registry


def test_unhealthy_sessions_are_reaped(tmp_path: Path) -> None:
    fake, clock, manager, _, scheduler = build(tmp_path)
    asyncio.run(manager.create_session("stuck"))
    fake.unresponsive.add("stuck-MCP")

    clock.now += 400
    report = asyncio.run(scheduler.run_once())

    assert report.cleaned == ["stuck"]
    assert fake.sessions == {}


def test_untracked_and_busy_sessions_are_left_alone(tmp_path: Path) -> None:
    fake, clock, manager, executor, scheduler = build(tmp_path)
    fake.add_session("adopted-MCP")
    asyncio.run(manager.create_session("busy"))
    clock.now += 60 * 60

    async def scenario():
        async with executor._lock_for("busy"):
            return await scheduler.run_once()

    report = asyncio.run(scenario())

    assert report.cleaned == []
    assert report.skipped == ["busy"]
    assert set(fake.sessions) == {"adopted-MCP", "busy-MCP"}


def test_destroy_failure_does_not_stop_the_sweep(tmp_path: Path) -> None:
    fake, clock, manager, _, scheduler = build(tmp_path)
    for session_id in ("a", "b"):
        asyncio.run(manager.create_session(session_id))
    clock.now += 31 * 60
    fake.fail_next("kill-session", "permission denied")

    report = asyncio.run(scheduler.run_once())

    assert list(report.failed) == ["a"]
    assert "permission denied" in report.failed["a"]
    assert report.cleaned == ["b"]
    assert report.to_dict()["cleaned"] == ["b"]


def test_sweep_counts_stale_artifacts(tmp_path: Path) -> None:
    _, _, _, _, scheduler = build(tmp_path)
    stale = tmp_path / "tmux_mcp_gone_exec_0123456789ab.out"
    stale.write_text("", encoding="utf-8")
    old = time.time() - 3600
    os.utime(stale, (old, old))

    report = asyncio.run(scheduler.run_once())

    assert report.stale_artifacts == 1
    assert not stale.exists()


def test_start_and_stop(tmp_path: Path) -> None:
    fake, clock, manager, _, scheduler = build(tmp_path, interval=0.01)
    asyncio.run(manager.create_session("old"))
    clock.now += 31 * 60

    async def scenario() -> tuple[bool, bool]:
        scheduler.start()
        scheduler.start()
        started = scheduler.running
        for _ in range(50):
            await asyncio.sleep(0.01)
            if not fake.sessions:
                break
        await scheduler.stop()
        return started, scheduler.running

    started, running_after = asyncio.run(scenario())

    assert started is True
    assert running_after is False
    assert fake.sessions == {}


def test_interval_must_be_positive(tmp_path: Path) -> None:
    _, _, manager, _, _ = build(tmp_path)

    with pytest.raises(ValueError):
        CleanupScheduler(manager, interval=0)


def test_programs_in_the_foreground_are_not_checked_or_reaped(tmp_path: Path) -> None:
    fake, clock, manager, _, scheduler = build(tmp_path)
    asyncio.run(manager.create_session("app"))
    fake.unresponsive.add("app-MCP")
    fake.pane("app-MCP", "main").command = "node"

    clock.now += 400
    report = asyncio.run(scheduler.run_once())

    assert report.cleaned == []
    assert "app-MCP" in fake.sessions
    assert not any(call[0] == "send-keys" for call in fake.invocations)
