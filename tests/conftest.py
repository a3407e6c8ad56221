from __future__ import annotations

import os
import signal
import subprocess
from pathlib import Path

import pytest

from tmux_mcp.tmux import FakeTmuxAdapter
from tmux_mcp.tmux.adapter import FakePane


class ShellBackedTmux:
    """Fake tmux whose panes feed submitted lines to a real ``/bin/sh``.

    Each pane gets its own long-lived shell, started in the pane's
    directory, so state such as the current directory carries over between
    lines the way it does in a tmux window.
    """

    def __init__(self) -> None:
        self._shells: dict[int, tuple[FakePane, subprocess.Popen]] = {}
        self.adapter = FakeTmuxAdapter(on_send_keys=self._feed)

    def _feed(self, session: str, window: str, text: str) -> None:
        pane = self.adapter.pane(session, window)
        entry = self._shells.get(id(pane))
        if entry is None or entry[0] is not pane or entry[1].poll() is not None:
            shell = subprocess.Popen(
                ["/bin/sh"],
                stdin=subprocess.PIPE,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                cwd=pane.cwd,
                text=True,
                start_new_session=True,
            )
            entry = self._shells[id(pane)] = (pane, shell)
        shell = entry[1]
        shell.stdin.write(text + "\n")
        shell.stdin.flush()

    def close(self) -> None:
        for _, shell in self._shells.values():
            try:
                os.killpg(shell.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            shell.wait()
            shell.stdin.close()
        self._shells.clear()


@pytest.fixture
def shell_tmux():
    backend = ShellBackedTmux()
    try:
        yield backend
    finally:
        backend.close()


@pytest.fixture
def workdir(tmp_path: Path) -> Path:
    path = tmp_path / "work"
    path.mkdir()
    return Path(os.path.realpath(path))
