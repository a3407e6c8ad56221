"""Sentinel-file completion protocol.

A caller's command is rewritten so the interactive shell in the pane
writes everything the engine needs to disk:

* combined stdout/stderr goes to the capture artifact,
* the exit status is appended to it as ``__TMUX_MCP_EXIT__:<n>``,
* the directory the command finished in goes to the cwd artifact,
* the sentinel artifact is touched last.

The engine only ever polls for the sentinel's existence. Output content
is never used to detect completion.
"""

from __future__ import annotations

import re
import shlex
from dataclasses import dataclass

from ..artifacts import ExecutionArtifacts

EXIT_MARKER = "__TMUX_MCP_EXIT__"

_MARKER_LINE = re.compile(rf"^{EXIT_MARKER}:(-?\d+)$")


def wrap_command(command: str, artifacts: ExecutionArtifacts) -> str:
    """Return the single shell line submitted to the pane for ``command``.

    The command runs in a subshell so ``exit N`` ends the subshell rather
    than the pane's shell. An EXIT trap records the subshell's final
    directory, and the pane's shell changes into it afterwards so ``cd``
    persists between executions. Variables exported by the command do not.
    The leading space keeps the line out of history when
    ``HISTCONTROL=ignorespace`` is set.
    """

    capture = shlex.quote(str(artifacts.capture))
    sentinel = shlex.quote(str(artifacts.sentinel))
    cwd = shlex.quote(str(artifacts.cwd))
    trap = shlex.quote(f"pwd > {cwd}")
    return (
        f" ( trap {trap} EXIT; eval {shlex.quote(command)} ) > {capture} 2>&1;"
        f" printf '\\n{EXIT_MARKER}:%s\\n' \"$?\" >> {capture};"
        f" [ -s {cwd} ] && cd -- \"$(cat {cwd})\";"
        f" touch {sentinel}"
    )


@dataclass(frozen=True, slots=True)
class CaptureSplit:
    """Capture artifact content separated into output and exit status."""

    body: str
    exit_code: int

    @property
    def has_exit_code(self) -> bool:
        return self.exit_code != -1


def split_capture_artifact(text: str) -> CaptureSplit:
    """Separate the trailing exit-status line from captured output.

    Only the last non-blank line is considered. When it is not exactly a
    marker with an integer status, the whole text is returned as the body
    and the exit code is ``-1``. Marker-shaped lines printed by the
    command itself stay in the body.
    """

    lines = text.splitlines()
    while lines and not lines[-1].strip():
        lines.pop()
    if not lines:
        return CaptureSplit(body="", exit_code=-1)
    match = _MARKER_LINE.match(lines[-1].strip())
    if match is None:
        return CaptureSplit(body=text, exit_code=-1)
    return CaptureSplit(body="\n".join(lines[:-1]), exit_code=int(match.group(1)))


__all__ = ["EXIT_MARKER", "CaptureSplit", "split_capture_artifact", "wrap_command"]
