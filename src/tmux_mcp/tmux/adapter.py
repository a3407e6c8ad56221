"""Async adapter for the tmux binary."""

from __future__ import annotations

import asyncio
import inspect
import os
import shutil
import signal
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Sequence

from .utils import sanitize_environment, split_lines

INSTALL_GUIDANCE = (
    "tmux is not installed. Please install tmux:\n"
    "- Ubuntu/Debian: sudo apt update && sudo apt install tmux\n"
    "- macOS: brew install tmux\n"
    "- CentOS/RHEL: sudo yum install tmux\n"
    "- Arch Linux: sudo pacman -S tmux"
)

_NOT_FOUND_PATTERNS = (
    "no such session",
    "can't find session",
    "session not found",
    "can't find window",
    "can't find pane",
)
_NO_SERVER_PATTERNS = (
    "no server running",
    "error connecting to",
    "connection refused",
)


class TmuxError(RuntimeError):
    """Base class for tmux adapter errors."""

    def __init__(
        self,
        message: str,
        *,
        command: Sequence[str] = (),
        returncode: int | None = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.command = tuple(command)
        self.returncode = returncode
        self.stderr = stderr


class TmuxNotFoundError(TmuxError):
    """Raised when the tmux executable cannot be located."""


class TmuxTimeoutError(TmuxError):
    """Raised when a tmux invocation exceeds its deadline."""


class TmuxSessionNotFoundError(TmuxError):
    """Raised when tmux reports that the target session or window is missing."""


class TmuxServerNotRunningError(TmuxError):
    """Raised when no tmux server is reachable."""


class TmuxCommandError(TmuxError):
    """Raised for any other non-zero tmux exit."""


@dataclass(slots=True)
class TmuxResult:
    """Holds the outcome of a tmux invocation."""

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def classify_failure(result: TmuxResult) -> TmuxError:
    """Map a failed tmux invocation onto the adapter error taxonomy."""

    stderr = result.stderr.strip()
    lowered = stderr.lower()
    command_text = " ".join(result.args)
    if any(pattern in lowered for pattern in _NOT_FOUND_PATTERNS):
        error_cls: type[TmuxError] = TmuxSessionNotFoundError
        message = f"Session not found: {stderr}"
    elif any(pattern in lowered for pattern in _NO_SERVER_PATTERNS):
        error_cls = TmuxServerNotRunningError
        message = f"No tmux server running: {stderr}"
    else:
        error_cls = TmuxCommandError
        message = f"tmux command failed with code {result.returncode}"
        if stderr:
            message += f": {stderr}"
    return error_cls(
        f"{message} ({command_text})",
        command=result.args,
        returncode=result.returncode,
        stderr=result.stderr,
    )


def _kill_process_group(process: asyncio.subprocess.Process) -> None:
    try:
        os.killpg(process.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        try:
            process.kill()
        except ProcessLookupError:
            pass


class TmuxAdapter:
    """Execute tmux sub-commands asynchronously with a bounded deadline."""

    def __init__(self, executable: Path | None = None, *, default_timeout: float = 10.0) -> None:
        self._executable_path = self._resolve_executable(executable)
        self._default_timeout = default_timeout

    @staticmethod
    def _resolve_executable(explicit: Path | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise TmuxNotFoundError(f"tmux executable not found at {candidate}. {INSTALL_GUIDANCE}")

        binary = shutil.which("tmux")
        if binary is None:
            raise TmuxNotFoundError(INSTALL_GUIDANCE)
        return Path(binary)

    @property
    def executable(self) -> Path:
        return self._executable_path

    @property
    def default_timeout(self) -> float:
        return self._default_timeout

    async def run(self, *args: str, timeout: float | None = None) -> TmuxResult:
        """Run a tmux sub-command, raising a classified ``TmuxError`` on failure."""

        if not args:
            raise ValueError("tmux command arguments must not be empty")
        result = await self._invoke(*args, timeout=timeout or self._default_timeout)
        if not result.ok:
            raise classify_failure(result)
        return result

    async def version(self) -> str:
        result = await self.run("-V")
        return result.stdout.strip()

    async def new_session(self, name: str, window: str, start_directory: str | None = None) -> None:
        args = ["new-session", "-d", "-s", name, "-n", window]
        if start_directory:
            args.extend(["-c", start_directory])
        await self.run(*args)

    async def new_window(self, name: str, window: str, start_directory: str | None = None) -> None:
        args = ["new-window", "-d", "-t", f"{name}:", "-n", window]
        if start_directory:
            args.extend(["-c", start_directory])
        await self.run(*args)

    async def list_windows(self, name: str) -> list[str]:
        result = await self.run("list-windows", "-t", name, "-F", "#{window_name}")
        return split_lines(result.stdout)

    async def list_sessions(self) -> list[str]:
        try:
            result = await self.run("list-sessions", "-F", "#{session_name}")
        except TmuxServerNotRunningError:
            return []
        return split_lines(result.stdout)

    async def kill_session(self, name: str) -> None:
        await self.run("kill-session", "-t", name)

    async def send_keys(self, target: str, *keys: str, literal: bool = False) -> None:
        args = ["send-keys", "-t", target]
        if literal:
            args.append("-l")
        args.extend(keys)
        await self.run(*args)

    async def capture_pane(self, target: str, lines: int | None = None) -> str:
        start = "-" if lines is None else f"-{int(lines)}"
        result = await self.run("capture-pane", "-p", "-t", target, "-S", start)
        return result.stdout

    async def pane_current_path(self, target: str) -> str:
        result = await self.run("display-message", "-p", "-t", target, "#{pane_current_path}")
        return result.stdout.strip()

    async def pane_current_command(self, target: str) -> str:
        result = await self.run("display-message", "-p", "-t", target, "#{pane_current_command}")
        return result.stdout.strip()

    async def _invoke(self, *args: str, timeout: float) -> TmuxResult:
        cmd = [str(self._executable_path), *args]
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=sanitize_environment(),
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            raise TmuxNotFoundError(INSTALL_GUIDANCE, command=cmd) from exc

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout)
        except asyncio.TimeoutError:
            _kill_process_group(process)
            await process.wait()
            raise TmuxTimeoutError(
                f"tmux command timed out after {timeout:g}s: tmux {' '.join(args)}",
                command=cmd,
            ) from None

        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        return TmuxResult(args=tuple(cmd), returncode=process.returncode, stdout=stdout, stderr=stderr)


SendKeysHook = Callable[[str, str, str], Any | Awaitable[Any]]


@dataclass
class FakePane:
    cwd: str
    lines: list[str] = field(default_factory=list)
    pending: str = ""
    command: str = "sh"


class FakeTmuxAdapter(TmuxAdapter):
    """Test double that simulates a tmux server in memory.

    Entered command lines are appended to the pane scrollback and ``echo``
    output is mirrored back so responsiveness probes succeed. ``on_send_keys``
    receives ``(session, window, text)`` for every command line submitted
    with Enter, which lets tests run the text through a real shell.
    """

    def __init__(
        self,
        *,
        on_send_keys: SendKeysHook | None = None,
        default_timeout: float = 10.0,
    ) -> None:  # type: ignore[override]
        self._executable_path = Path("/tmp/fake-tmux")
        self._default_timeout = default_timeout
        self.sessions: dict[str, dict[str, FakePane]] = {}
        self.on_send_keys = on_send_keys
        self.failures: dict[str, list[str]] = {}
        self.unresponsive: set[str] = set()
        self._invocations: list[tuple[str, ...]] = []

    @property
    def invocations(self) -> list[tuple[str, ...]]:
        return self._invocations

    def fail_next(self, subcommand: str, stderr: str = "server exited unexpectedly") -> None:
        """Make the next invocation of ``subcommand`` exit non-zero with ``stderr``."""

        self.failures.setdefault(subcommand, []).append(stderr)

    def add_session(self, name: str, windows: Sequence[str] = ("main",), cwd: str = "/tmp") -> None:
        self.sessions[name] = {window: FakePane(cwd=cwd) for window in windows}

    def pane(self, name: str, window: str) -> FakePane:
        return self.sessions[name][window]

    async def _invoke(self, *args: str, timeout: float) -> TmuxResult:  # type: ignore[override]
        self._invocations.append(tuple(args))
        subcommand = args[0]
        pending = self.failures.get(subcommand)
        if pending:
            return self._fail(args, pending.pop(0))

        handler = getattr(self, "_cmd_" + subcommand.lstrip("-").replace("-", "_"), None)
        if handler is None:
            return self._fail(args, f"unknown command: {subcommand}")
        try:
            outcome = handler(_options(args[1:]))
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except _FakeFailure as exc:
            return self._fail(args, str(exc))
        return TmuxResult(args=tuple(args), returncode=0, stdout=outcome or "", stderr="")

    def _fail(self, args: Sequence[str], stderr: str) -> TmuxResult:
        return TmuxResult(args=tuple(args), returncode=1, stdout="", stderr=stderr + "\n")

    def _resolve(self, target: str) -> tuple[str, str | None]:
        session, _, window = target.partition(":")
        if session not in self.sessions:
            if not self.sessions:
                raise _FakeFailure("no server running on /tmp/tmux-fake/default")
            raise _FakeFailure(f"can't find session: {session}")
        if not window:
            return session, None
        if window not in self.sessions[session]:
            raise _FakeFailure(f"can't find window: {window}")
        return session, window

    def _first_window(self, session: str, window: str | None) -> str:
        return window or next(iter(self.sessions[session]))

    def _cmd_V(self, options: dict[str, Any]) -> str:
        return "tmux 3.4-fake\n"

    def _cmd_new_session(self, options: dict[str, Any]) -> str:
        name = options["-s"]
        if name in self.sessions:
            raise _FakeFailure(f"duplicate session: {name}")
        self.add_session(name, (options.get("-n", "0"),), options.get("-c", "/tmp"))
        return ""

    def _cmd_new_window(self, options: dict[str, Any]) -> str:
        session, _ = self._resolve(options["-t"].rstrip(":"))
        self.sessions[session][options.get("-n", str(len(self.sessions[session])))] = FakePane(
            cwd=options.get("-c", "/tmp")
        )
        return ""

    def _cmd_list_windows(self, options: dict[str, Any]) -> str:
        session, _ = self._resolve(options["-t"])
        return "".join(f"{window}\n" for window in self.sessions[session])

    def _cmd_list_sessions(self, options: dict[str, Any]) -> str:
        if not self.sessions:
            raise _FakeFailure("no server running on /tmp/tmux-fake/default")
        return "".join(f"{name}\n" for name in self.sessions)

    def _cmd_has_session(self, options: dict[str, Any]) -> str:
        self._resolve(options["-t"])
        return ""

    def _cmd_kill_session(self, options: dict[str, Any]) -> str:
        session, _ = self._resolve(options["-t"])
        del self.sessions[session]
        return ""

    async def _cmd_send_keys(self, options: dict[str, Any]) -> str:
        session, window = self._resolve(options["-t"])
        window = self._first_window(session, window)
        pane = self.sessions[session][window]
        keys: list[str] = list(options["_args"])
        submit = not options.get("-l") and bool(keys) and keys[-1] in {"Enter", "C-m"}
        if submit:
            keys = keys[:-1]
        text = "".join(keys)
        if not submit:
            pane.pending += text
            return ""
        text, pane.pending = pane.pending + text, ""
        pane.lines.append(f"$ {text}")
        if session in self.unresponsive:
            return ""
        if text.startswith("echo "):
            pane.lines.append(text[5:].strip().strip("'\""))
        if self.on_send_keys is not None:
            outcome = self.on_send_keys(session, window, text)
            if inspect.isawaitable(outcome):
                await outcome
        return ""

    def _cmd_capture_pane(self, options: dict[str, Any]) -> str:
        session, window = self._resolve(options["-t"])
        pane = self.sessions[session][self._first_window(session, window)]
        lines = pane.lines
        start = options.get("-S", "-")
        if start != "-":
            lines = lines[int(start):]
        return "".join(f"{line}\n" for line in lines)

    def _cmd_display_message(self, options: dict[str, Any]) -> str:
        session, window = self._resolve(options["-t"])
        pane = self.sessions[session][self._first_window(session, window)]
        if "#{pane_current_command}" in options["_args"]:
            return f"{pane.command}\n"
        return f"{pane.cwd}\n"


class _FakeFailure(Exception):
    pass


def _options(argv: Sequence[str]) -> dict[str, Any]:
    options: dict[str, Any] = {"_args": []}
    flags_with_values = {"-s", "-n", "-c", "-t", "-F", "-S"}
    index = 0
    while index < len(argv):
        token = argv[index]
        if token in flags_with_values and index + 1 < len(argv):
            options[token] = argv[index + 1]
            index += 2
            continue
        if token in {"-d", "-p", "-l"}:
            options[token] = True
        else:
            options["_args"].append(token)
        index += 1
    return options
