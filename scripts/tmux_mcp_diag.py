"""tmux-mcp diagnostics CLI."""

from __future__ import annotations

import argparse
import asyncio
import json
from pathlib import Path

from tmux_mcp.artifacts import sweep_stale_artifacts
from tmux_mcp.config import TmuxMcpSettings
from tmux_mcp.sessions import SessionManager
from tmux_mcp.storage import ChromaStore, ChromaUnavailableError
from tmux_mcp.tmux import TmuxAdapter, TmuxError, TmuxNotFoundError


def build_manager(settings: TmuxMcpSettings) -> SessionManager:
    try:
        adapter = TmuxAdapter(
            Path(settings.tmux_path) if settings.tmux_path else None,
            default_timeout=settings.adapter_timeout,
        )
    except TmuxNotFoundError as exc:
        print(f"tmux unavailable: {exc}")
        raise SystemExit(1)
    return SessionManager(
        adapter,
        session_suffix=settings.session_suffix,
        artifact_dir=settings.artifact_dir,
        idle_threshold_minutes=settings.idle_threshold_minutes,
    )


def load_store(settings: TmuxMcpSettings) -> ChromaStore:
    store = ChromaStore(settings.history_persist_path)
    try:
        store.ping()
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)
    return store


def cmd_sessions(args: argparse.Namespace) -> None:
    manager = build_manager(TmuxMcpSettings())
    try:
        workspaces = asyncio.run(manager.list_workspaces())
    except TmuxError as exc:
        print(f"tmux error: {exc}")
        raise SystemExit(1)
    if args.json:
        print(json.dumps(workspaces, indent=2))
    else:
        for workspace in workspaces:
            print(f"{workspace['session_id']}: {', '.join(workspace['windows'])}")


def cmd_health(args: argparse.Namespace) -> None:
    manager = build_manager(TmuxMcpSettings())

    async def _collect() -> dict[str, object]:
        health = (await manager.get_session_health(args.session_id)).to_dict()
        if args.probe and health["exists"]:
            health["responsive"] = await manager.probe_session(args.session_id)
        return health

    try:
        payload = asyncio.run(_collect())
    except TmuxError as exc:
        print(f"tmux error: {exc}")
        raise SystemExit(1)
    print(json.dumps(payload, indent=2))


def cmd_sweep(args: argparse.Namespace) -> None:
    settings = TmuxMcpSettings()
    max_age = (args.max_age_minutes or settings.stale_artifact_minutes) * 60
    removed = sweep_stale_artifacts(settings.artifact_dir, max_age)
    print(
        json.dumps(
            {"artifact_dir": str(settings.artifact_dir), "removed": [str(path) for path in removed]},
            indent=2,
        )
    )


def cmd_history(args: argparse.Namespace) -> None:
    store = load_store(TmuxMcpSettings())
    try:
        entries = store.list_executions(args.session_id, limit=args.limit)
    except ChromaUnavailableError as exc:
        print(f"Chroma unavailable: {exc}")
        raise SystemExit(1)
    print(json.dumps([entry.to_dict() for entry in entries], indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="tmux-mcp diagnostics")
    sub = parser.add_subparsers(dest="cmd")

    p_sessions = sub.add_parser("sessions", help="List managed tmux sessions and their windows")
    p_sessions.add_argument("--json", action="store_true", help="Output JSON")
    p_sessions.set_defaults(func=cmd_sessions)

    p_health = sub.add_parser("health", help="Show a health snapshot for one session")
    p_health.add_argument("session_id")
    p_health.add_argument(
        "--probe",
        action="store_true",
        help="Also echo a tag into the session to check it responds",
    )
    p_health.set_defaults(func=cmd_health)

    p_sweep = sub.add_parser("sweep", help="Delete stale execution artifacts")
    p_sweep.add_argument(
        "--max-age-minutes",
        type=float,
        default=None,
        help="Override TMUX_MCP_STALE_ARTIFACT_MINUTES",
    )
    p_sweep.set_defaults(func=cmd_sweep)

    p_history = sub.add_parser("history", help="List recorded executions for a session")
    p_history.add_argument("session_id")
    p_history.add_argument(
        "--limit",
        type=int,
        default=None,
        help="If provided, show only the latest N executions",
    )
    p_history.set_defaults(func=cmd_history)

    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return
    args.func(args)


if __name__ == "__main__":
    main()
