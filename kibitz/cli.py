#!/usr/bin/env python3
"""Kibitz command line.

Usage:
  kibitz watch [--model opus] [--focus "roast everything"] [--agent claude]
  kibitz sessions
  kibitz dispatch --agent codex --session <id> "run the tests again"
  kibitz dispatch --new claude "start on the login bug"
  kibitz serve [--host 127.0.0.1] [--port 8765]
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import re
import sys
from datetime import datetime
from typing import Optional

from kibitz import config
from kibitz.file_watcher import file_watcher
from kibitz.models import CommentaryUpdate, DispatchRequest, DispatchStatus, DispatchTarget
from kibitz.platform_support import inherit_shell_path
from kibitz.runtime import build_runtime
from kibitz.services.commentary_prompts import COMMENTARY_PRESETS
from kibitz.services.session_dispatch import TerminalLauncher
from kibitz.summary_interval import parse_summary_interval_input, summary_interval_label

_BOLD_RE = re.compile(r"\*\*(.+?)\*\*")


def _ansi(code: str, text: str) -> str:
    return f"\x1b[{code}m{text}\x1b[0m"


def bold(text: str) -> str:
    return _ansi("1", text)


def dim(text: str) -> str:
    return _ansi("2", text)


def red(text: str) -> str:
    return _ansi("31", text)


def agent_color(agent: str, text: str) -> str:
    return _ansi("33" if agent == "claude" else "32", text)


def format_commentary(text: str) -> str:
    """Render **bold** markdown as terminal bold."""
    return _BOLD_RE.sub(lambda match: bold(match.group(1)), text)


def resolve_model(value: Optional[str]) -> Optional[str]:
    """Accept a model id or a fragment of its label ('opus', 'mini')."""
    if not value:
        return None
    needle = value.strip().lower()
    for model_id, label, _ in config.MODELS:
        if needle == model_id.lower():
            return model_id
    for model_id, label, _ in config.MODELS:
        if needle in label.lower() or needle in model_id.lower():
            return model_id
    return None


def _time_str() -> str:
    return datetime.now().strftime("%H:%M:%S")


def print_update(update: CommentaryUpdate) -> None:
    entry = update.entry
    if update.kind == "start" and entry is not None:
        badge = agent_color(entry.agent, f"{entry.agent}/{entry.projectName}")
        title = f" {dim(entry.sessionTitle)}" if entry.sessionTitle else ""
        print(f"  {dim(_time_str())} {badge}{title}")
        print(f"  {dim(entry.eventSummary[:200])}")
    elif update.kind == "done" and entry is not None:
        for line in format_commentary(entry.commentary).splitlines():
            print(f"  {line}")
        print()
    elif update.kind == "error":
        print(f"  {red('Error:')} {update.error}\n")
    elif update.kind == "interval" and update.intervalMs:
        print(dim(f"  Summary interval: {summary_interval_label(update.intervalMs)}\n"))


def print_status(status: DispatchStatus) -> None:
    marker = red(status.state) if status.state == "failed" else bold(status.state)
    print(f"  {dim(_time_str())} {marker} {status.message}")


async def _watch(args: argparse.Namespace) -> int:
    runtime = build_runtime(agent_filter=args.agent)
    engine = runtime.engine

    model = resolve_model(args.model)
    if args.model and model is None:
        print(red(f"Unknown model: {args.model}"))
        return 2
    interval_ms = None
    if args.interval:
        interval_ms = parse_summary_interval_input(args.interval)
        if interval_ms is None:
            print(red(f"Unsupported interval: {args.interval} (use 15s, 30s, 1m, 5m, 15m or 1h)"))
            return 2
    engine.configure(model=model, preset=args.preset, focus=args.focus)
    if interval_ms is not None:
        engine.set_summary_interval(interval_ms)
    engine.subscribe(print_update)

    print(bold("\n  KIBITZ") + dim(" - live AI agent commentary\n"))
    print(dim(f"  Model: {engine.model}"))
    print(dim(f"  Summary interval: {summary_interval_label(engine.summary_interval_ms)}"))
    if engine.focus:
        print(dim(f"  Focus: {engine.focus}"))
    if args.agent:
        print(dim(f"  Agent filter: {args.agent}"))
    print(dim("  Watching for sessions... (Ctrl+C to exit)\n"))

    await runtime.registry.start()
    await file_watcher.start(runtime.registry)
    try:
        await asyncio.Event().wait()
    finally:
        await file_watcher.stop()
        await runtime.registry.stop()
        await runtime.engine.close()
    return 0


def _sessions(args: argparse.Namespace) -> int:
    runtime = build_runtime()
    runtime.registry.scan()
    sessions = runtime.registry.get_active_sessions()
    if not sessions:
        print("No active sessions.")
        return 0
    for session in sessions:
        seen = datetime.fromtimestamp(session.lastActivity).strftime("%H:%M:%S")
        title = session.sessionTitle or ""
        print(f"{session.agent:<7} {session.id:<38} {seen}  {session.projectName:<20} {title}")
    return 0


async def _dispatch(args: argparse.Namespace) -> int:
    instruction = " ".join(args.instruction).strip()
    if args.new:
        target = DispatchTarget(kind="new-codex" if args.new == "codex" else "new-claude")
    else:
        target = DispatchTarget(kind="existing", agent=args.agent, sessionId=args.session)

    launcher = TerminalLauncher()
    runtime = build_runtime(launch_interactive=launcher)
    runtime.registry.scan()
    runtime.dispatch_service.subscribe(print_status)
    status = await runtime.dispatch_service.dispatch(DispatchRequest(target=target, instruction=instruction))
    if status.state != "sent":
        return 1
    # keep the terminal attached to the new session until it exits
    await launcher.wait()
    return 0


def _serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("kibitz.main:app", host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="kibitz", description="Live commentary on AI coding agents")
    parser.add_argument("--verbose", "-v", action="store_true", help="Log registry and engine activity")
    subparsers = parser.add_subparsers(dest="command")

    watch = subparsers.add_parser("watch", help="Stream commentary for active sessions")
    watch.add_argument("--model", default="", help="Model id or label fragment (opus, sonnet, haiku, gpt-4o, mini)")
    watch.add_argument("--focus", default=None, help='Extra instruction, e.g. "roast everything"')
    watch.add_argument("--preset", default=None, choices=sorted(COMMENTARY_PRESETS), help="Tone preset")
    watch.add_argument("--interval", default="", help="Summary interval: 15s, 30s, 1m, 5m, 15m, 1h")
    watch.add_argument("--agent", default=None, choices=["claude", "codex"], help="Only comment on one agent")

    subparsers.add_parser("sessions", help="List active sessions")

    dispatch = subparsers.add_parser("dispatch", help="Send an instruction to a session")
    dispatch.add_argument("--session", default="", help="Existing session id")
    dispatch.add_argument("--agent", default=None, choices=["claude", "codex"], help="Agent of the existing session")
    dispatch.add_argument("--new", default=None, choices=["claude", "codex"], help="Start a new session instead")
    dispatch.add_argument("instruction", nargs="+", help="Instruction text")

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default=config.HOST)
    serve.add_argument("--port", type=int, default=config.PORT)
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    raw = list(argv) if argv is not None else sys.argv[1:]
    args = parser.parse_args(raw)
    if args.command is None:
        args = parser.parse_args([*raw, "watch"])
    command = args.command

    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING)
    inherit_shell_path()

    if command == "dispatch" and not args.new and not (args.session and args.agent):
        parser.error("dispatch needs --session and --agent, or --new")

    try:
        if command == "watch":
            return asyncio.run(_watch(args))
        if command == "sessions":
            return _sessions(args)
        if command == "dispatch":
            return asyncio.run(_dispatch(args))
        if command == "serve":
            return _serve(args)
    except KeyboardInterrupt:
        print(dim("\n  Kibitz out."))
        return 0
    parser.error(f"Unknown command: {command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
