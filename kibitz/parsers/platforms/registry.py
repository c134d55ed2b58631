"""Decoder registry and log discovery for platform-specific implementations."""
from __future__ import annotations

from datetime import date, timedelta
from pathlib import Path
from typing import Callable, Iterable

from kibitz.models import ActivityEvent
from kibitz.parsers.platforms.claude_code import parser as claude_code_parser
from kibitz.parsers.platforms.codex import parser as codex_parser

LineDecoder = Callable[[str, str], list[ActivityEvent]]

_DECODERS: dict[str, LineDecoder] = {
    "claude": claude_code_parser.parse_line,
    "codex": codex_parser.parse_line,
}


def supported_agents() -> list[str]:
    return list(_DECODERS)


def decode_line(agent: str, line: str, file_path: str) -> list[ActivityEvent]:
    """Decode one raw log line by delegating to the matching platform decoder."""
    decoder = _DECODERS.get(agent)
    if decoder is None:
        return []
    return decoder(line, file_path)


def discover_claude_logs(projects_dir: Path) -> Iterable[Path]:
    """Yield transcripts under ~/.claude/projects/<encoded-project>/*.jsonl."""
    if not projects_dir.is_dir():
        return
    try:
        project_dirs = [p for p in projects_dir.iterdir() if p.is_dir()]
    except OSError:
        return
    for project_dir in project_dirs:
        try:
            yield from project_dir.glob("*.jsonl")
        except OSError:
            continue


def discover_codex_logs(sessions_dir: Path, today: date | None = None) -> Iterable[Path]:
    """Yield rollouts under ~/.codex/sessions/YYYY/MM/DD for today and yesterday."""
    current = today or date.today()
    for day in (current, current - timedelta(days=1)):
        day_dir = sessions_dir / f"{day.year:04d}" / f"{day.month:02d}" / f"{day.day:02d}"
        if not day_dir.is_dir():
            continue
        try:
            yield from day_dir.glob("*.jsonl")
        except OSError:
            continue
