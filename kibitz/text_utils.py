"""Shared string, path and timestamp helpers for decoders and the registry."""
from __future__ import annotations

import re
import time
from datetime import datetime, timezone
from typing import Any

_PATH_SPLIT_RE = re.compile(r"[\\/]+")
_WHITESPACE_RE = re.compile(r"\s+")


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


def collapse_whitespace(value: Any) -> str:
    return _WHITESPACE_RE.sub(" ", str(value or "")).strip()


def path_parts(path: str) -> list[str]:
    """Split Unix or Windows paths into non-empty segments."""
    return [part for part in _PATH_SPLIT_RE.split(str(path or "")) if part]


def short_path(path: str) -> str:
    parts = path_parts(path)
    if len(parts) <= 3:
        return str(path or "")
    return ".../" + "/".join(parts[-2:])


def project_name_from_cwd(cwd: str) -> str:
    parts = path_parts(cwd)
    return parts[-1] if parts else "unknown"


def project_name_from_encoded_dir(dir_name: str) -> str:
    """Claude encodes the project path into its directory name: -Users-me-projects-room → room."""
    segments = [segment for segment in str(dir_name or "").split("-") if segment]
    return segments[-1] if segments else "unknown"


def file_stem(file_path: str) -> str:
    parts = path_parts(file_path)
    if not parts:
        return ""
    name = parts[-1]
    if name.lower().endswith(".jsonl"):
        name = name[: -len(".jsonl")]
    return name


def parent_dir_name(file_path: str) -> str:
    parts = path_parts(file_path)
    return parts[-2] if len(parts) >= 2 else ""


def parse_timestamp(value: Any) -> float:
    """Convert an ISO-8601 string (or epoch number) into epoch seconds; now() when unusable."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        number = float(value)
        # Millisecond epochs are common in JS-produced logs.
        return number / 1000.0 if number > 1e11 else number
    token = str(value or "").strip()
    if not token:
        return time.time()
    try:
        parsed = datetime.fromisoformat(token.replace("Z", "+00:00"))
    except ValueError:
        return time.time()
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()
