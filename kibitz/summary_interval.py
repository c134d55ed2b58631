"""Summary interval options shared by the engine, the settings store, the CLI and the API."""
from __future__ import annotations

import re
from typing import Any, Optional

# (token, label, milliseconds)
SUMMARY_INTERVAL_OPTIONS: list[tuple[str, str, int]] = [
    ("15s", "15 sec", 15_000),
    ("30s", "30 sec", 30_000),
    ("1m", "1 min", 60_000),
    ("5m", "5 min", 5 * 60_000),
    ("15m", "15 min", 15 * 60_000),
    ("1h", "1 hour", 60 * 60_000),
]

DEFAULT_SUMMARY_INTERVAL_MS = 30_000
MAX_WAIT_MULTIPLIER = 3

_ALLOWED_MS = {ms for _, _, ms in SUMMARY_INTERVAL_OPTIONS}
_UNIT_RE = re.compile(r"^(\d+)\s*(s|sec|secs|second|seconds|m|min|mins|minute|minutes|h|hr|hour|hours)$")
_UNIT_MS = {"s": 1_000, "m": 60_000, "h": 3_600_000}


def normalize_summary_interval_ms(value: Any) -> int:
    """Return ``value`` when it is one of the fixed options, else the default."""
    if isinstance(value, bool):
        return DEFAULT_SUMMARY_INTERVAL_MS
    try:
        number = int(value)
    except (TypeError, ValueError):
        return DEFAULT_SUMMARY_INTERVAL_MS
    return number if number in _ALLOWED_MS else DEFAULT_SUMMARY_INTERVAL_MS


def parse_summary_interval_input(raw: Any) -> Optional[int]:
    """Parse '30s', '1 min', '300' (seconds) or '5m'; None when not one of the options."""
    text = str(raw or "").strip().lower()
    if not text:
        return None
    for token, label, ms in SUMMARY_INTERVAL_OPTIONS:
        if text == token or text == label.lower():
            return ms
    if text.isdigit():
        ms = int(text) * 1_000
        return ms if ms in _ALLOWED_MS else None
    match = _UNIT_RE.match(text)
    if not match:
        return None
    ms = int(match.group(1)) * _UNIT_MS[match.group(2)[0]]
    return ms if ms in _ALLOWED_MS else None


def summary_interval_label(ms: int) -> str:
    for _, label, option_ms in SUMMARY_INTERVAL_OPTIONS:
        if option_ms == ms:
            return label
    return f"{ms // 1000} sec"


def summary_interval_token(ms: int) -> str:
    for token, _, option_ms in SUMMARY_INTERVAL_OPTIONS:
        if option_ms == ms:
            return token
    return f"{ms // 1000}s"


def idle_seconds(ms: int) -> float:
    return normalize_summary_interval_ms(ms) / 1000.0


def max_wait_seconds(ms: int) -> float:
    return idle_seconds(ms) * MAX_WAIT_MULTIPLIER
