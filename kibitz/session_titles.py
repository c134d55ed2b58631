"""Session title resolution: out-of-band title store and noise-title filters."""
from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Optional

from kibitz.services.commentary_prompts import COMMENTARY_PRESETS, COMMENTARY_STYLES, SELF_PROMPT_MARKERS
from kibitz.text_utils import collapse_whitespace

logger = logging.getLogger("kibitz.registry")

TITLE_MAX_LENGTH = 80

# (pattern, label) pairs; any match means the value is an identifier, not a name.
CODE_LIKE_NAME_RULES: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"^[0-9a-f]{8}$"), "short-hex"),
    (re.compile(r"^[0-9a-f]{8}(?:-[0-9a-f]{4}){3}-[0-9a-f]{12}$"), "uuid"),
    (re.compile(r"^session[\s:_-]*[0-9a-f]{8,}$"), "session-token"),
    (re.compile(r"^turn[\s:_-]*[0-9a-f]{8,}$"), "turn-token"),
    (re.compile(r"^rollout-\d{4}-\d{2}-\d{2}t\d{2}[-:]\d{2}[-:]\d{2}[-a-z0-9]+(?:\.jsonl)?$"), "rollout-file"),
    (re.compile(r"^[0-9a-f]{16,}$"), "long-hex"),
]

# Titles that are really a shell command echoed back as the first prompt.
COMMAND_LIKE_TITLE_RULES: list[tuple[re.Pattern[str], str]] = [
    (
        re.compile(
            r"^(?:read|cat|rg|grep|ls|sed|awk|find|git|npm|pnpm|yarn|node|python3?|pytest|cargo|go|cp|mv|rm|touch|open|cd)\b"
        ),
        "shell-command",
    ),
    (re.compile(r"^<[a-z_-]+>"), "harness-tag"),
    (re.compile(r"^caveat: the messages below were generated"), "harness-caveat"),
    (re.compile(r"^\[request interrupted"), "interrupt-marker"),
]


def _instruction_prefixes() -> tuple[str, ...]:
    """Opening words of every instruction line this package puts into its own prompts."""
    prefixes = [marker.lower() for marker in SELF_PROMPT_MARKERS]
    for _, instruction in list(COMMENTARY_STYLES.values()) + list(COMMENTARY_PRESETS.values()):
        if instruction:
            prefixes.append(instruction.lower()[:24])
    prefixes.extend([
        "summarize what they did in plain language",
        "assessment (computed from the raw actions",
        "earlier commentary on this session",
        "additional user instruction:",
        "rules:",
    ])
    return tuple(prefixes)


_SELF_INSTRUCTION_PREFIXES = _instruction_prefixes()


def is_code_like_name(value: Optional[str]) -> bool:
    text = collapse_whitespace(value).lower()
    if not text:
        return True
    return any(pattern.match(text) for pattern, _ in CODE_LIKE_NAME_RULES)


def is_command_like_title(value: Optional[str]) -> bool:
    text = collapse_whitespace(value).lower()
    if not text or len(text) > 140:
        return False
    return any(pattern.match(text) for pattern, _ in COMMAND_LIKE_TITLE_RULES)


def contains_self_prompt(value: Optional[str]) -> bool:
    """True when the text is (part of) a prompt this package generated."""
    text = collapse_whitespace(value).lower()
    if not text:
        return False
    if any(marker.lower() in text for marker in SELF_PROMPT_MARKERS):
        return True
    return text.startswith(_SELF_INSTRUCTION_PREFIXES)


def is_noise_title(value: Optional[str]) -> bool:
    return is_code_like_name(value) or is_command_like_title(value) or contains_self_prompt(value)


def clean_title(raw: Optional[str]) -> str:
    """First non-empty line, whitespace collapsed, truncated; empty when it is noise."""
    lines = [collapse_whitespace(line) for line in str(raw or "").splitlines()]
    first = next((line for line in lines if line), "")
    if not first or is_noise_title(first):
        return ""
    if len(first) > TITLE_MAX_LENGTH:
        first = first[: TITLE_MAX_LENGTH - 3].rstrip() + "..."
    return first


class CodexTitleStore:
    """Reads thread titles Codex keeps outside the rollout logs.

    ``~/.codex/.codex-global-state.json`` → ``{"thread-titles": {"titles": {id: title}}}``.
    Reloaded only when the file's mtime changes.
    """

    def __init__(self, state_path: Path):
        self.state_path = state_path
        self._mtime: Optional[float] = None
        self._titles: dict[str, str] = {}

    def _refresh(self) -> None:
        try:
            mtime = self.state_path.stat().st_mtime
        except OSError:
            self._mtime = None
            self._titles = {}
            return
        if mtime == self._mtime:
            return
        self._mtime = mtime
        try:
            data = json.loads(self.state_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.debug("Could not read codex title store %s: %s", self.state_path, e)
            self._titles = {}
            return
        raw_titles = ((data or {}).get("thread-titles") or {}).get("titles") or {}
        titles: dict[str, str] = {}
        if isinstance(raw_titles, dict):
            for key, value in raw_titles.items():
                normalized_key = str(key or "").strip().lower()
                title = collapse_whitespace(value)
                if normalized_key and title:
                    titles[normalized_key] = title
        self._titles = titles

    def get_title(self, agent: str, session_id: str) -> Optional[str]:
        if agent != "codex" or not session_id:
            return None
        self._refresh()
        title = clean_title(self._titles.get(session_id.strip().lower()))
        return title or None
