"""Prompt templates and text post-processing for generated commentary.

The two ``SELF_PROMPT_MARKERS`` phrases appear in every prompt this package
sends to a text backend. When the backend is an agent CLI, those prompts land
in that CLI's own session log; the session registry looks for both phrases to
recognise (and permanently ignore) such files.
"""
from __future__ import annotations

import re
from typing import Iterable

from kibitz.models import ActivityEvent, CommentaryAssessment

SELF_PROMPT_MARKERS: tuple[str, str] = (
    "You oversee AI coding agents",
    "Assess the overall approach and strategy",
)

FALLBACK_COMMENTARY = "The agent kept working, but nothing in this stretch stood out enough to call."

SYSTEM_RULES = f"""{SELF_PROMPT_MARKERS[0]}. Summarize what they did in plain language anyone can understand.

Rules:
- Plain language. "Fixed the login page" not "Edited auth middleware".
- Bold only names and key nouns (1-2 words max): **agent**, **tests**, **deploy**. Never bold full sentences.
- Use UPPER CASE for emotional reactions: NICE CATCH, RISKY MOVE, GREAT WORK, NOT IDEAL, FINALLY.
- No filler. No "methodical", "surgical", "clean work". Just facts and reactions.
- Never mention session ids, log files, transcripts or how you know what happened.
- Respect the computed assessment. Do not call the work on track if it says drifting or blocked.
- If the assessment reports a security finding, say so plainly with the words SECURITY ALERT or SECURITY WATCH.
- Finish with one short verdict line that says on track, drifting or blocked."""

# Output-format templates, rotated so consecutive entries read differently.
COMMENTARY_STYLES: dict[str, tuple[str, str]] = {
    "bullets": (
        "Bullets",
        "Format: one lead sentence, then 2-4 short bullets. Each bullet = one thing that happened or one observation.",
    ),
    "one-liner": (
        "One-liner",
        "Format: a single punchy sentence (max 30 words) followed by the verdict line.",
    ),
    "scorecard": (
        "Scorecard",
        "Format: 3 labelled rows (Progress / Risk / Next), each under 15 words, then the verdict line.",
    ),
    "headline": (
        "Headline",
        "Format: a newspaper-style headline in UPPER CASE, one sentence of context, then the verdict line.",
    ),
    "play-by-play": (
        "Play-by-play",
        "Format: sports-commentator play-by-play in 2-3 sentences, then the verdict line.",
    ),
}

COMMENTARY_PRESETS: dict[str, tuple[str, str]] = {
    "auto": ("Auto", ""),
    "critic": ("Critic", "Tone: skeptical senior reviewer. Call out shortcuts and missing verification."),
    "coach": ("Coach", "Tone: supportive coach. Point out what to do next."),
    "hype": ("Hype", "Tone: excited sports commentator. Keep the facts straight."),
    "eli5": ("Explain simply", "Tone: explain for non-developers. No jargon at all."),
}

DEFAULT_PRESET = "auto"


def build_system_prompt(style_id: str, preset_id: str = DEFAULT_PRESET, focus: str = "") -> str:
    sections = [SYSTEM_RULES]
    style = COMMENTARY_STYLES.get(style_id)
    if style:
        sections.append(style[1])
    preset = COMMENTARY_PRESETS.get(preset_id)
    if preset and preset[1]:
        sections.append(preset[1])
    if focus.strip():
        sections.append(f"Additional user instruction: {focus.strip()}")
    return "\n\n".join(sections)


def _session_label(event: ActivityEvent) -> str:
    label = f"{event.agent}/{event.projectName}"
    if event.sessionTitle:
        label += f" › {event.sessionTitle}"
    return label


def format_assessment(assessment: CommentaryAssessment) -> str:
    counts = assessment.counts
    lines = [
        "Assessment (computed from the raw actions; do not contradict it):",
        f"- direction: {assessment.direction}",
        f"- confidence: {assessment.confidence}",
        f"- security: {assessment.security}",
        (
            f"- counts: reads={counts.reads} writes={counts.writes} searches={counts.searches} "
            f"commands={counts.commands} tests={counts.tests} deploys={counts.deploys} errors={counts.errors}"
        ),
    ]
    for finding in assessment.findings:
        lines.append(f"- security finding ({finding.severity}): {finding.label}")
    return "\n".join(lines)


def build_user_prompt(
    events: list[ActivityEvent],
    assessment: CommentaryAssessment,
    recent_commentary: Iterable[str] = (),
) -> str:
    by_session: dict[str, list[ActivityEvent]] = {}
    for event in events:
        by_session.setdefault(_session_label(event), []).append(event)

    sections: list[str] = []
    for label, session_events in by_session.items():
        lines = [f"  {event.type}: {event.summary}" for event in session_events]
        sections.append(f"[{label}] Actions ({len(session_events)}):\n" + "\n".join(lines))

    parts = ["\n\n".join(sections), format_assessment(assessment)]
    recent = [text for text in recent_commentary if text.strip()]
    if recent:
        parts.append(
            "Earlier commentary on this session (do not repeat it):\n"
            + "\n".join(f"- {text.splitlines()[0]}" for text in recent)
        )
    parts.append(f"{SELF_PROMPT_MARKERS[1]}. What's the agent doing right or wrong?")
    return "\n\n".join(parts)


# ── Post-processing ────────────────────────────────────────────────

# (pattern, replacement) evaluated in order.
_REDACTION_RULES: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"\brollout-\d{4}-\d{2}-\d{2}T[\w-]+(?:\.jsonl)?", re.IGNORECASE), "[log]"),
    (re.compile(r"\b[\w./\\-]+\.jsonl\b", re.IGNORECASE), "[log]"),
    (re.compile(r"\b(?:session|turn|thread)[\s:_#-]*[0-9a-f]{8}(?:-[0-9a-f]{4}){3}-[0-9a-f]{12}\b", re.IGNORECASE), "[id]"),
    (re.compile(r"\b[0-9a-f]{8}(?:-[0-9a-f]{4}){3}-[0-9a-f]{12}\b", re.IGNORECASE), "[id]"),
    (re.compile(r"\b(?:session|turn|thread)[\s:_#-]*[0-9a-f]{8,}\b", re.IGNORECASE), "[id]"),
    (re.compile(r"\b(?:toolu|call|msg|req)_[A-Za-z0-9]{8,}\b"), "[id]"),
]

_META_LINE_PATTERNS: list[re.Pattern[str]] = [
    re.compile(
        r"\b(?:i|i'm|i am|i've|i have|let me|we|we've)\b[^.\n]{0,60}\b"
        r"(?:read|reading|looked at|looking at|checked|checking|scan(?:ned|ning)?|parsed?|review(?:ed|ing)?)\b"
        r"[^.\n]{0,60}\b(?:logs?|jsonl|transcripts?|session files?|event stream|rollouts?)\b",
        re.IGNORECASE,
    ),
    re.compile(r"^\s*(?:based on|according to) (?:the )?(?:logs?|transcripts?|session data)\b", re.IGNORECASE),
    re.compile(r"^\s*as an ai\b", re.IGNORECASE),
]


def redact_identifiers(text: str) -> str:
    for pattern, replacement in _REDACTION_RULES:
        text = pattern.sub(replacement, text)
    return text


def is_meta_line(line: str) -> bool:
    return any(pattern.search(line) for pattern in _META_LINE_PATTERNS)


def sanitize_commentary(text: str) -> str:
    """Redact id-like tokens, drop meta lines, never return an empty string."""
    kept: list[str] = []
    for line in redact_identifiers(text or "").splitlines():
        if is_meta_line(line):
            continue
        kept.append(line.rstrip())
    cleaned = "\n".join(kept).strip()
    cleaned = re.sub(r"\n{3,}", "\n\n", cleaned)
    return cleaned or FALLBACK_COMMENTARY
