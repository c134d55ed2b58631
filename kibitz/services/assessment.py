"""Heuristic batch assessment: activity counts, direction, confidence and security.

Everything here is computed from the raw events, never from generated text, so
the verdict can be enforced on whatever the text backend returns.
"""
from __future__ import annotations

import json
import re
from typing import Iterable

from kibitz.models import (
    ActivityCounts,
    ActivityEvent,
    CommentaryAssessment,
    SecurityFinding,
)

# Tool name → activity category.
TOOL_CATEGORIES: dict[str, str] = {
    "Read": "reads",
    "read_file": "reads",
    "file_read": "reads",
    "view_image": "reads",
    "Write": "writes",
    "Edit": "writes",
    "MultiEdit": "writes",
    "NotebookEdit": "writes",
    "write_file": "writes",
    "file_write": "writes",
    "edit_file": "writes",
    "apply_diff": "writes",
    "apply_patch": "writes",
    "Grep": "searches",
    "Glob": "searches",
    "WebSearch": "searches",
    "WebFetch": "searches",
    "web_search": "searches",
    "Bash": "commands",
    "shell": "commands",
    "run_command": "commands",
    "exec_command": "commands",
    "local_shell": "commands",
    "container.exec": "commands",
}

# (pattern, category) evaluated against shell command text; every match counts.
COMMAND_RULES: list[tuple[re.Pattern[str], str]] = [
    (
        re.compile(
            r"\b(?:npm|pnpm|yarn|bun)\s+(?:run\s+)?test\b|\bpytest\b|\bpython3?\s+-m\s+(?:pytest|unittest)\b"
            r"|\b(?:go|cargo|dotnet|mvn|gradle)\s+test\b|\bjest\b|\bvitest\b|\bplaywright\s+test\b|\brspec\b"
        ),
        "tests",
    ),
    (
        re.compile(
            r"\b(?:vercel|netlify)\b(?:\s+deploy|\s+--prod)|\bfly(?:ctl)?\s+deploy\b|\bkubectl\s+(?:apply|rollout)\b"
            r"|\bdocker\s+push\b|\b(?:npm|pnpm|yarn)\s+publish\b|\bterraform\s+apply\b|\bgit\s+push\b"
        ),
        "deploys",
    ),
    (re.compile(r"^\s*(?:rg|grep|ag|find|fd)\b"), "searches"),
    (re.compile(r"^\s*(?:cat|head|tail|less|more|sed\s+-n|nl|wc)\b"), "reads"),
    (re.compile(r"^\s*(?:tee|touch|mkdir|mv|cp)\b|\s>>?\s*\S"), "writes"),
]

# (id, pattern, severity, label) evaluated in order against tool-call text.
SECURITY_RULES: list[tuple[str, re.Pattern[str], str, str]] = [
    (
        "remote-script-pipe",
        re.compile(r"\b(?:curl|wget)\b[^|\n]*\|\s*(?:sudo\s+)?(?:ba|z|k|da)?sh\b", re.IGNORECASE),
        "alert",
        "pipes a remote download straight into a shell",
    ),
    (
        "root-delete",
        re.compile(r"\brm\s+(?:-[a-z]*r[a-z]*f[a-z]*|-[a-z]*f[a-z]*r[a-z]*|-r\s+-f|-f\s+-r)\s+(?:/|~|\$HOME)/?\*?(?=$|[\s;&|'\"])", re.IGNORECASE | re.MULTILINE),
        "alert",
        "recursive delete of a root or home path",
    ),
    (
        "plaintext-secret-token",
        re.compile(r"\b(?:sk-[A-Za-z0-9_-]{20,}|AKIA[0-9A-Z]{16}|ghp_[A-Za-z0-9]{30,}|xox[bap]-[A-Za-z0-9-]{10,})\b"),
        "alert",
        "a secret-looking token appears in a command",
    ),
    (
        "world-writable",
        re.compile(r"\bchmod\s+(?:-R\s+)?(?:0?777|a\+rwx|-R\b)", re.IGNORECASE),
        "watch",
        "broad file permission change",
    ),
    (
        "tls-disabled",
        re.compile(
            r"--insecure\b|\bcurl\b[^\n]*\s-k\b|NODE_TLS_REJECT_UNAUTHORIZED\s*=\s*['\"]?0|verify\s*=\s*False"
            r"|GIT_SSL_NO_VERIFY|strict-ssl\s+false",
            re.IGNORECASE,
        ),
        "watch",
        "TLS certificate verification disabled",
    ),
    (
        "secret-argument",
        re.compile(r"(?:--?(?:api[-_]?key|token|secret|password|passwd)[= ]|\b(?:API_KEY|TOKEN|SECRET|PASSWORD)=)\S{6,}", re.IGNORECASE),
        "watch",
        "secret-looking value passed as a command argument",
    ),
    (
        "sensitive-path",
        re.compile(r"(?:^|[\s'\"/])(?:\.ssh/|id_rsa|id_ed25519|\.aws/credentials|\.env(?:\.[a-z]+)?\b)", re.IGNORECASE),
        "watch",
        "touches credentials or environment files",
    ),
    (
        "force-push",
        re.compile(r"\bgit\s+push\b[^\n]*(?:--force\b|-f\b)", re.IGNORECASE),
        "watch",
        "force-pushes git history",
    ),
    (
        "sudo",
        re.compile(r"(?:^|[;&|]\s*)sudo\s", re.IGNORECASE),
        "watch",
        "runs a command with sudo",
    ),
]

_VERDICT_RE = re.compile(
    r"^\s*(?:\*\*)?(?:verdict\s*:\s*(?:\*\*)?\s*)?(?:on[\s-]track|drifting|blocked)\b",
    re.IGNORECASE,
)
_SECURITY_CALLOUT_RE = re.compile(r"\bSECURITY\s+(ALERT|WATCH)\b")

_DIRECTION_LABELS = {
    "on-track": "On track",
    "drifting": "Drifting",
    "blocked": "Blocked",
}


def _command_of(event: ActivityEvent) -> str:
    details = event.details
    command = details.get("command")
    if isinstance(command, str) and command:
        return command
    tool_input = details.get("input")
    if isinstance(tool_input, dict):
        value = tool_input.get("command") or tool_input.get("cmd")
        if isinstance(value, list):
            return " ".join(str(part) for part in value)
        if isinstance(value, str):
            return value
    return ""


def _security_text(event: ActivityEvent) -> str:
    """Command plus serialized tool input; what the security rules are matched against."""
    parts = [_command_of(event)]
    tool_input = event.details.get("input")
    if isinstance(tool_input, dict) and tool_input:
        try:
            parts.append(json.dumps(tool_input, ensure_ascii=False, sort_keys=True)[:4000])
        except (TypeError, ValueError):
            parts.append(str(tool_input)[:4000])
    return "\n".join(part for part in parts if part)


def _categories_for(event: ActivityEvent) -> set[str]:
    categories: set[str] = set()
    tool = str(event.details.get("tool") or "")
    category = TOOL_CATEGORIES.get(tool)
    if category:
        categories.add(category)
    command = _command_of(event)
    if command:
        categories.add("commands")
        for pattern, rule_category in COMMAND_RULES:
            if pattern.search(command):
                categories.add(rule_category)
    if not categories:
        summary = event.summary.lower()
        if summary.startswith("reading"):
            categories.add("reads")
        elif summary.startswith(("writing", "editing", "applying")):
            categories.add("writes")
        elif summary.startswith(("searching", "finding", "web search")):
            categories.add("searches")
    return categories


def count_activity(events: Iterable[ActivityEvent]) -> ActivityCounts:
    counts: dict[str, int] = {field: 0 for field in ActivityCounts.model_fields}
    for event in events:
        if event.type == "tool_call":
            for category in _categories_for(event):
                counts[category] += 1
        elif event.type == "tool_result" and event.details.get("isError"):
            counts["errors"] += 1
    return ActivityCounts(**counts)


def find_security_findings(events: Iterable[ActivityEvent]) -> list[SecurityFinding]:
    findings: list[SecurityFinding] = []
    seen: set[str] = set()
    for event in events:
        if event.type != "tool_call":
            continue
        text = _security_text(event)
        if not text:
            continue
        for rule_id, pattern, severity, label in SECURITY_RULES:
            if rule_id in seen:
                continue
            match = pattern.search(text)
            if match:
                seen.add(rule_id)
                findings.append(SecurityFinding(
                    id=rule_id,
                    label=label,
                    severity=severity,
                    evidence=match.group(0).strip()[:120],
                ))
    return findings


def _direction(counts: ActivityCounts, action_count: int) -> str:
    progress = counts.writes + counts.tests + counts.deploys
    if counts.errors >= 2 and progress == 0:
        return "blocked"
    if action_count >= 4 and counts.writes == 0 and counts.tests == 0:
        return "drifting"
    return "on-track"


def _confidence(counts: ActivityCounts, action_count: int) -> str:
    evidence = counts.writes + counts.tests + counts.errors
    if action_count >= 8 and evidence > 0:
        return "high"
    if action_count >= 4:
        return "medium"
    return "low"


def build_commentary_assessment(events: list[ActivityEvent]) -> CommentaryAssessment:
    counts = count_activity(events)
    action_count = sum(1 for event in events if event.type == "tool_call")
    findings = find_security_findings(events)
    if any(finding.severity == "alert" for finding in findings):
        security = "alert"
    elif findings:
        security = "watch"
    else:
        security = "clean"
    return CommentaryAssessment(
        direction=_direction(counts, action_count),
        confidence=_confidence(counts, action_count),
        security=security,
        counts=counts,
        findings=findings,
        actionCount=action_count,
    )


def _security_line(assessment: CommentaryAssessment) -> str:
    severity = "alert" if assessment.security == "alert" else "watch"
    labels = [finding.label for finding in assessment.findings if finding.severity == severity]
    if not labels:
        labels = [finding.label for finding in assessment.findings]
    detail = "; ".join(labels) if labels else "risky command pattern"
    return f"SECURITY {severity.upper()}: {detail}."


def verdict_line(assessment: CommentaryAssessment) -> str:
    return f"Verdict: {_DIRECTION_LABELS[assessment.direction]} ({assessment.confidence} confidence)."


def apply_assessment_signals(text: str, assessment: CommentaryAssessment) -> str:
    """Make sure the text carries a security callout (when needed) and a closing verdict."""
    lines = [line.rstrip() for line in (text or "").strip().splitlines()]
    while lines and not lines[-1].strip():
        lines.pop()

    has_verdict = bool(lines) and bool(_VERDICT_RE.search(lines[-1]))

    if assessment.security != "clean":
        required = "ALERT" if assessment.security == "alert" else None
        callouts = [match.group(1) for line in lines for match in _SECURITY_CALLOUT_RE.finditer(line)]
        missing = not callouts if required is None else required not in callouts
        if missing:
            security_line = _security_line(assessment)
            if has_verdict:
                lines.insert(len(lines) - 1, security_line)
            else:
                lines.append(security_line)

    if not has_verdict:
        lines.append(verdict_line(assessment))

    return "\n".join(lines)

