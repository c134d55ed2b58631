"""Decode Claude Code JSONL transcript lines into ActivityEvent models."""
from __future__ import annotations

import json
from typing import Any

from kibitz.models import ActivityEvent
from kibitz.text_utils import (
    collapse_whitespace,
    file_stem,
    parent_dir_name,
    parse_timestamp,
    project_name_from_cwd,
    project_name_from_encoded_dir,
    short_path,
    truncate,
)

# Bookkeeping records with nothing worth commenting on.
_SKIPPED_TYPES = {"queue-operation", "file-history-snapshot", "progress"}

_ERROR_MARKERS = ("error", "failed", "traceback", "exception", "fatal:")


def _summarize_tool_use(name: str, tool_input: dict[str, Any]) -> str:
    if name == "Bash":
        return f"Running: {truncate(str(tool_input.get('command') or ''), 80)}"
    if name == "Read":
        return f"Reading {short_path(str(tool_input.get('file_path') or ''))}"
    if name == "Write":
        return f"Writing {short_path(str(tool_input.get('file_path') or ''))}"
    if name in ("Edit", "MultiEdit"):
        return f"Editing {short_path(str(tool_input.get('file_path') or ''))}"
    if name == "Grep":
        return f'Searching for "{truncate(str(tool_input.get("pattern") or ""), 40)}"'
    if name == "Glob":
        return f"Finding files: {truncate(str(tool_input.get('pattern') or ''), 40)}"
    if name == "Task":
        return f"Spawning agent: {truncate(str(tool_input.get('description') or ''), 60)}"
    if name == "TodoWrite":
        return "Updating task list"
    if name == "WebSearch":
        return f'Web search: "{truncate(str(tool_input.get("query") or ""), 50)}"'
    if name == "WebFetch":
        return f"Fetching: {truncate(str(tool_input.get('url') or ''), 60)}"
    return f"Using tool: {name}"


def _tool_result_to_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks: list[str] = []
        for block in content:
            if isinstance(block, str):
                chunks.append(block)
            elif isinstance(block, dict):
                text = block.get("text")
                if isinstance(text, str) and text.strip():
                    chunks.append(text)
                elif isinstance(block.get("content"), str):
                    chunks.append(block["content"])
        return "\n".join(chunks)
    if content is None:
        return ""
    try:
        return json.dumps(content)
    except (TypeError, ValueError):
        return str(content)


def _result_is_error(output_text: str, is_error: bool) -> bool:
    if is_error:
        return True
    lowered = output_text[:400].lower()
    return any(marker in lowered for marker in _ERROR_MARKERS)


def _user_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            str(block.get("text") or "")
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        ]
        return "\n".join(part for part in parts if part)
    return ""


def _project_name(entry: dict[str, Any], file_path: str) -> str:
    cwd = entry.get("cwd")
    if isinstance(cwd, str) and cwd.strip():
        return project_name_from_cwd(cwd)
    return project_name_from_encoded_dir(parent_dir_name(file_path))


def parse_line(line: str, file_path: str) -> list[ActivityEvent]:
    """Decode one transcript line. Malformed or irrelevant lines yield no events."""
    try:
        entry = json.loads(line)
    except (json.JSONDecodeError, TypeError):
        return []
    if not isinstance(entry, dict):
        return []

    entry_type = entry.get("type")
    if entry_type in _SKIPPED_TYPES:
        return []

    explicit_id = str(entry.get("sessionId") or "").strip()
    session_id = explicit_id or file_stem(file_path)
    base: dict[str, Any] = {
        "sessionId": session_id,
        "agent": "claude",
        "projectName": _project_name(entry, file_path),
        "timestamp": parse_timestamp(entry.get("timestamp")),
    }
    identity = {"identitySource": "log" if explicit_id else "path"}
    cwd = entry.get("cwd") if isinstance(entry.get("cwd"), str) else None
    if cwd:
        identity["cwd"] = cwd

    events: list[ActivityEvent] = []

    if entry_type == "summary":
        title = collapse_whitespace(entry.get("summary"))
        if title:
            events.append(ActivityEvent(
                **base,
                type="meta",
                summary=f"Session titled: {truncate(title, 80)}",
                details={**identity, "title": title},
            ))
        return events

    message = entry.get("message")
    if not isinstance(message, dict):
        return events
    content = message.get("content")

    if entry_type == "assistant" and isinstance(content, list):
        for block in content:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "tool_use" and block.get("name"):
                tool_input = block.get("input") if isinstance(block.get("input"), dict) else {}
                events.append(ActivityEvent(
                    **base,
                    type="tool_call",
                    summary=_summarize_tool_use(str(block["name"]), tool_input),
                    details={**identity, "tool": block["name"], "input": tool_input, "toolUseId": block.get("id")},
                ))
            elif block_type == "text":
                text = str(block.get("text") or "").strip()
                if text:
                    events.append(ActivityEvent(
                        **base,
                        type="message",
                        summary=truncate(text, 120),
                        details={**identity, "text": text},
                    ))

    elif entry_type == "user":
        if isinstance(content, list):
            for block in content:
                if not isinstance(block, dict) or block.get("type") != "tool_result":
                    continue
                output = _tool_result_to_text(block.get("content"))
                is_error = _result_is_error(output, bool(block.get("is_error")))
                events.append(ActivityEvent(
                    **base,
                    type="tool_result",
                    summary=f"Tool failed: {truncate(collapse_whitespace(output), 60)}" if is_error else "Tool completed",
                    details={**identity, "toolUseId": block.get("tool_use_id"), "isError": is_error, "output": truncate(output, 400)},
                ))
        prompt = _user_text(content).strip()
        if prompt and not entry.get("isMeta"):
            events.append(ActivityEvent(
                **base,
                type="meta",
                summary=f"User prompt: {truncate(collapse_whitespace(prompt), 80)}",
                details={**identity, "prompt": prompt},
            ))

    return events
