"""Decode Codex CLI rollout JSONL lines into ActivityEvent models."""
from __future__ import annotations

import json
import re
from typing import Any

from kibitz.models import ActivityEvent
from kibitz.text_utils import (
    collapse_whitespace,
    file_stem,
    parse_timestamp,
    project_name_from_cwd,
    short_path,
    truncate,
)

# rollout-2026-02-26T14-50-17-019c9b80-85dd-7c42-b95b-b1b1eb9fdafb.jsonl
_ROLLOUT_UUID_PATTERN = re.compile(r"([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})", re.IGNORECASE)

_SHELL_TOOLS = {"shell", "run_command", "exec_command", "local_shell", "container.exec"}
_READ_TOOLS = {"read_file", "file_read", "view_image"}
_WRITE_TOOLS = {"write_file", "file_write"}
_EDIT_TOOLS = {"edit_file", "apply_diff", "apply_patch"}
_ERROR_MARKERS = ("error", "failed", "traceback", "exception", "fatal:", "exit code: 1", "exit_code\":1")


def session_id_from_path(file_path: str) -> str:
    stem = file_stem(file_path)
    match = _ROLLOUT_UUID_PATTERN.search(stem)
    return match.group(1).lower() if match else stem


def _command_text(args: dict[str, Any]) -> str:
    command = args.get("command") if "command" in args else args.get("cmd")
    if isinstance(command, list):
        # ["bash", "-lc", "npm test"] → the script is what matters.
        if len(command) >= 3 and command[1] in ("-lc", "-c"):
            return str(command[2])
        return " ".join(str(part) for part in command)
    return str(command or "")


def _summarize_tool(name: str, args: dict[str, Any]) -> str:
    target = str(args.get("path") or args.get("file_path") or "")
    if name in _SHELL_TOOLS:
        return f"Running: {truncate(_command_text(args), 80)}"
    if name in _READ_TOOLS:
        return f"Reading {truncate(short_path(target), 60)}"
    if name in _WRITE_TOOLS:
        return f"Writing {truncate(short_path(target), 60)}"
    if name in _EDIT_TOOLS:
        if target:
            return f"Editing {truncate(short_path(target), 60)}"
        return "Applying a patch"
    if name == "update_plan":
        return "Updating plan"
    if name == "web_search":
        return f'Web search: "{truncate(str(args.get("query") or ""), 50)}"'
    return f"Using tool: {name}"


def _decode_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str) and raw.strip():
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError:
            # custom tools (apply_patch) send free-form input
            return {"input": raw}
        return decoded if isinstance(decoded, dict) else {"input": decoded}
    return {}


def _block_text(block: Any) -> str:
    if isinstance(block, str):
        return block
    if not isinstance(block, dict):
        return ""
    text = block.get("text")
    if text is None:
        text = block.get("input_text")
    if text is None:
        text = block.get("output_text")
    return str(text or "")


def _output_is_error(output: str) -> bool:
    lowered = output[:400].lower()
    return any(marker in lowered for marker in _ERROR_MARKERS)


def parse_line(line: str, file_path: str) -> list[ActivityEvent]:
    """Decode one rollout line. Malformed or irrelevant lines yield no events."""
    try:
        entry = json.loads(line)
    except (json.JSONDecodeError, TypeError):
        return []
    if not isinstance(entry, dict):
        return []
    payload = entry.get("payload")
    if not isinstance(payload, dict):
        return []

    entry_type = entry.get("type")
    path_id = session_id_from_path(file_path)
    explicit_id = str(payload.get("id") or "").strip() if entry_type == "session_meta" else ""
    has_path_uuid = bool(_ROLLOUT_UUID_PATTERN.search(file_stem(file_path)))
    session_id = path_id if has_path_uuid else (explicit_id or path_id)
    identity: dict[str, Any] = {"identitySource": "log" if has_path_uuid or explicit_id else "path"}
    base: dict[str, Any] = {
        "sessionId": session_id,
        "agent": "codex",
        "projectName": "codex",
        "timestamp": parse_timestamp(entry.get("timestamp")),
    }

    events: list[ActivityEvent] = []

    if entry_type == "session_meta":
        cwd = str(payload.get("cwd") or "")
        events.append(ActivityEvent(
            **{**base, "projectName": project_name_from_cwd(cwd) if cwd else "codex"},
            type="meta",
            summary=f"Codex session started ({payload.get('model_provider') or 'unknown'}, v{payload.get('cli_version') or '?'})",
            details={**identity, "cwd": cwd, "provider": payload.get("model_provider"), "version": payload.get("cli_version")},
        ))
        return events

    if entry_type == "response_item":
        item_type = payload.get("type")
        if item_type in ("function_call", "custom_tool_call") and payload.get("name"):
            name = str(payload["name"])
            args = _decode_arguments(payload.get("arguments") if item_type == "function_call" else payload.get("input"))
            details: dict[str, Any] = {**identity, "tool": name, "input": args, "callId": payload.get("call_id")}
            if name in _SHELL_TOOLS:
                details["command"] = _command_text(args)
            events.append(ActivityEvent(**base, type="tool_call", summary=_summarize_tool(name, args), details=details))
        elif item_type in ("function_call_output", "custom_tool_call_output"):
            raw_output = payload.get("output")
            if isinstance(raw_output, dict):
                output = str(raw_output.get("content") or raw_output.get("output") or "")
            else:
                output = str(raw_output or "")
            is_error = _output_is_error(output)
            events.append(ActivityEvent(
                **base,
                type="tool_result",
                summary=f"Tool {'failed' if is_error else 'completed'}: {truncate(collapse_whitespace(output), 60)}",
                details={**identity, "output": truncate(output, 400), "callId": payload.get("call_id"), "isError": is_error},
            ))
        elif isinstance(payload.get("content"), list):
            role = payload.get("role")
            for block in payload["content"]:
                text = _block_text(block).strip()
                if not text:
                    continue
                if role == "assistant":
                    events.append(ActivityEvent(
                        **base,
                        type="message",
                        summary=truncate(text, 120),
                        details={**identity, "text": text},
                    ))
                elif role == "user" and not text.startswith("<"):
                    # <environment_context>/<user_instructions> blocks are harness preamble.
                    events.append(ActivityEvent(
                        **base,
                        type="meta",
                        summary=f"User prompt: {truncate(collapse_whitespace(text), 80)}",
                        details={**identity, "prompt": text},
                    ))
        return events

    if entry_type == "event_msg":
        msg_type = payload.get("type")
        if msg_type == "task_started":
            events.append(ActivityEvent(
                **base,
                type="meta",
                summary="Codex task started",
                details={**identity, "turnId": payload.get("turn_id")},
            ))
        elif msg_type == "user_message":
            prompt = str(payload.get("message") or "").strip()
            if prompt:
                events.append(ActivityEvent(
                    **base,
                    type="meta",
                    summary=f"User prompt: {truncate(collapse_whitespace(prompt), 80)}",
                    details={**identity, "prompt": prompt},
                ))

    return events
