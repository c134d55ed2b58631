"""Send an instruction to an agent session and confirm, from its log, that it landed.

A zero exit code is not proof of delivery. For an existing session the target
log is polled while the resume command runs; whichever comes first (the
instruction showing up in freshly appended bytes, or the process exiting)
decides the next step, and a process that exits first must still pass a full
post-hoc check of the log.
"""
from __future__ import annotations

import asyncio
import json
import logging
import re
import sys
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Protocol

from kibitz import config
from kibitz.models import DispatchRequest, DispatchStatus, DispatchTarget, SessionInfo
from kibitz.observability import record_dispatch, start_span
from kibitz.platform_support import (
    CommandNotFoundError,
    ResolvedCommand,
    decode_claude_project_path,
    get_provider_cli_command,
    resolve_cli_invocation,
    spawn_resolved,
)
from kibitz.text_utils import collapse_whitespace

logger = logging.getLogger("kibitz.dispatch")

DISPATCH_REASONS = (
    "validation",
    "inactive-target",
    "cli-not-found",
    "exit-unverified",
    "verify-timeout",
    "unsupported-flags",
)
# Only these keep the instruction around for resubmission.
DELIVERY_FAILURES = {"cli-not-found", "exit-unverified", "verify-timeout", "unsupported-flags"}

PROMPT_SIGNATURE_MAX = 160
PROMPT_SIGNATURE_MIN = 4
TAIL_MAX_BYTES = 512 * 1024

_UNSUPPORTED_FLAG_MARKERS = ("unknown option", "unknown flag", "unrecognized option", "did you mean")
_UUID_RE = re.compile(r"^[0-9a-f]{8}(?:-[0-9a-f]{4}){3}-[0-9a-f]{12}$", re.IGNORECASE)


class DispatchError(RuntimeError):
    def __init__(self, message: str, reason: str):
        super().__init__(message)
        self.reason = reason


@dataclass
class DispatchCommand:
    provider: str
    command: str
    args: list[str]


@dataclass(frozen=True)
class SessionFileSnapshot:
    exists: bool
    size: int
    mtime: float


class BackgroundProcess(Protocol):
    async def wait_for_exit(self) -> tuple[int, str]:
        """Return (exit code, captured stderr)."""
        ...


StatusListener = Callable[[DispatchStatus], None]
BackgroundStarter = Callable[[DispatchCommand, Optional[str]], Awaitable[BackgroundProcess]]
InteractiveLauncher = Callable[[str, str], Awaitable[Any]]


# ── Command construction ─────────────────────────────────────────

def build_existing_dispatch_command(
    target: DispatchTarget,
    instruction: str,
    platform: str = sys.platform,
) -> DispatchCommand:
    if target.kind != "existing":
        raise DispatchError(f'Expected existing target, got "{target.kind}"', "validation")
    session_id = (target.sessionId or "").strip()
    if not session_id or target.agent not in ("claude", "codex"):
        raise DispatchError("Missing existing-session target details", "validation")

    if target.agent == "codex":
        return DispatchCommand(
            provider="codex",
            command=get_provider_cli_command("codex", platform),
            args=["exec", "resume", "--json", "--skip-git-repo-check", session_id, instruction],
        )
    return DispatchCommand(
        provider="claude",
        command=get_provider_cli_command("claude", platform),
        args=["-p", instruction, "--verbose", "--output-format", "stream-json", "--resume", session_id],
    )


def build_interactive_dispatch_command(
    provider: str,
    instruction: str,
    platform: str = sys.platform,
) -> DispatchCommand:
    return DispatchCommand(
        provider=provider,
        command=get_provider_cli_command(provider, platform),
        args=[instruction],
    )


def resolve_dispatch_command(
    command: DispatchCommand,
    platform: str = sys.platform,
    search_path: Optional[str] = None,
) -> ResolvedCommand:
    try:
        return resolve_cli_invocation(command.command, command.args, platform=platform, search_path=search_path)
    except CommandNotFoundError as e:
        raise DispatchError(str(e), "cli-not-found") from e


# ── Log inspection ───────────────────────────────────────────────

def capture_session_file_snapshot(file_path: str) -> SessionFileSnapshot:
    try:
        stat = Path(file_path).stat()
    except OSError:
        return SessionFileSnapshot(exists=False, size=0, mtime=0.0)
    return SessionFileSnapshot(exists=True, size=stat.st_size, mtime=stat.st_mtime)


def has_session_file_changed(file_path: str, before: SessionFileSnapshot) -> bool:
    after = capture_session_file_snapshot(file_path)
    if not after.exists:
        raise DispatchError("Target session file is not accessible after dispatch", "exit-unverified")
    return after.size > before.size or after.mtime > before.mtime


def first_prompt_signature(instruction: str) -> str:
    lines = [line.strip() for line in str(instruction or "").splitlines() if line.strip()]
    first = lines[0] if lines else str(instruction or "").strip()
    return first[:PROMPT_SIGNATURE_MAX]


def read_session_tail(file_path: str, previous_size: int) -> str:
    """Bytes appended since ``previous_size``, capped at 512KB.

    Nothing written before the snapshot is returned, so an instruction that was
    already in the log never counts as delivery. A file that shrank was
    rewritten and is read from the start.
    """
    try:
        path = Path(file_path)
        size = path.stat().st_size
        start = previous_size if size >= previous_size else 0
        if size - start > TAIL_MAX_BYTES:
            start = size - TAIL_MAX_BYTES
        length = size - start
        if length <= 0:
            return ""
        with open(path, "rb") as handle:
            handle.seek(start)
            return handle.read(length).decode("utf-8", errors="replace")
    except OSError:
        return ""


def tail_contains_signature(tail: str, signature: str) -> bool:
    haystack = tail.lower()
    variants = {
        signature,
        json.dumps(signature, ensure_ascii=False)[1:-1],
        json.dumps(signature)[1:-1],
    }
    return any(variant.lower() in haystack for variant in variants if variant)


def has_session_update_with_prompt(file_path: str, instruction: str, before: SessionFileSnapshot) -> bool:
    if not has_session_file_changed(file_path, before):
        return False
    signature = first_prompt_signature(instruction)
    if len(signature) < PROMPT_SIGNATURE_MIN:
        return True
    tail = read_session_tail(file_path, before.size)
    return bool(tail) and tail_contains_signature(tail, signature)


def verify_existing_dispatch_delivery(file_path: str, instruction: str, before: SessionFileSnapshot) -> None:
    if not has_session_file_changed(file_path, before):
        raise DispatchError("Target session did not update after dispatch", "exit-unverified")
    signature = first_prompt_signature(instruction)
    if len(signature) < PROMPT_SIGNATURE_MIN:
        return
    tail = read_session_tail(file_path, before.size)
    if not tail:
        raise DispatchError("Target session updated but the instruction text was not found", "exit-unverified")
    if not tail_contains_signature(tail, signature):
        raise DispatchError("Instruction text was not found in the target session update", "exit-unverified")


def looks_like_unsupported_flags(stderr: str) -> bool:
    normalized = str(stderr or "").lower()
    return bool(normalized) and any(marker in normalized for marker in _UNSUPPORTED_FLAG_MARKERS)


def derive_dispatch_cwd(session: SessionInfo) -> Optional[str]:
    if session.cwd and Path(session.cwd).is_dir():
        return session.cwd
    if session.agent == "claude":
        return decode_claude_project_path(session.filePath)
    return None


# ── Target labels ────────────────────────────────────────────────

def describe_provider(agent: Optional[str]) -> str:
    return "Claude" if str(agent or "").lower() == "claude" else "Codex"


def _clean_target_label(value: Optional[str], limit: int) -> str:
    text = collapse_whitespace(value)
    if not text or _UUID_RE.match(text):
        return ""
    if len(text) <= limit:
        return text
    return text[: limit - 3].rstrip() + "..."


def describe_target(target: DispatchTarget) -> str:
    if target.kind == "new-codex":
        return "new codex session"
    if target.kind == "new-claude":
        return "new claude session"
    provider = describe_provider(target.agent)
    project = _clean_target_label(target.projectName, 24)
    title = _clean_target_label(target.sessionTitle, 44)
    if project and title:
        return f"{provider} session ({project} › {title})"
    if title:
        return f"{provider} session ({title})"
    if project:
        return f"{provider} session ({project})"
    return f"{provider} session"


# ── Process launching ────────────────────────────────────────────

class SubprocessHandle:
    def __init__(self, process: asyncio.subprocess.Process):
        self.process = process

    async def wait_for_exit(self) -> tuple[int, str]:
        _, stderr = await self.process.communicate()
        return self.process.returncode or 0, (stderr or b"").decode("utf-8", errors="replace")


async def start_background_command(command: DispatchCommand, cwd: Optional[str]) -> BackgroundProcess:
    resolved = resolve_dispatch_command(command)
    process = await spawn_resolved(
        resolved,
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.DEVNULL,
        stderr=asyncio.subprocess.PIPE,
        cwd=cwd,
    )
    logger.info("Started %s (pid %s)", command.command, process.pid)
    return SubprocessHandle(process)


async def launch_interactive_session(provider: str, instruction: str) -> asyncio.subprocess.Process:
    """Start a new session with inherited stdio; returns once the process is running."""
    resolved = resolve_dispatch_command(build_interactive_dispatch_command(provider, instruction))
    return await spawn_resolved(resolved)


class TerminalLauncher:
    """Interactive launcher for the terminal.

    Returns as soon as the new session is running, so dispatch can report
    ``sent``; the caller then keeps the terminal attached with ``wait``.
    """

    def __init__(self):
        self.processes: list[asyncio.subprocess.Process] = []

    async def __call__(self, provider: str, instruction: str) -> asyncio.subprocess.Process:
        process = await launch_interactive_session(provider, instruction)
        self.processes.append(process)
        return process

    async def wait(self) -> Optional[int]:
        """Wait for every launched session to end; returns the last exit code."""
        code = None
        for process in self.processes:
            code = await process.wait()
        return code


def _consume_result(task: asyncio.Future) -> None:
    if not task.cancelled():
        task.exception()


# ── Service ──────────────────────────────────────────────────────

class SessionDispatchService:
    def __init__(
        self,
        get_active_sessions: Callable[[], list[SessionInfo]],
        *,
        start_background: BackgroundStarter = start_background_command,
        launch_interactive: InteractiveLauncher = launch_interactive_session,
        ack_timeout: float = config.DISPATCH_TIMEOUT_SECONDS,
        poll_interval: float = config.DISPATCH_POLL_SECONDS,
        platform: str = sys.platform,
        trail_size: int = config.DISPATCH_STATUS_TRAIL,
    ):
        self._get_active_sessions = get_active_sessions
        self._start_background = start_background
        self._launch_interactive = launch_interactive
        self.ack_timeout = ack_timeout
        self.poll_interval = poll_interval
        self.platform = platform
        self._trail: deque[DispatchStatus] = deque(maxlen=trail_size)
        self._listeners: list[StatusListener] = []

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def recent_statuses(self) -> list[DispatchStatus]:
        return list(self._trail)

    def _emit(
        self,
        state: str,
        target: DispatchTarget,
        message: str,
        *,
        reason: Optional[str] = None,
        retry_instruction: Optional[str] = None,
    ) -> DispatchStatus:
        status = DispatchStatus(
            state=state,
            message=message,
            target=target,
            timestamp=time.time(),
            reason=reason,
            retryInstruction=retry_instruction,
        )
        self._trail.append(status)
        record_dispatch(state, target.kind)
        log = logger.warning if state == "failed" else logger.info
        log("Dispatch %s: %s", state, message)
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception:
                logger.exception("Dispatch status listener failed")
        return status

    def _fail(self, target: DispatchTarget, error: DispatchError, instruction: str) -> DispatchStatus:
        retry = instruction if error.reason in DELIVERY_FAILURES else None
        return self._emit("failed", target, str(error), reason=error.reason, retry_instruction=retry)

    async def dispatch(self, request: DispatchRequest) -> DispatchStatus:
        target = request.target
        instruction = (request.instruction or "").strip()
        if not instruction:
            return self._emit("failed", target, "Instruction cannot be empty", reason="validation")

        self._emit("queued", target, f"Queued for {describe_target(target)}")
        with start_span("dispatch", {"target": target.kind, "agent": target.agent}):
            if target.kind == "existing":
                return await self._dispatch_existing(target, instruction)
            return await self._dispatch_new(target, instruction)

    async def _dispatch_new(self, target: DispatchTarget, instruction: str) -> DispatchStatus:
        provider = "codex" if target.kind == "new-codex" else "claude"
        self._emit("started", target, f"Starting new {provider} session")
        try:
            await self._launch_interactive(provider, instruction)
        except DispatchError as e:
            return self._fail(target, e, instruction)
        except OSError as e:
            return self._fail(target, DispatchError(f"Could not start {provider}: {e}", "cli-not-found"), instruction)
        return self._emit("sent", target, f"Started new {provider} session")

    async def _dispatch_existing(self, target: DispatchTarget, instruction: str) -> DispatchStatus:
        session_id = (target.sessionId or "").strip().lower()
        if not session_id or target.agent not in ("claude", "codex"):
            return self._emit("failed", target, "Missing target session or provider", reason="validation")

        match = next(
            (
                session
                for session in self._get_active_sessions()
                if session.agent == target.agent and session.id.lower() == session_id
            ),
            None,
        )
        if match is None:
            return self._emit(
                "failed",
                target,
                f"Selected {describe_provider(target.agent)} session is no longer active",
                reason="inactive-target",
            )

        label = describe_target(target)
        self._emit("started", target, f"Dispatching to {label}")
        try:
            command = build_existing_dispatch_command(target, instruction, self.platform)
            before = capture_session_file_snapshot(match.filePath)
            process = await self._start_background(command, derive_dispatch_cwd(match))
            outcome = await self._await_acknowledgement(match.filePath, instruction, before, process)
            if outcome == "process-complete":
                verify_existing_dispatch_delivery(match.filePath, instruction, before)
        except DispatchError as e:
            return self._fail(target, e, instruction)
        except OSError as e:
            return self._fail(target, DispatchError(f"Could not start {target.agent}: {e}", "cli-not-found"), instruction)
        return self._emit("sent", target, f"Instruction sent to {label}")

    async def _poll_for_prompt(self, file_path: str, instruction: str, before: SessionFileSnapshot) -> None:
        while not has_session_update_with_prompt(file_path, instruction, before):
            await asyncio.sleep(self.poll_interval)

    async def _await_acknowledgement(
        self,
        file_path: str,
        instruction: str,
        before: SessionFileSnapshot,
        process: BackgroundProcess,
    ) -> str:
        ack_task = asyncio.ensure_future(self._poll_for_prompt(file_path, instruction, before))
        exit_task = asyncio.ensure_future(process.wait_for_exit())
        try:
            done, _ = await asyncio.wait(
                {ack_task, exit_task},
                timeout=self.ack_timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            if not ack_task.done():
                ack_task.cancel()
            # the resumed process may legitimately keep running after the ack
            exit_task.add_done_callback(_consume_result)

        if ack_task in done:
            ack_task.result()
            return "prompt-observed"

        if exit_task in done:
            code, stderr = exit_task.result()
            if code == 0:
                return "process-complete"
            if has_session_update_with_prompt(file_path, instruction, before):
                return "prompt-observed"
            if looks_like_unsupported_flags(stderr):
                raise DispatchError(
                    "Provider CLI does not support the required resume flags. Update the CLI version.",
                    "unsupported-flags",
                )
            raise DispatchError(stderr.strip() or f"Dispatch exited with code {code}", "exit-unverified")

        raise DispatchError("Dispatch timed out waiting for the target session to update", "verify-timeout")
