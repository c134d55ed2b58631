"""Pydantic models shared by the registry, commentary engine, dispatch and API."""
from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

AgentKind = Literal["claude", "codex"]
EventKind = Literal["tool_call", "tool_result", "message", "meta"]
Direction = Literal["on-track", "drifting", "blocked"]
Confidence = Literal["low", "medium", "high"]
SecurityVerdict = Literal["clean", "watch", "alert"]
DispatchState = Literal["queued", "started", "sent", "failed"]
DispatchTargetKind = Literal["existing", "new-claude", "new-codex"]


# ── Activity ───────────────────────────────────────────────────────

class ActivityEvent(BaseModel):
    """One observed agent action, decoded from one log line."""

    model_config = ConfigDict(frozen=True)

    sessionId: str
    agent: AgentKind
    projectName: str = "unknown"
    sessionTitle: Optional[str] = None
    timestamp: float
    type: EventKind
    summary: str = ""
    details: dict[str, Any] = Field(default_factory=dict)


class SessionInfo(BaseModel):
    """One entry of the deduplicated Session View."""

    id: str
    agent: AgentKind
    projectName: str = "unknown"
    sessionTitle: Optional[str] = None
    filePath: str
    cwd: Optional[str] = None
    lastActivity: float = 0.0


# ── Commentary ─────────────────────────────────────────────────────

class ActivityCounts(BaseModel):
    reads: int = 0
    writes: int = 0
    searches: int = 0
    commands: int = 0
    tests: int = 0
    deploys: int = 0
    errors: int = 0


class SecurityFinding(BaseModel):
    id: str
    label: str
    severity: Literal["watch", "alert"]
    evidence: str = ""


class CommentaryAssessment(BaseModel):
    direction: Direction = "on-track"
    confidence: Confidence = "low"
    security: SecurityVerdict = "clean"
    counts: ActivityCounts = Field(default_factory=ActivityCounts)
    findings: list[SecurityFinding] = Field(default_factory=list)
    actionCount: int = 0


class CommentaryEntry(BaseModel):
    timestamp: float
    sessionId: str
    projectName: str
    sessionTitle: Optional[str] = None
    agent: AgentKind
    eventSummary: str = ""
    eventCount: int = 0
    style: str = ""
    commentary: str = ""
    assessment: CommentaryAssessment = Field(default_factory=CommentaryAssessment)


class CommentaryUpdate(BaseModel):
    kind: Literal["start", "chunk", "done", "error", "interval"]
    entry: Optional[CommentaryEntry] = None
    chunk: str = ""
    error: str = ""
    intervalMs: Optional[int] = None


# ── Dispatch ───────────────────────────────────────────────────────

class DispatchTarget(BaseModel):
    kind: DispatchTargetKind = "existing"
    agent: Optional[AgentKind] = None
    sessionId: Optional[str] = None
    projectName: Optional[str] = None
    sessionTitle: Optional[str] = None


class DispatchRequest(BaseModel):
    target: DispatchTarget
    instruction: str = ""


class DispatchStatus(BaseModel):
    state: DispatchState
    message: str
    target: DispatchTarget
    timestamp: float
    reason: Optional[str] = None
    retryInstruction: Optional[str] = None


# ── Settings ───────────────────────────────────────────────────────

class KibitzSettings(BaseModel):
    model: str
    preset: str = "auto"
    formatStyles: list[str] = Field(default_factory=list)
    summaryIntervalMs: int = 30_000
    focus: str = ""


class SettingsUpdate(BaseModel):
    model: Optional[str] = None
    preset: Optional[str] = None
    formatStyles: Optional[list[str]] = None
    summaryIntervalMs: Optional[int] = None
    focus: Optional[str] = None
