"""API router for the active Session View."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request

from kibitz.models import SessionInfo
from kibitz.services.session_registry import SessionRegistry

sessions_router = APIRouter(prefix="/api/sessions", tags=["sessions"])


def _get_registry(request: Request) -> SessionRegistry:
    registry = getattr(request.app.state, "registry", None)
    if registry is None:
        raise HTTPException(status_code=503, detail="Session registry not initialized")
    return registry


@sessions_router.get("", response_model=list[SessionInfo])
def list_sessions(request: Request, agent: Optional[str] = Query(None, description="claude or codex")):
    """Currently active sessions, one per (agent, session id), most recent first."""
    registry = _get_registry(request)
    if agent is not None and agent not in ("claude", "codex"):
        raise HTTPException(status_code=400, detail=f"Unsupported agent: {agent}")
    sessions = registry.get_active_sessions()
    if agent:
        sessions = [session for session in sessions if session.agent == agent]
    return sessions


@sessions_router.post("/scan")
def scan_sessions(request: Request):
    """Run one registry scan now instead of waiting for the next tick."""
    registry = _get_registry(request)
    stats = registry.scan()
    return {**stats, "active": len(registry.get_active_sessions())}
