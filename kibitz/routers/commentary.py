"""API router for generated commentary and engine controls."""
from __future__ import annotations

from fastapi import APIRouter, HTTPException, Query, Request

from kibitz.models import CommentaryEntry

commentary_router = APIRouter(prefix="/api/commentary", tags=["commentary"])


def _engine(request: Request):
    engine = getattr(request.app.state, "commentary_engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Commentary engine not initialized")
    return engine


def _status(engine) -> dict:
    return {
        "paused": engine.is_paused,
        "generating": engine.generating,
        "queued": engine.queued_sessions,
        "intervalMs": engine.summary_interval_ms,
        "model": engine.model,
    }


@commentary_router.get("", response_model=list[CommentaryEntry])
def list_commentary(request: Request, limit: int = Query(20, ge=1, le=200)):
    return _engine(request).recent_entries(limit)


@commentary_router.get("/status")
def get_commentary_status(request: Request):
    return _status(_engine(request))


@commentary_router.post("/pause")
def pause_commentary(request: Request):
    engine = _engine(request)
    engine.pause()
    return _status(engine)


@commentary_router.post("/resume")
def resume_commentary(request: Request):
    engine = _engine(request)
    engine.resume()
    return _status(engine)


@commentary_router.post("/flush/{session_key}")
async def flush_commentary(request: Request, session_key: str):
    """Force one session's pending events into the generation queue."""
    engine = _engine(request)
    if engine.is_paused:
        raise HTTPException(status_code=409, detail="Commentary is paused")
    pending = engine.pending_count(session_key)
    if pending == 0:
        raise HTTPException(status_code=404, detail=f"No pending events for {session_key}")
    queued = engine.flush_session(session_key)
    return {"sessionKey": session_key, "pending": pending, "queued": queued}
