"""API router for dispatching instructions into agent sessions."""
from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request

from kibitz.models import DispatchRequest, DispatchStatus

dispatch_router = APIRouter(prefix="/api/dispatch", tags=["dispatch"])


def _get_dispatch_service(request: Request):
    service = getattr(request.app.state, "dispatch_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Dispatch service not initialized")
    return service


@dispatch_router.post("", response_model=DispatchStatus)
async def dispatch_instruction(request: Request, body: DispatchRequest):
    """Run the dispatch and return its final status (sent or failed)."""
    service = _get_dispatch_service(request)
    return await service.dispatch(body)


@dispatch_router.get("/status", response_model=list[DispatchStatus])
def get_dispatch_status(request: Request):
    service = _get_dispatch_service(request)
    return service.recent_statuses()
