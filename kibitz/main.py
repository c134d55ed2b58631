"""Kibitz FastAPI backend: main application entry point."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from kibitz import config
from kibitz.file_watcher import file_watcher
from kibitz.observability import initialize as initialize_observability, shutdown as shutdown_observability
from kibitz.routers.commentary import commentary_router
from kibitz.routers.dispatch import dispatch_router
from kibitz.routers.sessions import sessions_router
from kibitz.routers.settings import settings_router
from kibitz.runtime import build_runtime

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("kibitz")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("Kibitz backend starting up")
    initialize_observability(app)

    runtime = build_runtime()
    app.state.settings_store = runtime.settings_store
    app.state.registry = runtime.registry
    app.state.commentary_engine = runtime.engine
    app.state.dispatch_service = runtime.dispatch_service

    # Scan loop first so existing logs are tracked before change notifications arrive.
    await runtime.registry.start()
    await file_watcher.start(runtime.registry)

    yield

    logger.info("Kibitz backend shutting down")
    await file_watcher.stop()
    await runtime.registry.stop()
    await runtime.engine.close()
    shutdown_observability(app)


app = FastAPI(
    title="Kibitz API",
    description="Live commentary on AI coding-agent sessions, plus instruction dispatch",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        config.FRONTEND_ORIGIN,
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(sessions_router)
app.include_router(commentary_router)
app.include_router(dispatch_router)
app.include_router(settings_router)


@app.get("/api/health")
def health():
    """Health check endpoint."""
    registry = getattr(app.state, "registry", None)
    engine = getattr(app.state, "commentary_engine", None)
    return {
        "status": "ok",
        "registry": "running" if registry is not None and registry.is_running else "stopped",
        "watcher": "running" if file_watcher.is_running else "stopped",
        "commentary": "paused" if engine is not None and engine.is_paused else "active",
        "trackedSessions": len(registry.records) if registry is not None else 0,
    }
