"""API router for persisted user settings."""
from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request

from kibitz import config
from kibitz.models import KibitzSettings, SettingsUpdate
from kibitz.services.commentary_prompts import COMMENTARY_PRESETS, COMMENTARY_STYLES
from kibitz.summary_interval import SUMMARY_INTERVAL_OPTIONS

settings_router = APIRouter(prefix="/api/settings", tags=["settings"])


def _get_settings_store(request: Request):
    store = getattr(request.app.state, "settings_store", None)
    if store is None:
        raise HTTPException(status_code=503, detail="Settings store not initialized")
    return store


def apply_settings_to_engine(engine, settings: KibitzSettings) -> None:
    engine.configure(
        model=settings.model,
        preset=settings.preset,
        format_styles=settings.formatStyles,
        focus=settings.focus,
    )
    if engine.summary_interval_ms != settings.summaryIntervalMs:
        engine.set_summary_interval(settings.summaryIntervalMs)


@settings_router.get("", response_model=KibitzSettings)
def get_settings(request: Request):
    store = _get_settings_store(request)
    return store.snapshot()


@settings_router.put("", response_model=KibitzSettings)
def update_settings(request: Request, body: SettingsUpdate):
    store = _get_settings_store(request)
    if body.model is not None and body.model not in {model_id for model_id, _, _ in config.MODELS}:
        raise HTTPException(status_code=400, detail=f"Unknown model: {body.model}")
    if body.preset is not None and body.preset not in COMMENTARY_PRESETS:
        raise HTTPException(status_code=400, detail=f"Unknown preset: {body.preset}")
    if body.summaryIntervalMs is not None and body.summaryIntervalMs not in {ms for _, _, ms in SUMMARY_INTERVAL_OPTIONS}:
        raise HTTPException(status_code=400, detail=f"Unsupported summary interval: {body.summaryIntervalMs}ms")
    settings = store.update(body)
    engine = getattr(request.app.state, "commentary_engine", None)
    if engine is not None:
        apply_settings_to_engine(engine, settings)
    return settings


@settings_router.get("/options")
def get_setting_options():
    return {
        "models": [{"id": model_id, "label": label, "provider": provider} for model_id, label, provider in config.MODELS],
        "presets": [{"id": preset_id, "label": label} for preset_id, (label, _) in COMMENTARY_PRESETS.items()],
        "formatStyles": [{"id": style_id, "label": label} for style_id, (label, _) in COMMENTARY_STYLES.items()],
        "summaryIntervals": [{"token": token, "label": label, "ms": ms} for token, label, ms in SUMMARY_INTERVAL_OPTIONS],
    }
