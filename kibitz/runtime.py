"""Wire the settings store, registry, commentary engine and dispatch service together."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from kibitz import config
from kibitz.models import ActivityEvent
from kibitz.services.commentary import CommentaryEngine
from kibitz.services.session_dispatch import SessionDispatchService
from kibitz.services.session_registry import SessionRegistry
from kibitz.session_titles import CodexTitleStore
from kibitz.settings_store import SettingsStore, default_settings_store


@dataclass
class KibitzRuntime:
    settings_store: SettingsStore
    registry: SessionRegistry
    engine: CommentaryEngine
    dispatch_service: SessionDispatchService


def build_runtime(
    settings_store: Optional[SettingsStore] = None,
    *,
    agent_filter: Optional[str] = None,
    **dispatch_options,
) -> KibitzRuntime:
    store = settings_store or default_settings_store()
    settings = store.snapshot()
    registry = SessionRegistry(title_store=CodexTitleStore(config.CODEX_GLOBAL_STATE_PATH))
    engine = CommentaryEngine(
        model=settings.model,
        preset=settings.preset,
        format_styles=settings.formatStyles,
        focus=settings.focus,
        summary_interval_ms=settings.summaryIntervalMs,
    )

    def forward(event: ActivityEvent) -> None:
        if agent_filter is None or event.agent == agent_filter:
            engine.add_event(event)

    registry.subscribe(forward)
    dispatch_service = SessionDispatchService(registry.get_active_sessions, **dispatch_options)
    return KibitzRuntime(
        settings_store=store,
        registry=registry,
        engine=engine,
        dispatch_service=dispatch_service,
    )
