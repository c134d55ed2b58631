"""Settings store: JSON-file persistence for user preferences."""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Callable

from kibitz import config
from kibitz.models import KibitzSettings, SettingsUpdate
from kibitz.services.commentary_prompts import COMMENTARY_PRESETS, COMMENTARY_STYLES, DEFAULT_PRESET
from kibitz.summary_interval import DEFAULT_SUMMARY_INTERVAL_MS, normalize_summary_interval_ms

logger = logging.getLogger("kibitz.settings")

FOCUS_MAX_LENGTH = 500
KNOWN_MODEL_IDS = {model_id for model_id, _, _ in config.MODELS}


def _normalize_model(value: Any) -> str:
    text = str(value or "").strip()
    return text if text in KNOWN_MODEL_IDS else config.DEFAULT_MODEL


def _normalize_preset(value: Any) -> str:
    text = str(value or "").strip()
    return text if text in COMMENTARY_PRESETS else DEFAULT_PRESET


def _normalize_format_styles(value: Any) -> list[str]:
    if not isinstance(value, list):
        return list(COMMENTARY_STYLES)
    styles: list[str] = []
    for item in value:
        style = str(item or "").strip()
        if style in COMMENTARY_STYLES and style not in styles:
            styles.append(style)
    return styles or list(COMMENTARY_STYLES)


def _normalize_focus(value: Any) -> str:
    return str(value or "").strip()[:FOCUS_MAX_LENGTH]


# key -> (normalizer, default factory)
SETTING_NORMALIZERS: dict[str, tuple[Callable[[Any], Any], Callable[[], Any]]] = {
    "model": (_normalize_model, lambda: config.DEFAULT_MODEL),
    "preset": (_normalize_preset, lambda: DEFAULT_PRESET),
    "formatStyles": (_normalize_format_styles, lambda: list(COMMENTARY_STYLES)),
    "summaryIntervalMs": (normalize_summary_interval_ms, lambda: DEFAULT_SUMMARY_INTERVAL_MS),
    "focus": (_normalize_focus, lambda: ""),
}


class SettingsStore:
    """Get/set semantics over a small JSON document, one documented default per key."""

    def __init__(self, storage_path: Path):
        self.storage_path = storage_path
        self._values: dict[str, Any] = {key: default() for key, (_, default) in SETTING_NORMALIZERS.items()}
        self._load()

    def _load(self) -> None:
        if not self.storage_path.exists():
            return
        try:
            content = self.storage_path.read_text(encoding="utf-8")
            if not content.strip():
                return
            data = json.loads(content)
        except (OSError, ValueError) as e:
            logger.error(f"Failed to load settings file: {e}")
            return
        if not isinstance(data, dict):
            logger.error("Settings file does not contain an object; using defaults")
            return
        for key, (normalize, _) in SETTING_NORMALIZERS.items():
            if key in data:
                self._values[key] = normalize(data[key])

    def _save(self) -> None:
        try:
            self.storage_path.parent.mkdir(parents=True, exist_ok=True)
            self.storage_path.write_text(json.dumps(self._values, indent=2), encoding="utf-8")
        except OSError as e:
            logger.warning(f"Failed to save settings to {self.storage_path}: {e}")

    def get(self, key: str) -> Any:
        if key not in SETTING_NORMALIZERS:
            raise KeyError(key)
        value = self._values[key]
        return list(value) if isinstance(value, list) else value

    def set(self, key: str, value: Any) -> Any:
        if key not in SETTING_NORMALIZERS:
            raise KeyError(key)
        normalize, _ = SETTING_NORMALIZERS[key]
        self._values[key] = normalize(value)
        self._save()
        logger.info(f"Setting {key} updated")
        return self.get(key)

    def snapshot(self) -> KibitzSettings:
        return KibitzSettings(**{key: self.get(key) for key in SETTING_NORMALIZERS})

    def update(self, changes: SettingsUpdate) -> KibitzSettings:
        payload = changes.model_dump(exclude_none=True)
        for key, (normalize, _) in SETTING_NORMALIZERS.items():
            if key in payload:
                self._values[key] = normalize(payload[key])
        if payload:
            self._save()
            logger.info(f"Settings updated: {', '.join(sorted(payload))}")
        return self.snapshot()


def default_settings_store() -> SettingsStore:
    return SettingsStore(config.SETTINGS_PATH)
