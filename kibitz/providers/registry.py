"""Resolve a text backend for a model id."""
from __future__ import annotations

import logging
import os
from typing import Mapping, Optional

from kibitz import config
from kibitz.providers.base import Provider

logger = logging.getLogger("kibitz.providers")

# provider family -> (API key variable, CLI agent used without a key)
PROVIDER_FAMILIES: dict[str, tuple[str, str]] = {
    "anthropic": ("ANTHROPIC_API_KEY", "claude"),
    "openai": ("OPENAI_API_KEY", "codex"),
}

_cache: dict[tuple[str, bool], Provider] = {}


def provider_family(model_id: str) -> Optional[str]:
    for known_id, _, family in config.MODELS:
        if known_id == model_id:
            return family
    return None


def get_provider(model_id: str, env: Optional[Mapping[str, str]] = None) -> Provider:
    family = provider_family(model_id)
    if family is None:
        raise ValueError(f"Unknown model: {model_id}")
    environ = env if env is not None else os.environ
    key_var, cli_agent = PROVIDER_FAMILIES[family]
    api_key = (environ.get(key_var) or "").strip()
    cache_key = (family, bool(api_key))
    if cache_key in _cache:
        return _cache[cache_key]

    provider: Provider
    if api_key and family == "anthropic":
        from kibitz.providers.anthropic_provider import AnthropicProvider

        provider = AnthropicProvider(api_key=api_key)
    elif api_key and family == "openai":
        from kibitz.providers.openai_provider import OpenAIProvider

        provider = OpenAIProvider(api_key=api_key)
    else:
        from kibitz.providers.cli_provider import CliProvider

        provider = CliProvider(cli_agent)
    logger.info("Using %s provider for %s", provider.name, model_id)
    _cache[cache_key] = provider
    return provider


def reset_provider_cache() -> None:
    _cache.clear()
