"""Anthropic Messages API provider (streaming).

This is the only module that imports the ``anthropic`` package.
"""
from __future__ import annotations

import logging
from typing import Optional

import anthropic

from kibitz import config
from kibitz.providers.base import ChunkCallback, GenerationError

logger = logging.getLogger("kibitz.providers")


class AnthropicProvider:
    name = "anthropic"

    def __init__(self, api_key: Optional[str] = None, max_tokens: int = config.GENERATION_MAX_TOKENS):
        kwargs = {}
        if api_key:
            kwargs["api_key"] = api_key
        self._client = anthropic.AsyncAnthropic(**kwargs)
        self.max_tokens = max_tokens

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        model: str,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> str:
        text_parts: list[str] = []
        try:
            async with self._client.messages.stream(
                model=model,
                max_tokens=self.max_tokens,
                system=system_prompt,
                messages=[{"role": "user", "content": user_prompt}],
            ) as stream:
                async for event in stream:
                    if getattr(event, "type", None) != "content_block_delta":
                        continue
                    delta = getattr(event, "delta", None)
                    if delta is None or getattr(delta, "type", None) != "text_delta":
                        continue
                    text = getattr(delta, "text", "")
                    if text:
                        text_parts.append(text)
                        if on_chunk:
                            on_chunk(text)
        except anthropic.APIError as e:
            logger.warning("Anthropic generation failed (%s): %s", model, e)
            raise GenerationError(f"Anthropic API error: {e}") from e
        return "".join(text_parts)
