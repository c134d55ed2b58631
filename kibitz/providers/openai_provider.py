"""OpenAI Chat Completions provider (streaming).

This is the only module that imports the ``openai`` package.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

import openai

from kibitz import config
from kibitz.providers.base import ChunkCallback, GenerationError

logger = logging.getLogger("kibitz.providers")


class OpenAIProvider:
    name = "openai"

    def __init__(self, api_key: Optional[str] = None, max_tokens: int = config.GENERATION_MAX_TOKENS):
        kwargs: dict[str, Any] = {}
        if api_key:
            kwargs["api_key"] = api_key
        self._client = openai.AsyncOpenAI(**kwargs)
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
            stream = await self._client.chat.completions.create(
                model=model,
                max_tokens=self.max_tokens,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                stream=True,
            )
            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                if delta is None or not delta.content:
                    continue
                text_parts.append(delta.content)
                if on_chunk:
                    on_chunk(delta.content)
        except openai.OpenAIError as e:
            logger.warning("OpenAI generation failed (%s): %s", model, e)
            raise GenerationError(f"OpenAI API error: {e}") from e
        return "".join(text_parts)
