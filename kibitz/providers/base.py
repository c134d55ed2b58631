"""Text backend interface shared by every provider."""
from __future__ import annotations

from typing import Callable, Optional, Protocol

ChunkCallback = Callable[[str], None]


class GenerationError(RuntimeError):
    """A text backend failed or timed out; the batch that asked for it is dropped."""


class Provider(Protocol):
    name: str

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        model: str,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> str:
        ...
