"""Subscription fallback: run the vendor's own CLI non-interactively.

The combined prompt lands in that CLI's session log. It carries both
self-prompt markers, which is how the session registry recognises and
ignores those logs.
"""
from __future__ import annotations

import asyncio
import codecs
import logging
import sys
from typing import Optional

from kibitz.platform_support import (
    CommandNotFoundError,
    get_provider_cli_command,
    resolve_cli_invocation,
    spawn_resolved,
)
from kibitz.providers.base import ChunkCallback, GenerationError

logger = logging.getLogger("kibitz.providers")

_READ_SIZE = 1024


def build_cli_generation_args(agent: str, prompt: str, model: str) -> list[str]:
    if agent == "codex":
        return ["exec", "--skip-git-repo-check", "-m", model, prompt]
    return ["-p", prompt, "--model", model, "--output-format", "text"]


class CliProvider:
    def __init__(self, agent: str, platform: str = sys.platform):
        self.agent = agent
        self.name = f"{agent}-cli"
        self.platform = platform

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        model: str,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> str:
        prompt = f"{system_prompt}\n\n{user_prompt}"
        command = get_provider_cli_command(self.agent, self.platform)
        try:
            resolved = resolve_cli_invocation(
                command,
                build_cli_generation_args(self.agent, prompt, model),
                platform=self.platform,
            )
        except CommandNotFoundError as e:
            raise GenerationError(str(e)) from e

        try:
            process = await spawn_resolved(
                resolved,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise GenerationError(f"Could not start {command}: {e}") from e

        text_parts: list[str] = []
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        stderr_task = asyncio.ensure_future(process.stderr.read()) if process.stderr else None
        try:
            while process.stdout is not None:
                data = await process.stdout.read(_READ_SIZE)
                if not data:
                    break
                text = decoder.decode(data)
                if not text:
                    continue
                text_parts.append(text)
                if on_chunk:
                    on_chunk(text)
            stderr = await stderr_task if stderr_task else b""
            code = await process.wait()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
            if stderr_task:
                stderr_task.cancel()
            raise

        if code != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()
            logger.warning("%s exited with code %s: %s", command, code, detail[:200])
            raise GenerationError(detail or f"{command} exited with code {code}")
        return "".join(text_parts)
