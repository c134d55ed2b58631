"""Locate agent CLIs consistently across macOS, Linux and Windows."""
from __future__ import annotations

import asyncio
import logging
import os
import re
import shutil
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger("kibitz.dispatch")

# npm's generated .cmd shims end with: "%dp0%\node_modules\pkg\cli.js" %*
_CMD_SCRIPT_RE = re.compile(r"%dp0%\\(.+?\.js)", re.IGNORECASE)
_DRIVE_LETTER_RE = re.compile(r"^[A-Za-z]$")


def get_provider_cli_command(provider: str, platform: str = sys.platform) -> str:
    return f"{provider}.cmd" if platform == "win32" else provider


def find_command_path(command: str, search_path: Optional[str] = None) -> Optional[str]:
    return shutil.which(command, path=search_path)


def resolve_cmd_node_script(cmd_path: str) -> Optional[str]:
    """Map an npm ``.cmd`` wrapper to the JavaScript file it launches.

    Running the script through node directly avoids cmd.exe's command-line
    length limit for long prompts.
    """
    if not str(cmd_path or "").lower().endswith(".cmd"):
        return None
    try:
        content = Path(cmd_path).read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None
    match = _CMD_SCRIPT_RE.search(content)
    if not match:
        return None
    relative = match.group(1).replace("\\", os.sep)
    script = Path(cmd_path).parent / relative
    return str(script) if script.exists() else None


class CommandNotFoundError(FileNotFoundError):
    """The agent CLI is not on the search path."""


@dataclass
class ResolvedCommand:
    argv: list[str]
    shell: bool = False


def resolve_cli_invocation(
    command: str,
    args: list[str],
    platform: str = sys.platform,
    search_path: Optional[str] = None,
) -> ResolvedCommand:
    path_hint = find_command_path(command, search_path)
    if not path_hint:
        raise CommandNotFoundError(f"CLI not found: {command}")
    if platform == "win32":
        node_script = resolve_cmd_node_script(path_hint)
        if node_script:
            node = find_command_path("node", search_path) or "node"
            return ResolvedCommand(argv=[node, node_script, *args])
        if path_hint.lower().endswith(".cmd"):
            return ResolvedCommand(argv=[path_hint, *args], shell=True)
    return ResolvedCommand(argv=[path_hint, *args])


def decode_claude_project_path(file_path: str, platform: str = sys.platform) -> Optional[str]:
    """Recover a working directory from Claude's encoded project folder name.

    ``-Users-me-room`` → ``/Users/me/room``; ``C--work-room`` → ``C:\\work\\room``.
    Only returned when the directory exists.
    """
    project_dir = Path(file_path).parent.name if file_path else ""
    parts = [part for part in project_dir.split("-") if part]
    if not parts:
        return None
    if platform == "win32" and len(parts) >= 2 and _DRIVE_LETTER_RE.match(parts[0]):
        windows_path = f"{parts[0]}:\\" + "\\".join(parts[1:])
        if Path(windows_path).is_dir():
            return windows_path
    unix_path = "/" + "/".join(parts)
    return unix_path if Path(unix_path).is_dir() else None


def _merge_path(current: str, extra: list[str], prepend: bool) -> str:
    known = [part for part in current.split(os.pathsep) if part]
    additions = [part for part in extra if part and part not in known]
    if not additions:
        return current
    merged = additions + known if prepend else known + additions
    return os.pathsep.join(merged)


def inherit_shell_path(platform: str = sys.platform) -> None:
    """Best-effort: make user-installed CLIs visible when started outside a login shell."""
    current = os.environ.get("PATH", "")
    if platform == "darwin":
        shells = []
        for candidate in (os.environ.get("SHELL", ""), "/bin/zsh", "/bin/bash"):
            if candidate and candidate not in shells:
                shells.append(candidate)
        for shell in shells:
            if not Path(shell).exists():
                continue
            try:
                result = subprocess.run(
                    [shell, "-lic", "echo $PATH"],
                    capture_output=True,
                    text=True,
                    timeout=5,
                )
            except (OSError, subprocess.SubprocessError) as e:
                logger.debug("Could not read PATH from %s: %s", shell, e)
                continue
            shell_path = result.stdout.strip()
            if shell_path:
                os.environ["PATH"] = _merge_path(current, shell_path.split(os.pathsep), prepend=False)
                return
        return

    npm = "npm.cmd" if platform == "win32" else "npm"
    try:
        result = subprocess.run(
            [npm, "prefix", "-g"],
            capture_output=True,
            text=True,
            timeout=5,
            shell=platform == "win32",
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug("npm unavailable, PATH unchanged: %s", e)
        return
    prefix = result.stdout.strip()
    if not prefix:
        return
    if platform == "win32":
        candidates = [prefix, str(Path(prefix) / "node_modules" / ".bin")]
    else:
        candidates = [str(Path(prefix) / "bin")]
    os.environ["PATH"] = _merge_path(current, candidates, prepend=True)


async def spawn_resolved(resolved: ResolvedCommand, **kwargs) -> asyncio.subprocess.Process:
    if resolved.shell:
        return await asyncio.create_subprocess_shell(subprocess.list2cmdline(resolved.argv), **kwargs)
    return await asyncio.create_subprocess_exec(*resolved.argv, **kwargs)
