"""File watcher service using watchfiles.

Monitors the agent log roots and hands appended data to the session
registry as soon as a transcript changes.
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Optional

from watchfiles import Change, awatch

from kibitz.services.session_registry import SessionRegistry

logger = logging.getLogger("kibitz.watcher")


def classify_changes(changes: set[tuple[Change, str]]) -> list[tuple[str, Path]]:
    """Classify raw watchfiles changes into (change_type, path) pairs.

    Only session transcripts (.jsonl) are relevant.
    """
    result = []
    for change_type, path_str in changes:
        path = Path(path_str)
        if path.suffix != ".jsonl":
            continue
        if change_type == Change.deleted:
            result.append(("deleted", path))
        elif change_type == Change.added:
            result.append(("added", path))
        elif change_type == Change.modified:
            result.append(("modified", path))
    return sorted(result, key=lambda item: str(item[1]))


class FileWatcher:
    """Background watcher feeding change notifications to a SessionRegistry."""

    def __init__(self):
        self._task: Optional[asyncio.Task] = None
        self._running = False
        self._stop_event: Optional[asyncio.Event] = None

    async def start(self, registry: SessionRegistry) -> None:
        if self._running:
            logger.warning("File watcher already running")
            return
        self._running = True
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._watch_loop(registry))
        logger.info("File watcher started")

    async def stop(self) -> None:
        self._running = False
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("File watcher stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    def handle_changes(self, registry: SessionRegistry, classified: list[tuple[str, Path]]) -> int:
        """Apply one batch of classified changes; returns the number of events emitted."""
        emitted = 0
        for change_type, path in classified:
            if change_type == "deleted":
                continue
            record = registry.get_record(path)
            if record is None:
                agent = registry.agent_for_path(path)
                if agent is None:
                    continue
                # registration starts at the current end of file; nothing to read yet
                registry.register_path(path, agent)
                continue
            emitted += len(registry.on_file_changed(record))
        return emitted

    async def _watch_loop(self, registry: SessionRegistry) -> None:
        watch_paths = [source.root for source in registry.sources if source.root.exists()]
        if not watch_paths:
            logger.warning("No log roots exist, watcher has nothing to monitor")
            self._running = False
            return

        logger.info(f"Watching {len(watch_paths)} directories: {[str(p) for p in watch_paths]}")

        try:
            async for changes in awatch(*watch_paths, stop_event=self._stop_event):
                if not self._running:
                    break
                classified = classify_changes(changes)
                if not classified:
                    continue
                try:
                    emitted = self.handle_changes(registry, classified)
                    logger.debug(f"Processed {len(classified)} file changes ({emitted} events)")
                except Exception as e:
                    logger.error(f"Error processing changed files: {e}")
        except asyncio.CancelledError:
            logger.info("File watcher task cancelled")
        except Exception as e:
            logger.error(f"File watcher error: {e}")
        finally:
            self._running = False


file_watcher = FileWatcher()
