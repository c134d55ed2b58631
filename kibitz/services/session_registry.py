"""Session registry: tracked log files, stable identity, and the active Session View."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Optional

from kibitz import config
from kibitz.models import ActivityEvent, SessionInfo
from kibitz.observability import record_decode_failure, record_events_decoded, start_span
from kibitz.parsers.platforms.registry import decode_line, discover_claude_logs, discover_codex_logs
from kibitz.services.commentary_prompts import SELF_PROMPT_MARKERS
from kibitz.session_titles import CodexTitleStore, clean_title
from kibitz.text_utils import file_stem, parent_dir_name, project_name_from_cwd, project_name_from_encoded_dir

logger = logging.getLogger("kibitz.registry")

EventListener = Callable[[ActivityEvent], None]

_PLACEHOLDER_PROJECTS = {"", "unknown", "codex"}
# A partial trailing line longer than this is garbage, not a line in progress.
_MAX_PARTIAL_BYTES = 1024 * 1024


@dataclass
class LogSource:
    agent: str
    root: Path
    discover: Callable[[Path], Iterable[Path]]


@dataclass
class TrackedSession:
    file_path: Path
    agent: str
    offset: int
    project_name: str = "unknown"
    session_id: Optional[str] = None
    fallback_id: str = ""
    session_title: Optional[str] = None
    title_source: Optional[str] = None
    cwd: Optional[str] = None
    ignore: bool = False
    last_activity: float = 0.0
    lines_seen: int = 0
    loop_markers_seen: set[str] = field(default_factory=set)
    partial: bytes = b""

    @property
    def key(self) -> str:
        return str(self.file_path)

    @property
    def identity(self) -> str:
        return self.session_id or self.fallback_id or file_stem(str(self.file_path))

    def advance_offset(self, new_offset: int) -> None:
        if new_offset > self.offset:
            self.offset = new_offset


def default_log_sources() -> list[LogSource]:
    return [
        LogSource("claude", config.CLAUDE_PROJECTS_DIR, discover_claude_logs),
        LogSource("codex", config.CODEX_SESSIONS_DIR, discover_codex_logs),
    ]


class SessionRegistry:
    """Owns every TrackedSession and the byte offsets inside them.

    Collaborators get copies (``get_active_sessions``) or subscribe to the
    event stream; nothing outside this class mutates a record.
    """

    def __init__(
        self,
        sources: Optional[list[LogSource]] = None,
        *,
        title_store: Optional[CodexTitleStore] = None,
        activity_window: float = config.ACTIVITY_WINDOW_SECONDS,
        head_probe_bytes: int = config.HEAD_PROBE_BYTES,
        probe_lines: int = config.SELF_LOOP_PROBE_LINES,
        clock: Callable[[], float] = time.time,
    ):
        self.sources = sources if sources is not None else default_log_sources()
        self.title_store = title_store
        self.activity_window = activity_window
        self.head_probe_bytes = head_probe_bytes
        self.probe_lines = probe_lines
        self._clock = clock
        self._records: dict[str, TrackedSession] = {}
        self._listeners: list[EventListener] = []
        self._task: Optional[asyncio.Task] = None
        self._running = False

    # ── Subscription ──────────────────────────────────────────────

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: ActivityEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Activity listener failed for session %s", event.sessionId)

    # ── Records ───────────────────────────────────────────────────

    @property
    def records(self) -> list[TrackedSession]:
        return list(self._records.values())

    def get_record(self, file_path: Path | str) -> Optional[TrackedSession]:
        return self._records.get(str(file_path))

    def find_record(self, agent: str, session_id: str) -> Optional[TrackedSession]:
        """Most recently active non-ignored record for (agent, session id)."""
        best: Optional[TrackedSession] = None
        for record in self._records.values():
            if record.ignore or record.agent != agent or record.identity != session_id:
                continue
            if best is None or record.last_activity > best.last_activity:
                best = record
        return best

    def agent_for_path(self, path: Path) -> Optional[str]:
        for source in self.sources:
            try:
                path.relative_to(source.root)
            except ValueError:
                continue
            return source.agent
        return None

    # ── Scan ──────────────────────────────────────────────────────

    def scan(self) -> dict[str, int]:
        """Register new recent log files and prune stale ones. Idempotent."""
        now = self._clock()
        added = 0
        with start_span("registry.scan", {"records": len(self._records)}):
            for source in self.sources:
                try:
                    candidates = list(source.discover(source.root))
                except OSError as e:
                    logger.debug("Could not enumerate %s logs under %s: %s", source.agent, source.root, e)
                    continue
                for path in candidates:
                    if str(path) in self._records:
                        continue
                    try:
                        mtime = path.stat().st_mtime
                    except OSError:
                        continue
                    if now - mtime > self.activity_window:
                        continue
                    if self.register_path(path, source.agent) is not None:
                        added += 1
            pruned = self._prune(now)
        if added or pruned:
            logger.info("Registry scan: %d added, %d pruned, %d tracked", added, pruned, len(self._records))
        return {"added": added, "pruned": pruned, "tracked": len(self._records)}

    def _prune(self, now: float) -> int:
        stale: list[str] = []
        for key, record in self._records.items():
            try:
                mtime = record.file_path.stat().st_mtime
            except OSError:
                stale.append(key)
                continue
            record.last_activity = max(record.last_activity, mtime)
            if now - record.last_activity > self.activity_window:
                stale.append(key)
        for key in stale:
            logger.debug("Pruning stale session log %s", key)
            del self._records[key]
        return len(stale)

    def register_path(self, path: Path, agent: str) -> Optional[TrackedSession]:
        """Start tracking ``path`` from its current end; existing history is probed, not replayed."""
        key = str(path)
        existing = self._records.get(key)
        if existing is not None:
            return existing
        try:
            stat = path.stat()
        except OSError as e:
            logger.debug("Cannot register %s: %s", path, e)
            return None

        record = TrackedSession(
            file_path=path,
            agent=agent,
            offset=stat.st_size,
            project_name=self._initial_project_name(agent, path),
            fallback_id=file_stem(str(path)),
            last_activity=stat.st_mtime,
        )
        self._probe_head(record, stat.st_size)
        self._refresh_title_from_store(record)
        self._records[key] = record
        logger.info(
            "Tracking %s session %s (%s)%s",
            agent,
            record.identity,
            record.project_name,
            " [ignored: self-generated]" if record.ignore else "",
        )
        return record

    def _initial_project_name(self, agent: str, path: Path) -> str:
        if agent == "claude":
            return project_name_from_encoded_dir(parent_dir_name(str(path)))
        return "unknown"

    def _probe_head(self, record: TrackedSession, size: int) -> None:
        limit = min(size, self.head_probe_bytes)
        if limit <= 0:
            return
        try:
            with open(record.file_path, "rb") as handle:
                head = handle.read(limit)
        except OSError as e:
            logger.debug("Head probe failed for %s: %s", record.file_path, e)
            return
        lines = head.split(b"\n")
        if limit < size or not head.endswith(b"\n"):
            # last segment may be cut mid-line
            lines = lines[:-1]
        for raw in lines:
            line = raw.decode("utf-8", errors="replace").strip()
            if line:
                self._process_line(record, line)

    # ── Incremental reads ─────────────────────────────────────────

    def on_file_changed(self, record: TrackedSession) -> list[ActivityEvent]:
        """Decode bytes appended since ``record.offset`` and emit the resulting events."""
        try:
            stat = record.file_path.stat()
        except OSError as e:
            logger.debug("Tracked log %s unavailable: %s", record.file_path, e)
            return []
        record.last_activity = max(record.last_activity, stat.st_mtime)
        size = stat.st_size
        if size <= record.offset:
            if size < record.offset:
                logger.debug("Log %s shrank (%d < %d); waiting for new data", record.file_path, size, record.offset)
            return []

        try:
            with open(record.file_path, "rb") as handle:
                handle.seek(record.offset)
                data = handle.read(size - record.offset)
        except OSError as e:
            logger.debug("Read raced a change on %s: %s", record.file_path, e)
            return []
        record.advance_offset(record.offset + len(data))

        buffer = record.partial + data
        parts = buffer.split(b"\n")
        record.partial = parts.pop()
        if len(record.partial) > _MAX_PARTIAL_BYTES:
            logger.debug("Dropping oversized partial line in %s", record.file_path)
            record.partial = b""

        self._refresh_title_from_store(record)

        emitted: list[ActivityEvent] = []
        for raw in parts:
            line = raw.decode("utf-8", errors="replace").strip()
            if line:
                emitted.extend(self._process_line(record, line))
        if record.ignore:
            emitted = []

        for event in emitted:
            self._emit(event)
        record_events_decoded(record.agent, len(emitted))
        return emitted

    def poll(self) -> int:
        """Process growth on every tracked file; recovers missed change notifications."""
        emitted = 0
        for record in list(self._records.values()):
            try:
                size = record.file_path.stat().st_size
            except OSError:
                continue
            if size != record.offset:
                emitted += len(self.on_file_changed(record))
        return emitted

    def _process_line(self, record: TrackedSession, line: str) -> list[ActivityEvent]:
        if record.lines_seen < self.probe_lines:
            record.lines_seen += 1
            self._check_self_loop(record, line)
        try:
            events = decode_line(record.agent, line, str(record.file_path))
        except Exception as e:
            logger.debug("Skipping undecodable %s line in %s: %s", record.agent, record.file_path, e)
            record_decode_failure(record.agent)
            return []

        stamped: list[ActivityEvent] = []
        for event in events:
            self._absorb_identity(record, event)
            stamped.append(event.model_copy(update={
                "sessionId": record.identity,
                "projectName": record.project_name,
                "sessionTitle": record.session_title,
            }))
        if record.ignore:
            return []
        return stamped

    def _check_self_loop(self, record: TrackedSession, line: str) -> None:
        if record.ignore:
            return
        lowered = line.lower()
        for marker in SELF_PROMPT_MARKERS:
            if marker.lower() in lowered:
                record.loop_markers_seen.add(marker)
        if len(record.loop_markers_seen) == len(SELF_PROMPT_MARKERS):
            record.ignore = True
            logger.info("Ignoring self-generated %s session log %s", record.agent, record.file_path)

    def _absorb_identity(self, record: TrackedSession, event: ActivityEvent) -> None:
        details = event.details
        if record.session_id is None and details.get("identitySource") == "log" and event.sessionId:
            record.session_id = event.sessionId
            self._refresh_title_from_store(record)

        cwd = details.get("cwd")
        if isinstance(cwd, str) and cwd.strip():
            if record.cwd is None:
                record.cwd = cwd
                record.project_name = project_name_from_cwd(cwd)
        elif record.project_name in _PLACEHOLDER_PROJECTS and event.projectName not in _PLACEHOLDER_PROJECTS:
            record.project_name = event.projectName

        if record.session_title or event.type != "meta":
            return
        title = clean_title(details.get("title") or details.get("prompt"))
        if title:
            record.session_title = title
            record.title_source = "log"

    def _refresh_title_from_store(self, record: TrackedSession) -> None:
        if self.title_store is None:
            return
        stored = self.title_store.get_title(record.agent, record.identity)
        if stored:
            record.session_title = stored
            record.title_source = "store"

    # ── Session View ──────────────────────────────────────────────

    def get_active_sessions(self) -> list[SessionInfo]:
        """Deduplicated (agent, session id) view of recently active, non-ignored logs."""
        now = self._clock()
        best: dict[tuple[str, str], TrackedSession] = {}
        for record in self._records.values():
            if record.ignore or now - record.last_activity > self.activity_window:
                continue
            key = (record.agent, record.identity)
            current = best.get(key)
            if current is None or record.last_activity > current.last_activity:
                best[key] = record

        sessions = [
            SessionInfo(
                id=record.identity,
                agent=record.agent,
                projectName=record.project_name,
                sessionTitle=record.session_title,
                filePath=str(record.file_path),
                cwd=record.cwd,
                lastActivity=record.last_activity,
            )
            for record in best.values()
        ]
        sessions.sort(key=lambda s: s.lastActivity, reverse=True)
        return sessions

    # ── Background loop ───────────────────────────────────────────

    async def start(self, interval: float = config.SCAN_INTERVAL_SECONDS) -> None:
        if self._running:
            logger.warning("Session registry already running")
            return
        self._running = True
        self._task = asyncio.create_task(self._scan_loop(interval))
        logger.info("Session registry started (scan every %ss)", interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Session registry stopped")

    @property
    def is_running(self) -> bool:
        return self._running

    async def _scan_loop(self, interval: float) -> None:
        try:
            while self._running:
                try:
                    self.scan()
                    self.poll()
                except Exception as e:
                    logger.error(f"Registry scan failed: {e}")
                await asyncio.sleep(interval)
        except asyncio.CancelledError:
            logger.info("Registry scan task cancelled")
            raise
        finally:
            self._running = False
