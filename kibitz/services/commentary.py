"""Adaptive commentary engine.

Per session: accumulate events, flush on an idle timer, a max-wait timer or a
hard size cap, and hold back batches smaller than the minimum until a single
grace timer forces them out. Across sessions: one global FIFO of sessions
awaiting generation, drained by one pump task, so at most one generation is
ever in flight.
"""
from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol

from kibitz import config
from kibitz.models import ActivityEvent, CommentaryEntry, CommentaryUpdate
from kibitz.observability import record_generation, start_span
from kibitz.providers.base import GenerationError, Provider
from kibitz.providers.registry import get_provider
from kibitz.services.assessment import apply_assessment_signals, build_commentary_assessment
from kibitz.services.commentary_prompts import (
    COMMENTARY_PRESETS,
    COMMENTARY_STYLES,
    DEFAULT_PRESET,
    build_system_prompt,
    build_user_prompt,
    sanitize_commentary,
)
from kibitz.summary_interval import (
    DEFAULT_SUMMARY_INTERVAL_MS,
    idle_seconds,
    max_wait_seconds,
    normalize_summary_interval_ms,
)

logger = logging.getLogger("kibitz.commentary")

UpdateListener = Callable[[CommentaryUpdate], None]
ProviderResolver = Callable[[str], Provider]


class TimerHandle(Protocol):
    def cancel(self) -> None:
        ...


class Scheduler(Protocol):
    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        ...

    def time(self) -> float:
        ...


class AsyncioScheduler:
    """Timers on the running event loop; wall-clock timestamps."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback)

    def time(self) -> float:
        return time.time()


def session_key(agent: str, session_id: str) -> str:
    return f"{agent}:{session_id}"


def is_commentary_worthy(event: ActivityEvent) -> bool:
    if event.type == "meta":
        return False
    if event.type == "tool_result":
        return bool(event.details.get("isError"))
    return True


@dataclass
class SessionBatch:
    key: str
    events: list[ActivityEvent] = field(default_factory=list)
    idle_timer: Optional[TimerHandle] = None
    max_timer: Optional[TimerHandle] = None
    grace_timer: Optional[TimerHandle] = None

    def cancel_wait_timers(self) -> None:
        if self.idle_timer is not None:
            self.idle_timer.cancel()
            self.idle_timer = None
        if self.max_timer is not None:
            self.max_timer.cancel()
            self.max_timer = None

    def cancel_timers(self) -> None:
        self.cancel_wait_timers()
        if self.grace_timer is not None:
            self.grace_timer.cancel()
            self.grace_timer = None


class CommentaryEngine:
    def __init__(
        self,
        provider_resolver: ProviderResolver = get_provider,
        *,
        model: str = config.DEFAULT_MODEL,
        preset: str = DEFAULT_PRESET,
        format_styles: Optional[list[str]] = None,
        focus: str = "",
        summary_interval_ms: int = DEFAULT_SUMMARY_INTERVAL_MS,
        scheduler: Optional[Scheduler] = None,
        min_batch: int = config.MIN_BATCH_SIZE,
        max_batch: int = config.MAX_BATCH_SIZE,
        generation_timeout: float = config.GENERATION_TIMEOUT_SECONDS,
        history_size: int = config.COMMENTARY_HISTORY,
        recent_limit: int = config.RECENT_ENTRIES,
    ):
        self._provider_resolver = provider_resolver
        self.model = model
        self.preset = preset if preset in COMMENTARY_PRESETS else DEFAULT_PRESET
        self.format_styles = list(format_styles) if format_styles else list(COMMENTARY_STYLES)
        self.focus = focus
        self.summary_interval_ms = normalize_summary_interval_ms(summary_interval_ms)
        self._scheduler: Scheduler = scheduler or AsyncioScheduler()
        self.min_batch = min_batch
        self.max_batch = max_batch
        self.generation_timeout = generation_timeout
        self.history_size = history_size

        self._batches: dict[str, SessionBatch] = {}
        self._history: dict[str, deque[str]] = {}
        self._queue: deque[str] = deque()
        self._queued: set[str] = set()
        self._generating: Optional[str] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._paused = False
        self._last_style: Optional[str] = None
        self._recent: deque[CommentaryEntry] = deque(maxlen=recent_limit)
        self._listeners: list[UpdateListener] = []

    # ── Listeners ─────────────────────────────────────────────────

    def subscribe(self, listener: UpdateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, update: CommentaryUpdate) -> None:
        for listener in list(self._listeners):
            try:
                listener(update)
            except Exception:
                logger.exception("Commentary listener failed on %s update", update.kind)

    # ── Introspection ─────────────────────────────────────────────

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def generating(self) -> Optional[str]:
        return self._generating

    @property
    def queued_sessions(self) -> list[str]:
        return list(self._queue)

    def pending_count(self, key: str) -> int:
        batch = self._batches.get(key)
        return len(batch.events) if batch else 0

    def recent_entries(self, limit: Optional[int] = None) -> list[CommentaryEntry]:
        entries = list(self._recent)
        return entries[-limit:] if limit else entries

    # ── Configuration ─────────────────────────────────────────────

    def configure(
        self,
        *,
        model: Optional[str] = None,
        preset: Optional[str] = None,
        format_styles: Optional[list[str]] = None,
        focus: Optional[str] = None,
    ) -> None:
        if model is not None:
            self.model = model
        if preset is not None:
            self.preset = preset if preset in COMMENTARY_PRESETS else DEFAULT_PRESET
        if format_styles is not None:
            self.format_styles = [style for style in format_styles if style in COMMENTARY_STYLES] or list(COMMENTARY_STYLES)
        if focus is not None:
            self.focus = focus

    def set_summary_interval(self, interval_ms: int) -> int:
        """Change the interval and re-arm every running timer with the new durations."""
        self.summary_interval_ms = normalize_summary_interval_ms(interval_ms)
        for key, batch in self._batches.items():
            if batch.idle_timer is not None:
                batch.idle_timer.cancel()
                batch.idle_timer = self._call_later(self._idle_seconds, self._on_idle, key)
            if batch.max_timer is not None:
                batch.max_timer.cancel()
                batch.max_timer = self._call_later(self._max_wait_seconds, self._on_max_wait, key)
            if batch.grace_timer is not None:
                batch.grace_timer.cancel()
                batch.grace_timer = self._call_later(self._idle_seconds, self._on_grace, key)
        logger.info("Summary interval set to %sms", self.summary_interval_ms)
        self._notify(CommentaryUpdate(kind="interval", intervalMs=self.summary_interval_ms))
        return self.summary_interval_ms

    @property
    def _idle_seconds(self) -> float:
        return idle_seconds(self.summary_interval_ms)

    @property
    def _max_wait_seconds(self) -> float:
        return max_wait_seconds(self.summary_interval_ms)

    def _call_later(self, delay: float, handler: Callable[[str], None], key: str) -> TimerHandle:
        return self._scheduler.call_later(delay, lambda: handler(key))

    # ── Pause / resume ────────────────────────────────────────────

    def pause(self) -> None:
        """Stop batching and drop pending work; an in-flight generation still completes."""
        self._paused = True
        for batch in self._batches.values():
            batch.cancel_timers()
        self._batches.clear()
        self._queue.clear()
        self._queued.clear()
        logger.info("Commentary paused")

    def resume(self) -> None:
        self._paused = False
        logger.info("Commentary resumed")

    # ── Event intake ──────────────────────────────────────────────

    def add_event(self, event: ActivityEvent) -> bool:
        if self._paused or not is_commentary_worthy(event):
            return False
        key = session_key(event.agent, event.sessionId)
        batch = self._batches.get(key)
        if batch is None:
            batch = self._batches[key] = SessionBatch(key=key)
        batch.events.append(event)

        if len(batch.events) >= self.max_batch:
            self.request_flush(key, force=True)
            return True
        if key in self._queued or key == self._generating:
            # picked up when the session reaches the front of the queue, or right after its generation
            return True

        if batch.idle_timer is not None:
            batch.idle_timer.cancel()
        batch.idle_timer = self._call_later(self._idle_seconds, self._on_idle, key)
        if batch.max_timer is None:
            batch.max_timer = self._call_later(self._max_wait_seconds, self._on_max_wait, key)
        return True

    def _on_idle(self, key: str) -> None:
        batch = self._batches.get(key)
        if batch is not None:
            batch.idle_timer = None
        self.request_flush(key)

    def _on_max_wait(self, key: str) -> None:
        batch = self._batches.get(key)
        if batch is not None:
            batch.max_timer = None
        self.request_flush(key)

    def _on_grace(self, key: str) -> None:
        batch = self._batches.get(key)
        if batch is not None:
            batch.grace_timer = None
        self.request_flush(key, force=True)

    def flush_session(self, key: str) -> bool:
        """Force a session's pending events into the generation queue."""
        self.request_flush(key, force=True)
        return key in self._queued or key == self._generating

    def request_flush(self, key: str, force: bool = False) -> None:
        if self._paused:
            return
        batch = self._batches.get(key)
        if batch is None or not batch.events:
            return
        if key in self._queued or key == self._generating:
            return

        if not force and len(batch.events) < self.min_batch:
            batch.cancel_wait_timers()
            if batch.grace_timer is None:
                batch.grace_timer = self._call_later(self._idle_seconds, self._on_grace, key)
            logger.debug("Holding %d event(s) for %s until the grace period ends", len(batch.events), key)
            return

        batch.cancel_timers()
        self._queued.add(key)
        self._queue.append(key)
        self._ensure_pump()

    # ── Generation ────────────────────────────────────────────────

    def _ensure_pump(self) -> None:
        if self._pump_task is None or self._pump_task.done():
            self._pump_task = asyncio.get_running_loop().create_task(self._drain_queue())

    async def _drain_queue(self) -> None:
        while self._queue:
            key = self._queue.popleft()
            self._queued.discard(key)
            batch = self._batches.get(key)
            if batch is None or not batch.events:
                continue
            events = batch.events[: self.max_batch]
            del batch.events[: len(events)]

            self._generating = key
            try:
                await self._generate(key, events)
            except Exception:
                # drop the batch, keep draining
                logger.exception("Commentary batch for %s could not be processed", key)
            finally:
                self._generating = None
            self._after_generation(key)

    def _after_generation(self, key: str) -> None:
        batch = self._batches.get(key)
        if batch is None:
            return
        if batch.events:
            self.request_flush(key)
            return
        batch.cancel_timers()
        self._batches.pop(key, None)

    def _next_style(self) -> str:
        styles = [style for style in self.format_styles if style in COMMENTARY_STYLES] or list(COMMENTARY_STYLES)
        if self._last_style in styles:
            style = styles[(styles.index(self._last_style) + 1) % len(styles)]
        else:
            style = styles[0]
        self._last_style = style
        return style

    async def _generate(self, key: str, events: list[ActivityEvent]) -> None:
        style = self._next_style()
        assessment = build_commentary_assessment(events)
        history = self._history.setdefault(key, deque(maxlen=self.history_size))
        system_prompt = build_system_prompt(style, self.preset, self.focus)
        user_prompt = build_user_prompt(events, assessment, list(history))

        last = events[-1]
        entry = CommentaryEntry(
            timestamp=self._scheduler.time(),
            sessionId=last.sessionId,
            projectName=last.projectName,
            sessionTitle=last.sessionTitle,
            agent=last.agent,
            eventSummary=" → ".join(event.summary for event in events),
            eventCount=len(events),
            style=style,
            assessment=assessment,
        )
        self._notify(CommentaryUpdate(kind="start", entry=entry))

        def on_chunk(chunk: str) -> None:
            self._notify(CommentaryUpdate(kind="chunk", entry=entry, chunk=chunk))

        started = time.monotonic()
        with start_span("commentary.generate", {"session": key, "events": len(events), "model": self.model}):
            try:
                provider = self._provider_resolver(self.model)
                raw = await asyncio.wait_for(
                    provider.generate(system_prompt, user_prompt, model=self.model, on_chunk=on_chunk),
                    timeout=self.generation_timeout,
                )
            except asyncio.TimeoutError:
                self._fail(entry, GenerationError(f"Generation timed out after {self.generation_timeout:g}s"), started)
                return
            except Exception as e:
                self._fail(entry, e, started)
                return

        try:
            text = apply_assessment_signals(sanitize_commentary(raw), assessment)
        except Exception as e:
            self._fail(entry, e, started)
            raise
        entry = entry.model_copy(update={"commentary": text})
        history.append(text)
        self._recent.append(entry)
        record_generation("ok", (time.monotonic() - started) * 1000, model=self.model)
        logger.info("Commentary for %s (%d events, %s)", key, len(events), style)
        self._notify(CommentaryUpdate(kind="done", entry=entry))

    def _fail(self, entry: CommentaryEntry, error: Exception, started: float) -> None:
        record_generation("error", (time.monotonic() - started) * 1000, model=self.model)
        logger.warning(f"Commentary generation failed for {entry.agent}:{entry.sessionId}: {error}")
        self._notify(CommentaryUpdate(kind="error", entry=entry, error=str(error) or type(error).__name__))

    # ── Lifecycle ─────────────────────────────────────────────────

    async def wait_idle(self) -> None:
        """Return once the generation queue is empty and nothing is generating."""
        while self._pump_task is not None and not self._pump_task.done():
            await asyncio.shield(self._pump_task)

    async def close(self) -> None:
        for batch in self._batches.values():
            batch.cancel_timers()
        self._batches.clear()
        self._queue.clear()
        self._queued.clear()
        if self._pump_task is not None and not self._pump_task.done():
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass
        self._pump_task = None
