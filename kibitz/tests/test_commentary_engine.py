import asyncio
import unittest
from unittest.mock import patch

from kibitz.models import ActivityEvent, CommentaryUpdate
from kibitz.providers.base import GenerationError
from kibitz.services import commentary as commentary_module
from kibitz.services.commentary import CommentaryEngine, is_commentary_worthy, session_key


class _Timer:
    def __init__(self, when: float, callback) -> None:
        self.when = when
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class _ManualScheduler:
    def __init__(self) -> None:
        self.now = 0.0
        self._timers: list[_Timer] = []

    def call_later(self, delay: float, callback) -> _Timer:
        timer = _Timer(self.now + delay, callback)
        self._timers.append(timer)
        return timer

    def time(self) -> float:
        return 1_700_000_000.0 + self.now

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            due = sorted(
                (timer for timer in self._timers if not timer.cancelled and timer.when <= target),
                key=lambda timer: timer.when,
            )
            if not due:
                break
            timer = due[0]
            self._timers.remove(timer)
            self.now = timer.when
            timer.callback()
        self.now = target


class _FakeProvider:
    def __init__(self, reply: str = "The **agent** fixed the login page.", gate: asyncio.Event | None = None) -> None:
        self.reply = reply
        self.gate = gate
        self.calls: list[tuple[str, str]] = []
        self.active = 0
        self.max_active = 0
        self.error: Exception | None = None

    async def generate(self, system_prompt, user_prompt, *, model, on_chunk=None):
        self.calls.append((system_prompt, user_prompt))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.error is not None:
                raise self.error
            if on_chunk is not None:
                on_chunk(self.reply)
            return self.reply
        finally:
            self.active -= 1


def _event(kind: str = "tool_call", summary: str = "Reading app.py", session: str = "s1", agent: str = "claude", **details) -> ActivityEvent:
    return ActivityEvent(
        sessionId=session,
        agent=agent,
        projectName="room",
        timestamp=1_700_000_000.0,
        type=kind,
        summary=summary,
        details=details,
    )


class CommentaryEngineTests(unittest.IsolatedAsyncioTestCase):
    def _engine(self, provider: _FakeProvider, **kwargs) -> tuple[CommentaryEngine, _ManualScheduler, list[CommentaryUpdate]]:
        scheduler = _ManualScheduler()
        kwargs.setdefault("min_batch", 5)
        kwargs.setdefault("max_batch", 40)
        engine = CommentaryEngine(lambda model: provider, scheduler=scheduler, summary_interval_ms=30_000, **kwargs)
        updates: list[CommentaryUpdate] = []
        engine.subscribe(updates.append)
        self.addAsyncCleanup(engine.close)
        return engine, scheduler, updates

    async def _settle(self) -> None:
        for _ in range(5):
            await asyncio.sleep(0)

    async def test_idle_flush_generates_one_batch_in_arrival_order(self) -> None:
        provider = _FakeProvider()
        engine, scheduler, updates = self._engine(provider)
        summaries = [f"Reading file{i}.py" for i in range(5)] + ["Looks good", "Next up: tests"]
        for summary in summaries[:5]:
            engine.add_event(_event(summary=summary))
        for summary in summaries[5:]:
            engine.add_event(_event("message", summary))

        scheduler.advance(29)
        await self._settle()
        self.assertEqual(provider.calls, [])

        scheduler.advance(1)
        await engine.wait_idle()

        self.assertEqual(len(provider.calls), 1)
        user_prompt = provider.calls[0][1]
        positions = [user_prompt.index(summary) for summary in summaries]
        self.assertEqual(positions, sorted(positions))
        done = [update for update in updates if update.kind == "done"]
        self.assertEqual(len(done), 1)
        self.assertEqual(done[0].entry.eventCount, 7)
        self.assertEqual(engine.pending_count(session_key("claude", "s1")), 0)

    async def test_small_batch_waits_for_grace_period(self) -> None:
        provider = _FakeProvider()
        engine, scheduler, _ = self._engine(provider)
        engine.add_event(_event(summary="Running: ls"))
        engine.add_event(_event(summary="Reading README.md"))

        scheduler.advance(30)
        await self._settle()
        self.assertEqual(provider.calls, [])
        self.assertEqual(engine.pending_count("claude:s1"), 2)

        scheduler.advance(30)
        await engine.wait_idle()
        self.assertEqual(len(provider.calls), 1)
        self.assertEqual(engine.recent_entries()[-1].eventCount, 2)

    async def test_max_wait_flushes_a_busy_session(self) -> None:
        provider = _FakeProvider()
        engine, scheduler, _ = self._engine(provider)
        for i in range(9):
            engine.add_event(_event(summary=f"Reading f{i}.py"))
            scheduler.advance(10)
        # idle never elapsed; the max-wait timer (3x interval) fired at 90s
        await engine.wait_idle()
        self.assertEqual(len(provider.calls), 1)

    async def test_hard_cap_forces_immediate_flush(self) -> None:
        provider = _FakeProvider()
        engine, _, _ = self._engine(provider, max_batch=3)
        for i in range(3):
            engine.add_event(_event(summary=f"Editing f{i}.py"))
        await engine.wait_idle()
        self.assertEqual(len(provider.calls), 1)
        self.assertEqual(engine.recent_entries()[-1].eventCount, 3)

    async def test_single_generation_in_flight_across_sessions(self) -> None:
        gate = asyncio.Event()
        provider = _FakeProvider(gate=gate)
        engine, scheduler, _ = self._engine(provider)
        for session in ("a", "b"):
            for i in range(5):
                engine.add_event(_event(summary=f"Editing {session}{i}.py", session=session))

        scheduler.advance(30)
        await self._settle()
        self.assertEqual(engine.generating, "claude:a")
        self.assertEqual(engine.queued_sessions, ["claude:b"])
        self.assertEqual(len(provider.calls), 1)

        gate.set()
        await engine.wait_idle()
        self.assertEqual(len(provider.calls), 2)
        self.assertEqual(provider.max_active, 1)

    async def test_events_during_generation_are_picked_up_afterwards(self) -> None:
        gate = asyncio.Event()
        provider = _FakeProvider(gate=gate)
        engine, scheduler, _ = self._engine(provider, min_batch=1)
        engine.add_event(_event(summary="Editing one.py"))
        scheduler.advance(30)
        await self._settle()
        self.assertEqual(engine.generating, "claude:s1")

        engine.add_event(_event(summary="Editing two.py"))
        gate.set()
        await self._settle()
        scheduler.advance(30)
        await engine.wait_idle()

        self.assertEqual(len(provider.calls), 2)
        self.assertIn("Editing two.py", provider.calls[1][1])

    async def test_pause_lets_current_generation_finish_and_drops_the_rest(self) -> None:
        gate = asyncio.Event()
        provider = _FakeProvider(gate=gate)
        engine, scheduler, updates = self._engine(provider)
        for session in ("a", "b"):
            for i in range(5):
                engine.add_event(_event(summary=f"Editing {session}{i}.py", session=session))
        scheduler.advance(30)
        await self._settle()

        engine.pause()
        self.assertTrue(engine.is_paused)
        self.assertEqual(engine.queued_sessions, [])
        self.assertFalse(engine.add_event(_event(session="c")))

        gate.set()
        await engine.wait_idle()
        self.assertEqual(len(provider.calls), 1)
        self.assertEqual([u.kind for u in updates if u.kind == "done"], ["done"])

        engine.resume()
        for i in range(5):
            engine.add_event(_event(summary=f"Reading c{i}.py", session="c"))
        scheduler.advance(30)
        await engine.wait_idle()
        self.assertEqual(len(provider.calls), 2)

    async def test_interval_change_rearms_running_timers(self) -> None:
        provider = _FakeProvider()
        engine, scheduler, updates = self._engine(provider)
        for i in range(5):
            engine.add_event(_event(summary=f"Editing f{i}.py"))
        scheduler.advance(10)

        self.assertEqual(engine.set_summary_interval(15_000), 15_000)
        interval_updates = [u for u in updates if u.kind == "interval"]
        self.assertEqual(interval_updates[-1].intervalMs, 15_000)

        scheduler.advance(14)
        await self._settle()
        self.assertEqual(provider.calls, [])
        scheduler.advance(1)
        await engine.wait_idle()
        self.assertEqual(len(provider.calls), 1)

    async def test_unsupported_interval_falls_back_to_default(self) -> None:
        engine, _, _ = self._engine(_FakeProvider())
        self.assertEqual(engine.set_summary_interval(12_345), 30_000)

    async def test_failure_drops_batch_and_reports_error(self) -> None:
        provider = _FakeProvider()
        provider.error = GenerationError("backend unavailable")
        engine, _, updates = self._engine(provider)

        for i in range(5):
            engine.add_event(_event(summary=f"Editing f{i}.py"))
        self.assertTrue(engine.flush_session("claude:s1"))
        await engine.wait_idle()

        errors = [update for update in updates if update.kind == "error"]
        self.assertEqual(len(errors), 1)
        self.assertIn("backend unavailable", errors[0].error)
        self.assertEqual(engine.pending_count("claude:s1"), 0)
        self.assertEqual(engine.recent_entries(), [])

    async def test_post_processing_crash_does_not_stall_the_queue(self) -> None:
        provider = _FakeProvider()
        engine, scheduler, updates = self._engine(provider)
        for session in ("a", "b"):
            for i in range(5):
                engine.add_event(_event(summary=f"Editing {session}{i}.py", session=session))

        with patch.object(commentary_module, "sanitize_commentary", side_effect=[ValueError("bad text"), "Fine."]):
            with self.assertLogs("kibitz.commentary", level="ERROR"):
                scheduler.advance(30)
                await engine.wait_idle()

        self.assertEqual(len(provider.calls), 2)
        self.assertEqual([u.kind for u in updates if u.kind in ("done", "error")], ["error", "done"])
        self.assertEqual(engine.queued_sessions, [])
        self.assertIsNone(engine.generating)
        self.assertEqual(engine.recent_entries()[-1].sessionId, "b")

    async def test_generation_timeout_is_reported(self) -> None:
        provider = _FakeProvider(gate=asyncio.Event())
        engine, _, updates = self._engine(provider, generation_timeout=0.01)
        engine.add_event(_event())
        engine.flush_session("claude:s1")
        await engine.wait_idle()

        errors = [update for update in updates if update.kind == "error"]
        self.assertEqual(len(errors), 1)
        self.assertIn("timed out", errors[0].error)

    async def test_styles_rotate_between_generations(self) -> None:
        provider = _FakeProvider()
        engine, _, _ = self._engine(provider, format_styles=["bullets", "headline"])
        for _ in range(3):
            engine.add_event(_event())
            engine.flush_session("claude:s1")
            await engine.wait_idle()

        self.assertEqual([entry.style for entry in engine.recent_entries()], ["bullets", "headline", "bullets"])

    async def test_output_gets_verdict_and_history_feeds_next_prompt(self) -> None:
        provider = _FakeProvider(reply="Fixed the login page.")
        engine, _, updates = self._engine(provider)
        engine.add_event(_event(summary="Editing login.py", tool="Edit"))
        engine.flush_session("claude:s1")
        await engine.wait_idle()

        entry = engine.recent_entries()[-1]
        self.assertTrue(entry.commentary.splitlines()[-1].startswith("Verdict:"))
        self.assertIn("Fixed the login page.", [u.chunk for u in updates if u.kind == "chunk"])

        engine.add_event(_event(summary="Running: npm test", tool="Bash", command="npm test"))
        engine.flush_session("claude:s1")
        await engine.wait_idle()
        self.assertIn("Earlier commentary on this session", provider.calls[1][1])

    async def test_only_commentary_worthy_events_are_batched(self) -> None:
        engine, _, _ = self._engine(_FakeProvider())
        self.assertFalse(engine.add_event(_event("meta", "User prompt: fix it")))
        self.assertFalse(engine.add_event(_event("tool_result", "Tool completed", isError=False)))
        self.assertTrue(engine.add_event(_event("tool_result", "Tool failed: boom", isError=True)))
        self.assertEqual(engine.pending_count("claude:s1"), 1)

    def test_is_commentary_worthy(self) -> None:
        self.assertTrue(is_commentary_worthy(_event("tool_call")))
        self.assertTrue(is_commentary_worthy(_event("message")))
        self.assertFalse(is_commentary_worthy(_event("meta")))


if __name__ == "__main__":
    unittest.main()
