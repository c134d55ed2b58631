import json
import tempfile
import unittest
from pathlib import Path

from watchfiles import Change

from kibitz.file_watcher import FileWatcher, classify_changes
from kibitz.services.session_registry import LogSource, SessionRegistry


def _tool_line(tool: str = "Read") -> str:
    return json.dumps({
        "type": "assistant",
        "sessionId": "watched",
        "message": {"content": [{"type": "tool_use", "name": tool, "input": {"file_path": "a.py"}}]},
    }) + "\n"


class ClassifyChangesTests(unittest.TestCase):
    def test_only_transcripts_are_kept(self) -> None:
        classified = classify_changes({
            (Change.modified, "/logs/b.jsonl"),
            (Change.added, "/logs/a.jsonl"),
            (Change.deleted, "/logs/c.jsonl"),
            (Change.modified, "/logs/notes.txt"),
        })
        self.assertEqual(
            classified,
            [("added", Path("/logs/a.jsonl")), ("modified", Path("/logs/b.jsonl")), ("deleted", Path("/logs/c.jsonl"))],
        )


class HandleChangesTests(unittest.TestCase):
    def setUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.root = Path(tmpdir.name)
        self.registry = SessionRegistry([LogSource("claude", self.root, lambda root: root.rglob("*.jsonl"))])
        self.watcher = FileWatcher()

    def test_new_file_is_registered_then_tailed(self) -> None:
        path = self.root / "-Users-me-room" / "s.jsonl"
        path.parent.mkdir()
        path.write_text(_tool_line(), encoding="utf-8")

        self.assertEqual(self.watcher.handle_changes(self.registry, [("added", path)]), 0)
        self.assertIsNotNone(self.registry.get_record(path))

        with open(path, "a", encoding="utf-8") as handle:
            handle.write(_tool_line("Edit"))
        self.assertEqual(self.watcher.handle_changes(self.registry, [("modified", path)]), 1)

    def test_paths_outside_roots_and_deletions_are_skipped(self) -> None:
        outside = Path(tempfile.gettempdir()) / "kibitz-elsewhere.jsonl"
        classified = [("modified", outside), ("deleted", self.root / "gone.jsonl")]
        self.assertEqual(self.watcher.handle_changes(self.registry, classified), 0)
        self.assertEqual(self.registry.records, [])


class FileWatcherLifecycleTests(unittest.IsolatedAsyncioTestCase):
    async def test_missing_roots_stop_the_watcher(self) -> None:
        registry = SessionRegistry([LogSource("claude", Path("/nonexistent/kibitz-root"), lambda root: [])])
        watcher = FileWatcher()
        await watcher.start(registry)
        await watcher.stop()
        self.assertFalse(watcher.is_running)


if __name__ == "__main__":
    unittest.main()
