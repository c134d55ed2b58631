import json
import os
import tempfile
import unittest
from pathlib import Path

from kibitz.services.commentary_prompts import SELF_PROMPT_MARKERS, build_system_prompt
from kibitz.session_titles import (
    CodexTitleStore,
    clean_title,
    contains_self_prompt,
    is_code_like_name,
    is_command_like_title,
)


class TitleFilterTests(unittest.TestCase):
    def test_identifiers_are_code_like(self) -> None:
        self.assertTrue(is_code_like_name("5f1c2d3e"))
        self.assertTrue(is_code_like_name("019c9b80-85dd-7c42-b95b-b1b1eb9fdafb"))
        self.assertTrue(is_code_like_name("session_019c9b8085dd"))
        self.assertTrue(is_code_like_name("rollout-2026-10-17T14-50-17-019c9b80"))
        self.assertTrue(is_code_like_name(""))
        self.assertFalse(is_code_like_name("Login bug hunt"))

    def test_command_echoes_are_not_titles(self) -> None:
        self.assertTrue(is_command_like_title("git status"))
        self.assertTrue(is_command_like_title("<environment_context>"))
        self.assertTrue(is_command_like_title("[Request interrupted by user]"))
        self.assertFalse(is_command_like_title("Fix the flaky login test"))

    def test_own_prompts_are_detected(self) -> None:
        self.assertTrue(contains_self_prompt(build_system_prompt("bullets")))
        self.assertTrue(contains_self_prompt(f"{SELF_PROMPT_MARKERS[1]}. What's the agent doing?"))
        self.assertTrue(contains_self_prompt("Format: a single punchy sentence"))
        self.assertFalse(contains_self_prompt("Refactor the billing module"))

    def test_clean_title(self) -> None:
        self.assertEqual(clean_title("\n  Fix   the login\tbug \nsecond line"), "Fix the login bug")
        self.assertEqual(clean_title("npm run build"), "")
        self.assertEqual(clean_title(None), "")
        long_title = clean_title("Investigate " + "very " * 30 + "slow query")
        self.assertLessEqual(len(long_title), 80)
        self.assertTrue(long_title.endswith("..."))


class CodexTitleStoreTests(unittest.TestCase):
    def setUp(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        self.path = Path(tmpdir.name) / ".codex-global-state.json"

    def _write_titles(self, titles: dict, mtime: float) -> None:
        self.path.write_text(json.dumps({"thread-titles": {"titles": titles}}), encoding="utf-8")
        os.utime(self.path, (mtime, mtime))

    def test_lookup_is_case_insensitive_and_codex_only(self) -> None:
        self._write_titles({"ABC-123": "Login bug hunt"}, 1_000.0)
        store = CodexTitleStore(self.path)
        self.assertEqual(store.get_title("codex", "abc-123"), "Login bug hunt")
        self.assertIsNone(store.get_title("claude", "abc-123"))
        self.assertIsNone(store.get_title("codex", "other"))

    def test_reloads_when_file_changes(self) -> None:
        self._write_titles({"abc": "First title"}, 1_000.0)
        store = CodexTitleStore(self.path)
        self.assertEqual(store.get_title("codex", "abc"), "First title")

        self._write_titles({"abc": "Second title"}, 2_000.0)
        self.assertEqual(store.get_title("codex", "abc"), "Second title")

    def test_noise_titles_and_bad_files_are_ignored(self) -> None:
        self._write_titles({"abc": "019c9b80-85dd-7c42-b95b-b1b1eb9fdafb"}, 1_000.0)
        store = CodexTitleStore(self.path)
        self.assertIsNone(store.get_title("codex", "abc"))

        self.path.write_text("{broken", encoding="utf-8")
        os.utime(self.path, (3_000.0, 3_000.0))
        self.assertIsNone(store.get_title("codex", "abc"))

        self.path.unlink()
        self.assertIsNone(store.get_title("codex", "abc"))


if __name__ == "__main__":
    unittest.main()
