import json
import unittest

from kibitz.parsers.platforms.claude_code.parser import parse_line
from kibitz.parsers.platforms.registry import decode_line, supported_agents

FILE_PATH = "/Users/me/.claude/projects/-Users-me-projects-room/5f1c2d3e-aaaa-bbbb-cccc-0123456789ab.jsonl"


def _line(payload: dict) -> str:
    return json.dumps(payload)


class ClaudeParserTests(unittest.TestCase):
    def test_tool_use_blocks_become_tool_calls(self) -> None:
        events = parse_line(
            _line({
                "type": "assistant",
                "sessionId": "sess-1",
                "cwd": "/Users/me/projects/room",
                "timestamp": "2026-10-17T10:00:00Z",
                "message": {
                    "role": "assistant",
                    "content": [
                        {"type": "text", "text": "Let me look at the config."},
                        {"type": "tool_use", "id": "toolu_1", "name": "Read", "input": {"file_path": "/Users/me/projects/room/src/config.py"}},
                        {"type": "tool_use", "id": "toolu_2", "name": "Bash", "input": {"command": "npm test"}},
                    ],
                },
            }),
            FILE_PATH,
        )

        self.assertEqual([event.type for event in events], ["message", "tool_call", "tool_call"])
        self.assertEqual(events[0].summary, "Let me look at the config.")
        self.assertEqual(events[1].summary, "Reading .../src/config.py")
        self.assertEqual(events[2].summary, "Running: npm test")
        self.assertEqual(events[2].details["tool"], "Bash")
        self.assertEqual(events[2].details["identitySource"], "log")
        self.assertTrue(all(event.sessionId == "sess-1" for event in events))
        self.assertTrue(all(event.projectName == "room" for event in events))
        self.assertEqual(events[0].timestamp, 1792231200.0)

    def test_tool_result_error_detection(self) -> None:
        events = parse_line(
            _line({
                "type": "user",
                "sessionId": "sess-1",
                "message": {
                    "role": "user",
                    "content": [
                        {"type": "tool_result", "tool_use_id": "toolu_1", "content": "all good", "is_error": False},
                        {"type": "tool_result", "tool_use_id": "toolu_2", "content": [{"type": "text", "text": "Traceback (most recent call last)"}]},
                    ],
                },
            }),
            FILE_PATH,
        )

        self.assertEqual([event.type for event in events], ["tool_result", "tool_result"])
        self.assertFalse(events[0].details["isError"])
        self.assertEqual(events[0].summary, "Tool completed")
        self.assertTrue(events[1].details["isError"])
        self.assertTrue(events[1].summary.startswith("Tool failed: Traceback"))

    def test_user_prompt_and_summary_are_meta(self) -> None:
        prompt_events = parse_line(
            _line({"type": "user", "sessionId": "sess-1", "message": {"role": "user", "content": "Fix the login bug"}}),
            FILE_PATH,
        )
        summary_events = parse_line(
            _line({"type": "summary", "summary": "Login bug fix", "leafUuid": "x"}),
            FILE_PATH,
        )

        self.assertEqual(prompt_events[0].type, "meta")
        self.assertEqual(prompt_events[0].details["prompt"], "Fix the login bug")
        self.assertEqual(summary_events[0].type, "meta")
        self.assertEqual(summary_events[0].details["title"], "Login bug fix")

    def test_missing_session_id_falls_back_to_file_stem(self) -> None:
        events = parse_line(
            _line({"type": "assistant", "message": {"content": [{"type": "text", "text": "Hi"}]}}),
            FILE_PATH,
        )
        self.assertEqual(events[0].sessionId, "5f1c2d3e-aaaa-bbbb-cccc-0123456789ab")
        self.assertEqual(events[0].details["identitySource"], "path")
        self.assertEqual(events[0].projectName, "room")

    def test_irrelevant_and_malformed_lines_yield_nothing(self) -> None:
        self.assertEqual(parse_line("not json", FILE_PATH), [])
        self.assertEqual(parse_line("[1, 2]", FILE_PATH), [])
        self.assertEqual(parse_line(_line({"type": "file-history-snapshot"}), FILE_PATH), [])
        self.assertEqual(parse_line(_line({"type": "assistant", "message": "oops"}), FILE_PATH), [])

    def test_registry_dispatches_by_agent(self) -> None:
        self.assertEqual(sorted(supported_agents()), ["claude", "codex"])
        line = _line({"type": "user", "message": {"content": "hello there"}})
        self.assertEqual(len(decode_line("claude", line, FILE_PATH)), 1)
        self.assertEqual(decode_line("gemini", line, FILE_PATH), [])


if __name__ == "__main__":
    unittest.main()
