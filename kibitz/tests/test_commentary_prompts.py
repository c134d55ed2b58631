import unittest

from kibitz.models import ActivityEvent, CommentaryAssessment
from kibitz.services.commentary_prompts import (
    COMMENTARY_STYLES,
    FALLBACK_COMMENTARY,
    SELF_PROMPT_MARKERS,
    build_system_prompt,
    build_user_prompt,
    redact_identifiers,
    sanitize_commentary,
)


def _event(summary: str, session: str = "s1", agent: str = "claude", project: str = "room", title: str | None = None) -> ActivityEvent:
    return ActivityEvent(
        sessionId=session,
        agent=agent,
        projectName=project,
        sessionTitle=title,
        timestamp=0.0,
        type="tool_call",
        summary=summary,
    )


class CommentaryPromptTests(unittest.TestCase):
    def test_system_prompt_layers_style_preset_and_focus(self) -> None:
        prompt = build_system_prompt("headline", "critic", "  roast everything  ")

        self.assertTrue(prompt.startswith(SELF_PROMPT_MARKERS[0]))
        self.assertIn(COMMENTARY_STYLES["headline"][1], prompt)
        self.assertIn("skeptical senior reviewer", prompt)
        self.assertIn("Additional user instruction: roast everything", prompt)

    def test_auto_preset_and_empty_focus_add_nothing(self) -> None:
        prompt = build_system_prompt("bullets", "auto", "")
        self.assertNotIn("Tone:", prompt)
        self.assertNotIn("Additional user instruction", prompt)

    def test_user_prompt_groups_by_session_and_carries_markers(self) -> None:
        events = [
            _event("Reading app.py", title="Fix login"),
            _event("Running: npm test", session="s2", agent="codex", project="shop"),
            _event("Editing app.py", title="Fix login"),
        ]
        prompt = build_user_prompt(events, CommentaryAssessment(direction="drifting"), ["Earlier take.\nSecond line."])

        self.assertIn("[claude/room › Fix login] Actions (2):", prompt)
        self.assertIn("[codex/shop] Actions (1):", prompt)
        self.assertIn("- direction: drifting", prompt)
        self.assertIn("- Earlier take.", prompt)
        self.assertNotIn("Second line.", prompt)
        self.assertTrue(prompt.rstrip().endswith("What's the agent doing right or wrong?"))
        self.assertIn(SELF_PROMPT_MARKERS[1], prompt)

    def test_identifiers_are_redacted(self) -> None:
        text = redact_identifiers(
            "Checked session 5f1c2d3e-aaaa-bbbb-cccc-0123456789ab in "
            "rollout-2026-10-17T14-50-17-019c9b80-85dd-7c42-b95b-b1b1eb9fdafb.jsonl via toolu_01ABCDEFGHJK"
        )
        self.assertEqual(text, "Checked [id] in [log] via [id]")

    def test_sanitize_drops_meta_lines(self) -> None:
        text = sanitize_commentary("I read the session logs and saw a fix.\nThe **agent** fixed login.\n\n\n\nOn track.")
        self.assertEqual(text, "The **agent** fixed login.\n\nOn track.")

    def test_sanitize_never_returns_empty(self) -> None:
        self.assertEqual(sanitize_commentary(""), FALLBACK_COMMENTARY)
        self.assertEqual(sanitize_commentary("Based on the logs, nothing."), FALLBACK_COMMENTARY)


if __name__ == "__main__":
    unittest.main()
