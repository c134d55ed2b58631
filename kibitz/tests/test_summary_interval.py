import unittest

from kibitz.summary_interval import (
    DEFAULT_SUMMARY_INTERVAL_MS,
    idle_seconds,
    max_wait_seconds,
    normalize_summary_interval_ms,
    parse_summary_interval_input,
    summary_interval_label,
    summary_interval_token,
)


class SummaryIntervalTests(unittest.TestCase):
    def test_parse_accepts_tokens_labels_and_units(self) -> None:
        self.assertEqual(parse_summary_interval_input("15s"), 15_000)
        self.assertEqual(parse_summary_interval_input("1 min"), 60_000)
        self.assertEqual(parse_summary_interval_input("5 minutes"), 300_000)
        self.assertEqual(parse_summary_interval_input("1H"), 3_600_000)
        self.assertEqual(parse_summary_interval_input("30"), 30_000)
        self.assertEqual(parse_summary_interval_input(900), 900_000)

    def test_parse_rejects_values_outside_the_options(self) -> None:
        self.assertIsNone(parse_summary_interval_input("45s"))
        self.assertIsNone(parse_summary_interval_input("2h"))
        self.assertIsNone(parse_summary_interval_input("soon"))
        self.assertIsNone(parse_summary_interval_input(""))
        self.assertIsNone(parse_summary_interval_input(None))

    def test_normalize_falls_back_to_default(self) -> None:
        self.assertEqual(normalize_summary_interval_ms(60_000), 60_000)
        self.assertEqual(normalize_summary_interval_ms("300000"), 300_000)
        self.assertEqual(normalize_summary_interval_ms(12_345), DEFAULT_SUMMARY_INTERVAL_MS)
        self.assertEqual(normalize_summary_interval_ms(True), DEFAULT_SUMMARY_INTERVAL_MS)
        self.assertEqual(normalize_summary_interval_ms(None), DEFAULT_SUMMARY_INTERVAL_MS)

    def test_labels_tokens_and_timer_durations(self) -> None:
        self.assertEqual(summary_interval_label(15_000), "15 sec")
        self.assertEqual(summary_interval_label(3_600_000), "1 hour")
        self.assertEqual(summary_interval_token(900_000), "15m")
        self.assertEqual(idle_seconds(60_000), 60.0)
        self.assertEqual(max_wait_seconds(60_000), 180.0)
        self.assertEqual(idle_seconds(1), 30.0)


if __name__ == "__main__":
    unittest.main()
