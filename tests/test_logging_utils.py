import io
import json
import os
import sys
import unittest


SCRIPTS_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "scripts"))
if SCRIPTS_DIR not in sys.path:
    sys.path.insert(0, SCRIPTS_DIR)

from bark_pipeline.config import LoggingConfig  # noqa: E402
from bark_pipeline.gemini_client import redact_sensitive_text  # noqa: E402
from bark_pipeline.logging_utils import Logger, format_log_line  # noqa: E402


def _config(level: str = "INFO", *, debug_events: bool = False) -> LoggingConfig:
    return LoggingConfig(level=level, heartbeat_seconds=1, debug_events=debug_events, include_event_ids=False)


def _fields(line: str) -> dict:
    return json.loads(line[line.index("{"):])


class LoggingUtilsTests(unittest.TestCase):
    def test_format_line_shape(self) -> None:
        line = format_log_line("INFO", "bark_run_config", run_id="r1", fields={"b": 2, "a": 1}, event_id="abc")
        self.assertRegex(line, r"^\[\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}\] \[INFO\] \[run:r1\] \[event:abc\] bark_run_config ")
        self.assertTrue(line.endswith('{"a": 1, "b": 2}'))
        self.assertTrue(format_log_line("WARN", "x", run_id="r1").endswith("[run:r1] x"))

    def test_level_filtering_and_debug_gate(self) -> None:
        out = io.StringIO()
        logger = Logger(config=_config("WARN"), run_id="r", stream=out)
        logger.info("hidden")
        logger.warn("shown")
        logger.error("shown_too")
        lines = out.getvalue().splitlines()
        self.assertEqual(len(lines), 2)

        out = io.StringIO()
        Logger(config=_config("DEBUG"), run_id="r", stream=out).debug("needs_events")
        self.assertEqual(out.getvalue(), "")
        Logger(config=_config("DEBUG", debug_events=True), run_id="r", stream=out).debug("now_visible")
        self.assertIn("now_visible", out.getvalue())

    def test_bind_merges_context_without_mutating_parent(self) -> None:
        out = io.StringIO()
        parent = Logger(config=_config(), run_id="r", stream=out)
        child = parent.bind(file_name="ack_serene_01.wav")
        child.info("bark_item_ok", attempts=2)
        parent.info("bark_run_done")
        first, second = out.getvalue().splitlines()
        self.assertEqual(_fields(first), {"attempts": 2, "file_name": "ack_serene_01.wav"})
        self.assertTrue(second.endswith("bark_run_done"))

    def test_redactor_scrubs_rendered_line(self) -> None:
        out = io.StringIO()
        logger = Logger(config=_config(), run_id="r", stream=out).with_redactor(
            lambda text: redact_sensitive_text(text, api_key="sekrit-123")
        )
        logger.error("fatal", error="bad key sekrit-123 at https://x.test/m?key=sekrit-123")
        self.assertNotIn("sekrit-123", out.getvalue())
        self.assertIn("***", out.getvalue())

    def test_timed_reports_outcome(self) -> None:
        out = io.StringIO()
        logger = Logger(config=_config(), run_id="r", stream=out)
        with logger.timed("bark_run", phrases=3):
            pass
        with self.assertRaises(RuntimeError):
            with logger.timed("bark_run", phrases=1):
                raise RuntimeError("boom")
        lines = out.getvalue().splitlines()
        self.assertEqual(len(lines), 4)
        self.assertIn("bark_run_started", lines[0])
        self.assertEqual(_fields(lines[1])["outcome"], "ok")
        self.assertEqual(_fields(lines[3])["outcome"], "raised")
        self.assertIn("elapsed_ms", _fields(lines[3]))

    def test_create_defaults_run_id(self) -> None:
        self.assertEqual(Logger.create(_config(), run_id=" named ").run_id, "named")
        self.assertEqual(len(Logger.create(_config()).run_id), 10)


if __name__ == "__main__":
    unittest.main()
