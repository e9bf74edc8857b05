import os
import socket
import sys
import unittest
import urllib.error


SCRIPTS_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "scripts"))
if SCRIPTS_DIR not in sys.path:
    sys.path.insert(0, SCRIPTS_DIR)

from bark_pipeline.errors import (  # noqa: E402
    ERROR_KIND_CONFIG,
    ERROR_KIND_DAILY_BUDGET,
    ERROR_KIND_HTTP,
    ERROR_KIND_INTERRUPTED,
    ERROR_KIND_MISSING_AUDIO,
    ERROR_KIND_NETWORK,
    ERROR_KIND_RATE_LIMIT,
    ERROR_KIND_SERVER,
    ERROR_KIND_TIMEOUT,
    ERROR_KIND_UNKNOWN,
    ConfigurationError,
    DailyBudgetExhaustedError,
    TTSOperationError,
    classify_tts_exception,
    error_kind_for_http_status,
    is_retryable_error_kind,
    summarize_failure_kinds,
)


class ErrorKindsTests(unittest.TestCase):
    def test_operation_error_preserves_kind(self) -> None:
        err = TTSOperationError("boom", error_kind=ERROR_KIND_RATE_LIMIT, retry_after="3", status_code=429)
        self.assertEqual(classify_tts_exception(err), ERROR_KIND_RATE_LIMIT)
        self.assertTrue(err.retryable)
        self.assertEqual(err.retry_after, "3")
        self.assertEqual(err.status_code, 429)

    def test_retryable_kinds(self) -> None:
        for kind in (
            ERROR_KIND_TIMEOUT,
            ERROR_KIND_NETWORK,
            ERROR_KIND_RATE_LIMIT,
            ERROR_KIND_SERVER,
            ERROR_KIND_MISSING_AUDIO,
        ):
            self.assertTrue(is_retryable_error_kind(kind), kind)
        for kind in (ERROR_KIND_HTTP, "invalid_response", ERROR_KIND_UNKNOWN, ""):
            self.assertFalse(is_retryable_error_kind(kind), kind)

    def test_http_status_mapping(self) -> None:
        self.assertEqual(error_kind_for_http_status(429), ERROR_KIND_RATE_LIMIT)
        self.assertEqual(error_kind_for_http_status(500), ERROR_KIND_SERVER)
        self.assertEqual(error_kind_for_http_status(503), ERROR_KIND_SERVER)
        self.assertEqual(error_kind_for_http_status(400), ERROR_KIND_HTTP)
        self.assertEqual(error_kind_for_http_status(403), ERROR_KIND_HTTP)

    def test_fatal_errors_carry_kinds(self) -> None:
        budget = DailyBudgetExhaustedError(requests_today=90, rpd_limit=90)
        self.assertEqual(classify_tts_exception(budget), ERROR_KIND_DAILY_BUDGET)
        self.assertIn("raise --rpd", str(budget))
        self.assertEqual(classify_tts_exception(ConfigurationError("no key")), ERROR_KIND_CONFIG)
        self.assertEqual(classify_tts_exception(InterruptedError("stop")), ERROR_KIND_INTERRUPTED)

    def test_classify_transport_exceptions(self) -> None:
        self.assertEqual(classify_tts_exception(socket.timeout("timed out")), ERROR_KIND_TIMEOUT)
        self.assertEqual(classify_tts_exception(urllib.error.URLError(socket.timeout())), ERROR_KIND_TIMEOUT)
        self.assertEqual(classify_tts_exception(urllib.error.URLError("refused")), ERROR_KIND_NETWORK)
        self.assertEqual(classify_tts_exception(ConnectionResetError()), ERROR_KIND_NETWORK)

    def test_classify_chained_exception(self) -> None:
        try:
            try:
                raise TimeoutError("read timed out")
            except TimeoutError as inner:
                raise RuntimeError("wrapper") from inner
        except RuntimeError as outer:
            self.assertEqual(classify_tts_exception(outer), ERROR_KIND_TIMEOUT)

    def test_classify_runtime_messages(self) -> None:
        self.assertEqual(classify_tts_exception(RuntimeError("HTTP 429 rate limit")), ERROR_KIND_RATE_LIMIT)
        self.assertEqual(classify_tts_exception(RuntimeError("RESOURCE_EXHAUSTED quota")), ERROR_KIND_RATE_LIMIT)
        self.assertEqual(
            classify_tts_exception(RuntimeError("TTS request failed: <urlopen error timed out>")),
            ERROR_KIND_TIMEOUT,
        )
        self.assertEqual(
            classify_tts_exception(RuntimeError("Gemini response did not include inline audio.")),
            ERROR_KIND_MISSING_AUDIO,
        )
        self.assertEqual(classify_tts_exception(RuntimeError("upstream said HTTP 502")), ERROR_KIND_SERVER)
        self.assertEqual(
            classify_tts_exception(RuntimeError("urlopen error [Errno -2] Name or service not known")),
            ERROR_KIND_NETWORK,
        )
        self.assertEqual(classify_tts_exception(RuntimeError("something else")), ERROR_KIND_UNKNOWN)

    def test_summarize_failure_kinds(self) -> None:
        self.assertEqual(
            summarize_failure_kinds(["timeout", "TIMEOUT", "", None, "http_error"]),  # type: ignore[list-item]
            ["timeout", "unknown", "http_error"],
        )


if __name__ == "__main__":
    unittest.main()
