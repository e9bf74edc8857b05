import hashlib
import io
import os
import sys
import tempfile
import unittest
from typing import List, Optional, Set


SCRIPTS_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), "..", "scripts"))
if SCRIPTS_DIR not in sys.path:
    sys.path.insert(0, SCRIPTS_DIR)

from bark_pipeline.admission import AdmissionController  # noqa: E402
from bark_pipeline.catalog import WorkItem, build_catalog  # noqa: E402
from bark_pipeline.config import LoggingConfig, RunOptions  # noqa: E402
from bark_pipeline.errors import (  # noqa: E402
    ERROR_KIND_HTTP,
    DailyBudgetExhaustedError,
    TTSOperationError,
)
from bark_pipeline.logging_utils import Logger  # noqa: E402
from bark_pipeline.run_manifest import build_manifest, summarize_totals  # noqa: E402
from bark_pipeline.runner import BarkRunner, build_destination_path  # noqa: E402
from bark_pipeline.tts_provider import TTSAudioResult  # noqa: E402


class _FakeTimeline:
    def __init__(self) -> None:
        self.now = 5_000_000.0

    def clock(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds * 1000.0


class _FakeClient:
    provider_name = "fake"
    model_name = "fake-tts"

    def __init__(self, *, fail: Optional[Set[str]] = None, interrupt: Optional[Set[str]] = None) -> None:
        self.fail = fail or set()
        self.interrupt = interrupt or set()
        self.calls: List[str] = []

    @property
    def requests_made(self) -> int:
        return len(self.calls)

    @property
    def retries_total(self) -> int:
        return 0

    def synthesize(self, item: WorkItem) -> TTSAudioResult:
        self.calls.append(item.file_name)
        if item.file_name in self.interrupt:
            raise InterruptedError("stop requested")
        if item.file_name in self.fail:
            err = TTSOperationError("Gemini TTS failed (HTTP 400)", error_kind=ERROR_KIND_HTTP, status_code=400)
            err.attempts = 1
            raise err
        return TTSAudioResult(
            audio_bytes=f"RIFF-{item.file_name}".encode("utf-8"),
            content_type="audio/wav",
            file_extension="wav",
            provider=self.provider_name,
            model=self.model_name,
            prompt_label="primary",
            attempts=1,
        )


def _logger() -> Logger:
    return Logger.create(
        LoggingConfig(level="ERROR", heartbeat_seconds=1, debug_events=False, include_event_ids=False),
        run_id="test",
    )


class BarkRunnerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.items = build_catalog()[:3]

    def _options(self, tmp: str, **overrides) -> RunOptions:  # noqa: ANN003
        return RunOptions.from_env(output_root=tmp, run_name="run1", rpm_limit=10, **overrides)

    def _runner(self, options: RunOptions, client: Optional[_FakeClient], *, rpd: Optional[int] = None) -> BarkRunner:
        timeline = _FakeTimeline()
        admission = AdmissionController(
            rpm_limit=options.rpm_limit,
            tpm_limit=options.tpm_limit,
            rpd_limit=rpd if rpd is not None else options.rpd_limit,
            min_delay_ms=options.min_delay_ms,
            clock=timeline.clock,
            sleep=timeline.sleep,
        )
        return BarkRunner(options=options, admission=admission, client=client, logger=_logger(), stream=io.StringIO())

    def test_live_run_writes_audio_and_records(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            options = self._options(tmp)
            client = _FakeClient()
            runner = self._runner(options, client)
            results = runner.run(self.items)
            self.assertEqual([r.status for r in results], ["ok", "ok", "ok"])
            first = results[0]
            self.assertEqual(first.output_file, os.path.join(tmp, "run1", "ack_serene_01.wav"))
            with open(first.output_file, "rb") as f:
                data = f.read()
            self.assertEqual(data, b"RIFF-ack_serene_01.wav")
            self.assertEqual(first.checksum_sha256, hashlib.sha256(data).hexdigest())
            self.assertEqual(first.bytes, len(data))
            self.assertEqual(first.prompt_label, "primary")
            self.assertEqual((first.provider, first.model), ("fake", "fake-tts"))
            record = first.to_dict()
            self.assertEqual((record["provider"], record["model"]), ("fake", "fake-tts"))
            self.assertEqual(runner.admission.requests_today, 3)
            self.assertFalse(os.path.exists(first.output_file + ".tmp"))

    def test_resume_skips_existing_files_without_network(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            options = self._options(tmp)
            first_client = _FakeClient()
            self._runner(options, first_client).run(self.items)
            second_client = _FakeClient()
            runner = self._runner(options, second_client)
            results = runner.run(self.items)
            self.assertEqual([r.status for r in results], ["skipped"] * 3)
            self.assertTrue(all(r.reason == "file-exists" for r in results))
            self.assertEqual(second_client.calls, [])
            self.assertEqual(runner.admission.requests_today, 0)

    def test_no_resume_regenerates_existing_files(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            self._runner(self._options(tmp), _FakeClient()).run(self.items)
            client = _FakeClient()
            results = self._runner(self._options(tmp, resume=False), client).run(self.items)
            self.assertEqual([r.status for r in results], ["ok"] * 3)
            self.assertEqual(len(client.calls), 3)

    def test_dry_run_records_destinations_only(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            options = self._options(tmp, dry_run=True, organize=True)
            runner = self._runner(options, None)
            results = runner.run(self.items)
            self.assertEqual([r.status for r in results], ["dry-run"] * 3)
            self.assertEqual(
                results[0].output_file,
                os.path.join(tmp, "run1", "generated", "serene", "ack", "ack_serene_01.wav"),
            )
            self.assertEqual(results[0].estimated_tokens, self.items[0].estimated_tokens)
            self.assertFalse(os.path.exists(os.path.join(tmp, "run1", "generated")))
            self.assertEqual(runner.admission.requests_today, 0)

    def test_item_failure_is_isolated(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            options = self._options(tmp)
            client = _FakeClient(fail={self.items[1].file_name})
            runner = self._runner(options, client)
            results = runner.run(self.items)
            self.assertEqual([r.status for r in results], ["ok", "error", "ok"])
            self.assertEqual(results[1].error_kind, ERROR_KIND_HTTP)
            self.assertIn("HTTP 400", results[1].error or "")
            self.assertFalse(os.path.exists(results[1].output_file))
            # Every live dispatch counts against the quotas, failed or not.
            self.assertEqual(runner.admission.requests_today, 3)

    def test_daily_budget_aborts_run_and_keeps_partial_results(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            options = self._options(tmp)
            client = _FakeClient()
            runner = self._runner(options, client, rpd=2)
            with self.assertRaises(DailyBudgetExhaustedError):
                runner.run(self.items)
            self.assertEqual([r.status for r in runner.results], ["ok", "ok"])
            self.assertEqual(len(client.calls), 2)
            third = build_destination_path(options.run_dir, self.items[2], False)
            self.assertFalse(os.path.exists(third))

    def test_interrupt_propagates(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            client = _FakeClient(interrupt={self.items[1].file_name})
            runner = self._runner(self._options(tmp), client)
            with self.assertRaises(InterruptedError):
                runner.run(self.items)
            self.assertEqual(len(runner.results), 1)

    def test_record_to_dict_flattens_item_and_drops_empty_fields(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            results = self._runner(self._options(tmp, dry_run=True), None).run(self.items[:1])
        payload = results[0].to_dict()
        self.assertEqual(payload["file_name"], "ack_serene_01.wav")
        self.assertEqual(payload["status"], "dry-run")
        self.assertNotIn("error", payload)
        self.assertNotIn("checksum_sha256", payload)

    def test_manifest_totals(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            client = _FakeClient(fail={self.items[2].file_name})
            runner = self._runner(self._options(tmp), client)
            runner.run(self.items)
            manifest = build_manifest(
                run_dir=os.path.join(tmp, "run1"),
                model="fake-tts",
                voice="Charon",
                api_key_source="--api-key",
                options={},
                selection_summary={},
                admission=runner.admission.snapshot(),
                results=runner.results_as_dicts(),
                requested=3,
            )
        self.assertEqual(manifest["totals"], {"requested": 3, "ok": 2, "skipped": 0, "dry_run": 0, "errors": 1})
        self.assertEqual(len(manifest["results"]), 3)
        self.assertEqual(manifest["admission"]["requests_today"], 3)
        self.assertEqual(manifest["failure_kinds"], ["http_error"])

    def test_summarize_totals_counts_statuses(self) -> None:
        totals = summarize_totals(
            [{"status": "ok"}, {"status": "skipped"}, {"status": "dry-run"}, {"status": "error"}, {"status": "ok"}],
            requested=5,
        )
        self.assertEqual(totals, {"requested": 5, "ok": 2, "skipped": 1, "dry_run": 1, "errors": 1})


if __name__ == "__main__":
    unittest.main()
