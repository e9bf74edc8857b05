#!/usr/bin/env python3
from __future__ import annotations

"""Sequential execution loop: resume, dry-run, admission, synthesis, write."""

import hashlib
import os
import sys
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, TextIO

from .admission import AdmissionController
from .catalog import WorkItem
from .config import RunOptions
from .errors import DailyBudgetExhaustedError, classify_tts_exception
from .io_utils import atomic_write_bytes
from .logging_utils import Logger
from .run_manifest import STATUS_DRY_RUN, STATUS_ERROR, STATUS_OK, STATUS_SKIPPED
from .tts_provider import SynthesisClient

REASON_FILE_EXISTS = "file-exists"


def build_destination_path(run_dir: str, item: WorkItem, organize: bool) -> str:
    if not organize:
        return os.path.join(run_dir, item.file_name)
    return os.path.join(run_dir, "generated", item.mode, item.intent, item.file_name)


def _file_sha256(path: str) -> str:
    """Compute SHA-256 checksum for an audio artifact."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        while True:
            chunk = f.read(8192)
            if not chunk:
                break
            h.update(chunk)
    return h.hexdigest()


@dataclass
class ResultRecord:
    item: WorkItem
    output_file: str
    status: str
    estimated_tokens: int
    reason: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    mime_type: Optional[str] = None
    bytes: Optional[int] = None
    elapsed_ms: Optional[int] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    prompt_label: Optional[str] = None
    attempts: Optional[int] = None
    checksum_sha256: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload = self.item.to_dict()
        payload.update(
            {
                "output_file": self.output_file,
                "status": self.status,
                "estimated_tokens": self.estimated_tokens,
            }
        )
        for key in (
            "reason",
            "error",
            "error_kind",
            "mime_type",
            "bytes",
            "elapsed_ms",
            "provider",
            "model",
            "prompt_label",
            "attempts",
            "checksum_sha256",
        ):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        return payload


@dataclass
class BarkRunner:
    """Process work items one at a time against a single admission controller.

    Per-item synthesis and write failures are recorded and the loop moves on.
    Admission failures (daily budget) and interruption propagate; whatever
    was recorded up to that point stays on `results`.
    """

    options: RunOptions
    admission: AdmissionController
    client: Optional[SynthesisClient]
    logger: Logger
    stream: Optional[TextIO] = None
    results: List[ResultRecord] = field(default_factory=list)
    _index: int = 0
    _total: int = 0

    def _out(self, line: str, *, end: str = "\n") -> None:
        target = self.stream or sys.stdout
        target.write(line + end)
        target.flush()

    def _status(self) -> Dict[str, object]:
        counts: Dict[str, int] = {}
        for record in self.results:
            counts[record.status] = counts.get(record.status, 0) + 1
        return {
            "position": self._index,
            "total": self._total,
            "ok": counts.get(STATUS_OK, 0),
            "skipped": counts.get(STATUS_SKIPPED, 0),
            "errors": counts.get(STATUS_ERROR, 0),
            "requests_today": self.admission.requests_today,
        }

    def run(self, items: Sequence[WorkItem]) -> List[ResultRecord]:
        self.results = []
        self._total = len(items)
        with self.logger.heartbeat("bark_run", self._status):
            for index, item in enumerate(items, start=1):
                self._index = index
                self.results.append(self._process(item, index))
        return self.results

    def _process(self, item: WorkItem, index: int) -> ResultRecord:
        destination = build_destination_path(self.options.run_dir, item, self.options.organize)
        estimate = item.estimated_tokens
        prefix = f"[barks] {index:02d}/{self._total} {item.file_name}"
        log = self.logger.bind(file_name=item.file_name)

        if self.options.resume and os.path.exists(destination):
            self._out(f"{prefix} skip-existing")
            return ResultRecord(
                item=item,
                output_file=destination,
                status=STATUS_SKIPPED,
                estimated_tokens=estimate,
                reason=REASON_FILE_EXISTS,
            )

        if self.options.dry_run:
            self._out(f"{prefix} dry-run")
            return ResultRecord(
                item=item,
                output_file=destination,
                status=STATUS_DRY_RUN,
                estimated_tokens=estimate,
            )

        if self.client is None:
            raise RuntimeError("A synthesis client is required outside dry-run mode")

        # Outside the per-item boundary: budget exhaustion ends the run.
        try:
            self.admission.wait_turn(estimate)
        except DailyBudgetExhaustedError as exc:
            log.error(
                "daily_budget_exhausted",
                requests_today=exc.requests_today,
                rpd_limit=exc.rpd_limit,
            )
            raise
        self.admission.note_request(estimate)

        self._out(f"{prefix} generating ... ", end="")
        started = time.time()
        try:
            clip = self.client.synthesize(item)
            atomic_write_bytes(destination, clip.audio_bytes)
            checksum = _file_sha256(destination)
        except InterruptedError:
            self._out("interrupted")
            raise
        except Exception as exc:  # noqa: BLE001
            elapsed_ms = int((time.time() - started) * 1000)
            kind = classify_tts_exception(exc)
            self._out(f"failed ({exc})")
            log.warn(
                "bark_item_failed",
                error_kind=kind,
                elapsed_ms=elapsed_ms,
                error=str(exc),
            )
            return ResultRecord(
                item=item,
                output_file=destination,
                status=STATUS_ERROR,
                estimated_tokens=estimate,
                error=str(exc),
                error_kind=kind,
                elapsed_ms=elapsed_ms,
                attempts=getattr(exc, "attempts", None) or None,
            )

        elapsed_ms = int((time.time() - started) * 1000)
        self._out(f"ok ({elapsed_ms}ms)")
        expected_ext = os.path.splitext(destination)[1].lstrip(".").lower()
        if expected_ext and clip.file_extension != expected_ext:
            # Bytes are kept as returned; only the name disagrees.
            log.warn("bark_extension_mismatch", mime_type=clip.content_type, expected=expected_ext)
        log.debug(
            "bark_item_ok",
            provider=clip.provider,
            model=clip.model,
            prompt_label=clip.prompt_label,
            attempts=clip.attempts,
            bytes=len(clip.audio_bytes),
            elapsed_ms=elapsed_ms,
        )
        return ResultRecord(
            item=item,
            output_file=destination,
            status=STATUS_OK,
            estimated_tokens=estimate,
            mime_type=clip.content_type,
            bytes=len(clip.audio_bytes),
            elapsed_ms=elapsed_ms,
            provider=clip.provider,
            model=clip.model,
            prompt_label=clip.prompt_label,
            attempts=clip.attempts,
            checksum_sha256=checksum,
        )

    def results_as_dicts(self) -> List[Dict[str, Any]]:
        return [record.to_dict() for record in self.results]
