#!/usr/bin/env python3
from __future__ import annotations

"""Run manifest helpers: catalog snapshot before execution, manifest after.

Both files live in the run directory next to the generated audio and are
written atomically so a crash never leaves a truncated JSON document.
"""

import os
import time
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .catalog import WorkItem
from .errors import ConfigurationError, summarize_failure_kinds
from .io_utils import atomic_write_json

MANIFEST_FILENAME = "manifest.json"
CATALOG_FILENAME = "phrases.json"

STATUS_OK = "ok"
STATUS_SKIPPED = "skipped"
STATUS_DRY_RUN = "dry-run"
STATUS_ERROR = "error"


def utc_now_iso(now: Optional[float] = None) -> str:
    current = time.time() if now is None else float(now)
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(current))


def validate_run_name(run_name: str) -> str:
    """Run names become a directory under the output root; no separators allowed."""
    candidate = str(run_name or "").strip()
    if not candidate or candidate in {".", ".."} or "/" in candidate or "\\" in candidate:
        raise ConfigurationError(f"run name must be a plain directory name, got {run_name!r}")
    return candidate


def manifest_path(run_dir: str) -> str:
    return os.path.join(run_dir, MANIFEST_FILENAME)


def catalog_snapshot_path(run_dir: str) -> str:
    return os.path.join(run_dir, CATALOG_FILENAME)


def write_catalog_snapshot(run_dir: str, items: Sequence[WorkItem]) -> str:
    """Persist the filtered catalog before any synthesis starts."""
    path = catalog_snapshot_path(run_dir)
    atomic_write_json(
        path,
        {
            "generated_at": utc_now_iso(),
            "items": [item.to_dict() for item in items],
        },
    )
    return path


def summarize_totals(results: Iterable[Mapping[str, Any]], *, requested: int) -> Dict[str, int]:
    totals = {
        "requested": int(requested),
        "ok": 0,
        "skipped": 0,
        "dry_run": 0,
        "errors": 0,
    }
    for record in results:
        status = str(record.get("status", ""))
        if status == STATUS_OK:
            totals["ok"] += 1
        elif status == STATUS_SKIPPED:
            totals["skipped"] += 1
        elif status == STATUS_DRY_RUN:
            totals["dry_run"] += 1
        elif status == STATUS_ERROR:
            totals["errors"] += 1
    return totals


def build_manifest(
    *,
    run_dir: str,
    model: str,
    voice: str,
    api_key_source: str,
    options: Dict[str, Any],
    selection_summary: Dict[str, Any],
    admission: Dict[str, Any],
    results: List[Dict[str, Any]],
    requested: int,
    client_stats: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Assemble the manifest payload for a completed run."""
    payload: Dict[str, Any] = {
        "generated_at": utc_now_iso(),
        "run_dir": run_dir,
        "model": model,
        "voice": voice,
        "api_key_source": api_key_source,
        "options": dict(options),
        "selection_summary": dict(selection_summary),
        "admission": dict(admission),
        "totals": summarize_totals(results, requested=requested),
        "failure_kinds": summarize_failure_kinds(
            record.get("error_kind", "") for record in results if record.get("status") == STATUS_ERROR
        ),
        "results": list(results),
    }
    if client_stats is not None:
        payload["client"] = dict(client_stats)
    return payload


def write_manifest(path: str, payload: Dict[str, Any]) -> None:
    atomic_write_json(path, payload)
