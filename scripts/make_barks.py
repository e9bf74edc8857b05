#!/usr/bin/env python3
from __future__ import annotations

import argparse
import dataclasses
import functools
import math
import os
import signal
import sys
import time

from bark_pipeline.admission import AdmissionController
from bark_pipeline.catalog import build_catalog
from bark_pipeline.config import (
    API_KEY_SETTINGS_KEY,
    LoggingConfig,
    RunOptions,
    options_fingerprint,
    parse_list_value,
    resolve_api_key,
)
from bark_pipeline.errors import (
    ERROR_KIND_INTERRUPTED,
    ERROR_KIND_UNKNOWN,
    ConfigurationError,
    DailyBudgetExhaustedError,
    classify_tts_exception,
)
from bark_pipeline.gemini_client import GeminiTTSClient, redact_sensitive_text
from bark_pipeline.logging_utils import Logger
from bark_pipeline.run_manifest import (
    build_manifest,
    manifest_path,
    validate_run_name,
    write_catalog_snapshot,
    write_manifest,
)
from bark_pipeline.runner import BarkRunner
from bark_pipeline.selection import (
    apply_selection_filters,
    format_list_preview,
    limit_items,
    load_selection_entries,
)


def _int_arg(value: str) -> int:
    try:
        parsed = float(str(value).strip())
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected a number, got {value!r}") from None
    if not math.isfinite(parsed):
        raise argparse.ArgumentTypeError(f"expected a finite number, got {value!r}")
    return int(math.floor(parsed))


def _flatten(values: list[str] | None) -> list[str]:
    out: list[str] = []
    for value in values or []:
        out.extend(parse_list_value(value))
    return out


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Pre-generate the canned bark clip catalog with Gemini TTS under RPM/TPM/RPD quotas."
    )
    parser.add_argument("--api-key", default=None, help="Gemini API key (overrides env and settings files)")
    parser.add_argument("--model", default=None)
    parser.add_argument("--voice", default=None)
    parser.add_argument("--output-root", default=None)
    parser.add_argument("--run-name", default=None)
    parser.add_argument("--rpm", type=_int_arg, default=None)
    parser.add_argument("--tpm", type=_int_arg, default=None)
    parser.add_argument("--rpd", type=_int_arg, default=None)
    parser.add_argument("--min-delay-ms", type=_int_arg, default=None)
    parser.add_argument("--timeout-ms", type=_int_arg, default=None)
    parser.add_argument("--max-retries", type=_int_arg, default=None)
    parser.add_argument("--max-items", type=_int_arg, default=None)
    parser.add_argument("--only-mode", action="append", default=[], help="Comma/semicolon separated, repeatable")
    parser.add_argument("--only-intent", action="append", default=[])
    parser.add_argument("--only-personality", action="append", default=[])
    parser.add_argument("--only-file", action="append", default=[], help="Exact file names or * ? wildcards")
    parser.add_argument("--exclude-file", action="append", default=[])
    parser.add_argument("--selection-file", default=None, help="JSON/JSONC or plain-text list of files")
    parser.add_argument("--organize", dest="organize", action="store_true", default=False)
    parser.add_argument("--flat", dest="organize", action="store_false")
    parser.add_argument("--dry-run", action="store_true")
    parser.add_argument("--resume", dest="resume", action="store_true", default=True)
    parser.add_argument("--no-resume", dest="resume", action="store_false")
    parser.add_argument("--debug", action="store_true")
    return parser.parse_args(argv)


def _options_from_args(args: argparse.Namespace) -> RunOptions:
    return RunOptions.from_env(
        api_key=args.api_key,
        model=args.model,
        voice=args.voice,
        output_root=args.output_root,
        run_name=args.run_name,
        rpm_limit=args.rpm,
        tpm_limit=args.tpm,
        rpd_limit=args.rpd,
        min_delay_ms=args.min_delay_ms,
        timeout_ms=args.timeout_ms,
        max_retries=args.max_retries,
        max_items=args.max_items,
        only_modes=_flatten(args.only_mode),
        only_intents=_flatten(args.only_intent),
        only_personalities=_flatten(args.only_personality),
        only_files=_flatten(args.only_file),
        exclude_files=_flatten(args.exclude_file),
        selection_file=args.selection_file,
        organize=args.organize,
        dry_run=args.dry_run,
        resume=args.resume,
        debug=args.debug,
    )


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    started = time.time()

    log_cfg = LoggingConfig.from_env()
    if args.debug:
        log_cfg = dataclasses.replace(log_cfg, level="DEBUG", debug_events=True)
    options = _options_from_args(args)
    logger = Logger.create(log_cfg, run_id=options.run_name)
    shutdown = {"requested": False}

    def _signal_handler(signum, _frame):  # type: ignore[no-untyped-def]
        shutdown["requested"] = True
        logger.warn("signal_received", signal=signum)

    signal.signal(signal.SIGINT, _signal_handler)
    sigterm = getattr(signal, "SIGTERM", None)
    if sigterm is not None:
        signal.signal(sigterm, _signal_handler)

    def _cancel_requested() -> bool:
        return bool(shutdown["requested"])

    runner: BarkRunner | None = None
    try:
        validate_run_name(options.run_name)
        selection_input = load_selection_entries(
            options.selection_file,
            on_fallback=lambda encoding: logger.warn(
                "selection_file_encoding_fallback", path=options.selection_file, encoding=encoding
            ),
        )
        filtered, selection_summary = apply_selection_filters(
            build_catalog(),
            options,
            selection_input.entries,
            selection_source=selection_input.source,
        )
        items = limit_items(filtered, options.max_items)
        if not items:
            raise ConfigurationError(
                "No phrases matched the requested filters. Adjust --only-* selectors or --selection-file."
            )

        resolved_key = resolve_api_key(options.api_key)
        if not options.dry_run and not resolved_key.key:
            raise ConfigurationError(
                f"Gemini API key not found. Set {API_KEY_SETTINGS_KEY} in VS Code settings, "
                "export GEMINI_API_KEY, or pass --api-key."
            )
        if resolved_key.key:
            logger = logger.with_redactor(functools.partial(redact_sensitive_text, api_key=resolved_key.key))

        os.makedirs(options.run_dir, exist_ok=True)
        write_catalog_snapshot(options.run_dir, items)

        logger.info(
            "bark_run_config",
            run_dir=options.run_dir,
            model=options.model,
            voice=options.voice,
            rpm=options.rpm_limit,
            tpm=options.tpm_limit,
            rpd=options.rpd_limit,
            min_delay_ms=options.min_delay_ms,
            phrases=len(items),
            dry_run=options.dry_run,
            resume=options.resume,
            organize=options.organize,
            api_key_source=resolved_key.source,
            selection_file=selection_input.source or "",
            options_fingerprint=options_fingerprint(options),
        )
        unmatched = selection_summary.unmatched_include_selectors
        if unmatched.get("exact"):
            logger.warn("unmatched_exact_selectors", selectors=format_list_preview(unmatched["exact"]))
        if unmatched.get("patterns"):
            logger.warn("unmatched_wildcard_selectors", selectors=format_list_preview(unmatched["patterns"]))
        if len(items) > options.rpd_limit:
            logger.warn(
                "selection_exceeds_daily_budget",
                phrases=len(items),
                rpd=options.rpd_limit,
                hint="Reduce --max-items or raise --rpd.",
            )

        admission = AdmissionController.from_options(options, logger=logger, cancel_check=_cancel_requested)
        client = None
        if not options.dry_run:
            client = GeminiTTSClient.from_options(
                options,
                api_key=resolved_key.key,
                logger=logger,
                cancel_check=_cancel_requested,
            )
        runner = BarkRunner(options=options, admission=admission, client=client, logger=logger)
        with logger.timed("bark_run", phrases=len(items)):
            runner.run(items)

        results = runner.results_as_dicts()
        client_stats = None
        if client is not None:
            client_stats = {
                "provider": client.provider_name,
                "requests_made": client.requests_made,
                "retries_total": client.retries_total,
            }
        manifest = build_manifest(
            run_dir=options.run_dir,
            model=options.model,
            voice=options.voice,
            api_key_source=resolved_key.source,
            options=options.to_manifest_dict(),
            selection_summary=selection_summary.to_dict(),
            admission=admission.snapshot(),
            results=results,
            requested=len(items),
            client_stats=client_stats,
        )
        path = manifest_path(options.run_dir)
        write_manifest(path, manifest)
        totals = manifest["totals"]
        logger.info(
            "bark_run_done",
            manifest=path,
            ok=totals["ok"],
            skipped=totals["skipped"],
            dry_run=totals["dry_run"],
            errors=totals["errors"],
            elapsed_ms=int((time.time() - started) * 1000),
        )
        return 1 if totals["errors"] > 0 else 0
    except (InterruptedError, KeyboardInterrupt) as exc:
        logger.warn(
            "bark_run_interrupted",
            error=str(exc),
            error_kind=ERROR_KIND_INTERRUPTED,
            recorded=len(runner.results) if runner is not None else 0,
        )
        return 130
    except (ConfigurationError, DailyBudgetExhaustedError) as exc:
        logger.error("fatal", error=str(exc), error_kind=exc.error_kind)
        print(f"[barks] fatal: {exc}", file=sys.stderr)
        return 1
    except Exception as exc:  # noqa: BLE001
        kind = classify_tts_exception(exc)
        logger.error("fatal", error=str(exc), error_kind=kind or ERROR_KIND_UNKNOWN)
        print(f"[barks] fatal: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
