#!/usr/bin/env python3
from __future__ import annotations

"""Structured stderr logging for bark runs.

Every line is `[time] [LEVEL] [run:<name>] event {json fields}`. Bound context
(for example the file being generated) is merged into each line's fields, and
an optional redactor scrubs secrets from the rendered line before it is
written.
"""

import json
import sys
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, Iterator, Mapping, Optional, TextIO

from .config import LoggingConfig

LEVELS = {
    "DEBUG": 10,
    "INFO": 20,
    "WARN": 30,
    "WARNING": 30,
    "ERROR": 40,
}


def format_log_line(
    level: str,
    event: str,
    *,
    run_id: str,
    fields: Optional[Mapping[str, object]] = None,
    event_id: str = "",
    now: Optional[float] = None,
) -> str:
    stamp = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(time.time() if now is None else now))
    tags = f"[{stamp}] [{level}] [run:{run_id}]"
    if event_id:
        tags += f" [event:{event_id}]"
    if not fields:
        return f"{tags} {event}"
    payload = json.dumps(dict(fields), ensure_ascii=True, sort_keys=True, default=str)
    return f"{tags} {event} {payload}"


@dataclass
class Logger:
    config: LoggingConfig
    run_id: str
    stream: Optional[TextIO] = None
    context: Dict[str, object] = field(default_factory=dict)
    redact: Optional[Callable[[str], str]] = None

    @staticmethod
    def create(config: LoggingConfig, run_id: str = "") -> "Logger":
        """Logger tagged with the run name, or a short random id when unnamed."""
        return Logger(config=config, run_id=str(run_id or "").strip() or uuid.uuid4().hex[:10])

    def bind(self, **fields: object) -> "Logger":
        merged = dict(self.context)
        merged.update(fields)
        return replace(self, context=merged)

    def with_redactor(self, redact: Callable[[str], str]) -> "Logger":
        return replace(self, redact=redact)

    def _enabled(self, level: str) -> bool:
        return LEVELS.get(level, 20) >= LEVELS.get(self.config.level, 20)

    def _emit(self, level: str, event: str, fields: Dict[str, object]) -> None:
        if not self._enabled(level):
            return
        merged = dict(self.context)
        merged.update(fields)
        line = format_log_line(
            level,
            event,
            run_id=self.run_id,
            fields=merged,
            event_id=uuid.uuid4().hex[:8] if self.config.include_event_ids else "",
        )
        if self.redact is not None:
            line = self.redact(line)
        print(line, file=self.stream or sys.stderr, flush=True)

    def debug(self, event: str, **fields: object) -> None:
        # DEBUG needs both the level and LOG_DEBUG_EVENTS (or --debug).
        if self.config.debug_events:
            self._emit("DEBUG", event, fields)

    def info(self, event: str, **fields: object) -> None:
        self._emit("INFO", event, fields)

    def warn(self, event: str, **fields: object) -> None:
        self._emit("WARN", event, fields)

    def error(self, event: str, **fields: object) -> None:
        self._emit("ERROR", event, fields)

    @contextmanager
    def timed(self, name: str, **fields: object) -> Iterator[None]:
        """Log `<name>_started` and `<name>_finished` with `elapsed_ms`."""
        started = time.time()
        self.info(f"{name}_started", **fields)
        outcome = "ok"
        try:
            yield
        except BaseException:
            outcome = "raised"
            raise
        finally:
            self.info(
                f"{name}_finished",
                outcome=outcome,
                elapsed_ms=int((time.time() - started) * 1000),
                **fields,
            )

    @contextmanager
    def heartbeat(
        self,
        label: str,
        status_fn: Optional[Callable[[], Dict[str, object]]] = None,
    ) -> Iterator[None]:
        """Periodic `heartbeat` lines while a long run is inside the block.

        The thread only calls `status_fn`, which must be a read-only snapshot.
        """
        stop = threading.Event()
        interval = max(1, int(self.config.heartbeat_seconds))
        started = time.time()

        def beat() -> None:
            while not stop.wait(interval):
                payload: Dict[str, object] = {
                    "label": label,
                    "uptime_s": int(time.time() - started),
                }
                if status_fn is not None:
                    try:
                        payload.update(status_fn())
                    except Exception as exc:  # noqa: BLE001
                        payload["status_error"] = str(exc)
                self.info("heartbeat", **payload)

        thread = threading.Thread(target=beat, name=f"barks-heartbeat-{label}", daemon=True)
        thread.start()
        try:
            yield
        finally:
            stop.set()
            thread.join(timeout=interval)
