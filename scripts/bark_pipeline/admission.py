#!/usr/bin/env python3
from __future__ import annotations

"""Sliding-window admission control for quota-limited synthesis requests.

Three quotas are enforced together: requests per minute, tokens per minute
and requests per day, plus a minimum spacing between dispatches. Waits are
recomputed after every sleep because the window keeps moving while we wait.
"""

import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Optional, Tuple

from .config import MINUTE_WINDOW_MS, RunOptions
from .errors import DailyBudgetExhaustedError
from .logging_utils import Logger

DAY_WINDOW_MS = 24 * 60 * 60 * 1000
BOUNDARY_EPSILON_MS = 25
SLEEP_SLICE_MS = 250

WAIT_REASON_NONE = "none"
WAIT_REASON_MIN_DELAY = "min_delay"
WAIT_REASON_RPM = "rpm"
WAIT_REASON_TPM = "tpm"


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


@dataclass(frozen=True)
class AdmissionEvent:
    at_ms: float
    tokens: int


@dataclass
class AdmissionController:
    """Per-run quota tracker; the only component with cross-item memory.

    `clock` returns monotonic milliseconds and `sleep` takes seconds so tests
    can drive both with a fake timeline.
    """

    rpm_limit: int
    tpm_limit: int
    rpd_limit: int
    min_delay_ms: int
    logger: Optional[Logger] = None
    clock: Callable[[], float] = _monotonic_ms
    sleep: Callable[[float], None] = time.sleep
    cancel_check: Optional[Callable[[], bool]] = None
    _events: Deque[AdmissionEvent] = field(default_factory=deque, repr=False)
    _day_start_ms: float = 0.0
    _requests_today: int = 0
    _last_dispatch_ms: Optional[float] = None
    _waits: int = 0
    _waited_ms_total: float = 0.0
    _binding_counts: Dict[str, int] = field(default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        self.rpm_limit = max(1, int(self.rpm_limit))
        self.tpm_limit = max(1, int(self.tpm_limit))
        self.rpd_limit = max(1, int(self.rpd_limit))
        self.min_delay_ms = max(0, int(self.min_delay_ms))
        self._day_start_ms = float(self.clock())

    @staticmethod
    def from_options(
        options: RunOptions,
        *,
        logger: Optional[Logger] = None,
        cancel_check: Optional[Callable[[], bool]] = None,
    ) -> "AdmissionController":
        return AdmissionController(
            rpm_limit=options.rpm_limit,
            tpm_limit=options.tpm_limit,
            rpd_limit=options.rpd_limit,
            min_delay_ms=options.min_delay_ms,
            logger=logger,
            cancel_check=cancel_check,
        )

    @property
    def requests_today(self) -> int:
        return self._requests_today

    def tokens_in_window(self) -> int:
        return sum(event.tokens for event in self._events)

    def prune(self, now_ms: Optional[float] = None) -> float:
        """Drop events older than the minute window and roll the day window."""
        now = float(self.clock()) if now_ms is None else float(now_ms)
        while self._events and now - self._events[0].at_ms >= MINUTE_WINDOW_MS:
            self._events.popleft()
        if now - self._day_start_ms >= DAY_WINDOW_MS:
            self._day_start_ms = now
            self._requests_today = 0
        return now

    def _tpm_wait_ms(self, now: float, estimated_tokens: int) -> float:
        used = self.tokens_in_window()
        if not self._events or used + estimated_tokens <= self.tpm_limit:
            return 0.0
        overflow = used + estimated_tokens - self.tpm_limit
        # Oldest event whose expiry frees enough tokens; if none does, the oldest.
        target = self._events[0]
        released = 0
        for event in self._events:
            released += event.tokens
            if released >= overflow:
                target = event
                break
        return max(0.0, target.at_ms + MINUTE_WINDOW_MS - now) + BOUNDARY_EPSILON_MS

    def next_wait_ms(self, estimated_tokens: int) -> Tuple[float, str]:
        """Wait required right now, and the constraint that binds it.

        Raises `DailyBudgetExhaustedError` when the daily cap is reached.
        """
        now = self.prune()
        if self._requests_today >= self.rpd_limit:
            raise DailyBudgetExhaustedError(
                requests_today=self._requests_today,
                rpd_limit=self.rpd_limit,
            )
        estimate = max(1, int(estimated_tokens))

        min_delay_wait = 0.0
        if self._last_dispatch_ms is not None:
            min_delay_wait = max(0.0, self.min_delay_ms - (now - self._last_dispatch_ms))

        rpm_wait = 0.0
        if len(self._events) >= self.rpm_limit:
            oldest = self._events[0]
            rpm_wait = max(0.0, oldest.at_ms + MINUTE_WINDOW_MS - now) + BOUNDARY_EPSILON_MS

        tpm_wait = self._tpm_wait_ms(now, estimate)

        wait = max(min_delay_wait, rpm_wait, tpm_wait, 0.0)
        if wait <= 0:
            return 0.0, WAIT_REASON_NONE
        if wait == tpm_wait:
            return wait, WAIT_REASON_TPM
        if wait == rpm_wait:
            return wait, WAIT_REASON_RPM
        return wait, WAIT_REASON_MIN_DELAY

    def _sleep_ms(self, wait_ms: float) -> None:
        if self.cancel_check is None:
            self.sleep(wait_ms / 1000.0)
            return
        deadline = float(self.clock()) + wait_ms
        while True:
            if self.cancel_check():
                raise InterruptedError("Interrupted while waiting for admission")
            remaining = deadline - float(self.clock())
            if remaining <= 0:
                break
            self.sleep(min(SLEEP_SLICE_MS, remaining) / 1000.0)

    def wait_turn(self, estimated_tokens: int) -> float:
        """Block until a dispatch of `estimated_tokens` fits every quota.

        Returns the total milliseconds waited for this turn.
        """
        waited = 0.0
        while True:
            if self.cancel_check is not None and self.cancel_check():
                raise InterruptedError("Interrupted while waiting for admission")
            wait_ms, reason = self.next_wait_ms(estimated_tokens)
            if wait_ms <= 0:
                return waited
            self._waits += 1
            self._binding_counts[reason] = self._binding_counts.get(reason, 0) + 1
            if self.logger is not None:
                log = self.logger.info if wait_ms >= 1000 else self.logger.debug
                log(
                    "admission_wait",
                    wait_ms=int(round(wait_ms)),
                    reason=reason,
                    events_in_window=len(self._events),
                    tokens_in_window=self.tokens_in_window(),
                    requests_today=self._requests_today,
                )
            started = float(self.clock())
            self._sleep_ms(wait_ms)
            slept = max(0.0, float(self.clock()) - started)
            waited += slept
            self._waited_ms_total += slept

    def note_request(self, tokens: int) -> None:
        """Record one granted dispatch against every window."""
        now = self.prune()
        self._events.append(AdmissionEvent(at_ms=now, tokens=max(1, int(tokens))))
        self._requests_today += 1
        self._last_dispatch_ms = now

    def snapshot(self) -> Dict[str, object]:
        self.prune()
        return {
            "rpm_limit": self.rpm_limit,
            "tpm_limit": self.tpm_limit,
            "rpd_limit": self.rpd_limit,
            "min_delay_ms": self.min_delay_ms,
            "requests_today": self._requests_today,
            "events_in_window": len(self._events),
            "tokens_in_window": self.tokens_in_window(),
            "waits": self._waits,
            "waited_ms_total": int(round(self._waited_ms_total)),
            "binding_constraints": dict(sorted(self._binding_counts.items())),
        }
