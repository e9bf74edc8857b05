#!/usr/bin/env python3
from __future__ import annotations

import re
import socket
import urllib.error
from typing import Iterable, List, Optional

ERROR_KIND_TIMEOUT = "timeout"
ERROR_KIND_RATE_LIMIT = "rate_limit"
ERROR_KIND_SERVER = "server_error"
ERROR_KIND_NETWORK = "network"
ERROR_KIND_HTTP = "http_error"
ERROR_KIND_MISSING_AUDIO = "missing_audio"
ERROR_KIND_INVALID_RESPONSE = "invalid_response"
ERROR_KIND_DAILY_BUDGET = "daily_budget"
ERROR_KIND_CONFIG = "config"
ERROR_KIND_INTERRUPTED = "interrupted"
ERROR_KIND_UNKNOWN = "unknown"

RETRYABLE_ERROR_KINDS = {
    ERROR_KIND_TIMEOUT,
    ERROR_KIND_RATE_LIMIT,
    ERROR_KIND_SERVER,
    ERROR_KIND_NETWORK,
    ERROR_KIND_MISSING_AUDIO,
}


def is_retryable_error_kind(kind: str) -> bool:
    return str(kind or "").strip().lower() in RETRYABLE_ERROR_KINDS


def error_kind_for_http_status(code: int) -> str:
    code = int(code or 0)
    if code == 429:
        return ERROR_KIND_RATE_LIMIT
    if code >= 500:
        return ERROR_KIND_SERVER
    return ERROR_KIND_HTTP


class TTSOperationError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        error_kind: str,
        retry_after: Optional[str] = None,
        status_code: int = 0,
    ) -> None:
        super().__init__(message)
        self.error_kind = str(error_kind or ERROR_KIND_UNKNOWN).strip().lower()
        self.retry_after = retry_after
        self.status_code = int(status_code or 0)
        self.attempts = 0

    @property
    def retryable(self) -> bool:
        return is_retryable_error_kind(self.error_kind)


class ConfigurationError(RuntimeError):
    """Fatal setup problem detected before any network activity."""

    error_kind = ERROR_KIND_CONFIG


class DailyBudgetExhaustedError(RuntimeError):
    """Raised by the admission controller once the daily request cap is hit.

    The run is aborted on the spot: waiting out a 24h window is not an
    option inside one process lifetime.
    """

    error_kind = ERROR_KIND_DAILY_BUDGET

    def __init__(self, *, requests_today: int, rpd_limit: int) -> None:
        self.requests_today = int(requests_today)
        self.rpd_limit = int(rpd_limit)
        super().__init__(
            f"Daily request budget reached ({self.requests_today}/{self.rpd_limit}). "
            "Wait for the next day window or raise --rpd."
        )


def _exception_chain(exc: BaseException) -> List[BaseException]:
    """`exc` followed by its causes/contexts, each at most once."""
    chain: List[BaseException] = []
    current: Optional[BaseException] = exc
    while current is not None and all(current is not seen for seen in chain):
        chain.append(current)
        current = current.__cause__ or current.__context__
    return chain


def classify_tts_exception(exc: BaseException) -> str:
    messages: List[str] = []
    for item in _exception_chain(exc):
        if isinstance(item, TTSOperationError):
            return item.error_kind
        if isinstance(item, (ConfigurationError, DailyBudgetExhaustedError)):
            return item.error_kind
        if isinstance(item, InterruptedError):
            return ERROR_KIND_INTERRUPTED
        if isinstance(item, (TimeoutError, socket.timeout)):
            return ERROR_KIND_TIMEOUT
        if isinstance(item, urllib.error.HTTPError):
            return error_kind_for_http_status(int(getattr(item, "code", 0) or 0))
        if isinstance(item, urllib.error.URLError):
            reason = getattr(item, "reason", None)
            if isinstance(reason, (TimeoutError, socket.timeout)):
                return ERROR_KIND_TIMEOUT
            return ERROR_KIND_NETWORK
        if isinstance(item, ConnectionError):
            return ERROR_KIND_NETWORK
        messages.append(str(item or ""))

    message = " ".join(messages).lower()
    if "429" in message or "rate limit" in message or "resource_exhausted" in message:
        return ERROR_KIND_RATE_LIMIT
    if "timeout" in message or "timed out" in message:
        return ERROR_KIND_TIMEOUT
    if "inline audio" in message:
        return ERROR_KIND_MISSING_AUDIO
    if re.search(r"\bhttp 5\d\d\b", message):
        return ERROR_KIND_SERVER
    if (
        "connection" in message
        or "network" in message
        or "name or service not known" in message
        or "temporary failure in name resolution" in message
        or "urlopen error" in message
    ):
        return ERROR_KIND_NETWORK
    return ERROR_KIND_UNKNOWN


def summarize_failure_kinds(kinds: Iterable[str]) -> List[str]:
    out: List[str] = []
    for kind in kinds:
        normalized = str(kind or ERROR_KIND_UNKNOWN).strip().lower()
        if not normalized:
            normalized = ERROR_KIND_UNKNOWN
        if normalized not in out:
            out.append(normalized)
    return out
