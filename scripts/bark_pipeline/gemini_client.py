#!/usr/bin/env python3
from __future__ import annotations

import email.utils
import json
import math
import re
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple, TypeVar

from .audio import InlineAudio, extract_inline_audio, normalize_inline_audio
from .catalog import WorkItem
from .config import RunOptions
from .errors import (
    ERROR_KIND_INVALID_RESPONSE,
    ERROR_KIND_MISSING_AUDIO,
    ERROR_KIND_UNKNOWN,
    TTSOperationError,
    classify_tts_exception,
    error_kind_for_http_status,
)
from .logging_utils import Logger
from .prompts import prompt_variants
from .tts_provider import TTSAudioResult, extension_for_mime_type

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"

BACKOFF_BASE_SECONDS = 1.5
BACKOFF_MAX_SECONDS = 60.0
BACKOFF_MAX_ATTEMPT = 7
BACKOFF_SLICE_SECONDS = 0.25

T = TypeVar("T")


def redact_sensitive_text(text: str, *, api_key: str) -> str:
    rendered = str(text or "")
    secret = str(api_key or "").strip()
    if secret:
        rendered = rendered.replace(secret, "***")
    # Upstream errors sometimes echo the key as a query parameter.
    rendered = re.sub(r"(?i)([?&]key=)[^&\s\"']+", r"\1***", rendered)
    return rendered


def retry_delay_seconds(retry_after: Optional[str], attempt: int, *, now: Optional[float] = None) -> float:
    """Server Retry-After (seconds or HTTP-date) when usable, else capped exponential backoff."""
    raw = str(retry_after or "").strip()
    if raw:
        try:
            numeric = float(raw)
        except ValueError:
            numeric = float("nan")
        if math.isfinite(numeric) and numeric >= 0:
            return math.ceil(numeric * 1000) / 1000.0
        try:
            parsed = email.utils.parsedate_to_datetime(raw)
        except (TypeError, ValueError, IndexError):
            parsed = None
        if parsed is not None:
            current = time.time() if now is None else float(now)
            return max(0.0, parsed.timestamp() - current)
    capped_attempt = max(1, min(BACKOFF_MAX_ATTEMPT, int(attempt)))
    return min(BACKOFF_MAX_SECONDS, BACKOFF_BASE_SECONDS * (2 ** (capped_attempt - 1)))


@dataclass
class GeminiTTSClient:
    api_key: str
    model_name: str
    voice: str
    timeout_seconds: float
    max_retries: int
    logger: Logger
    debug: bool = False
    base_url: str = GEMINI_BASE_URL
    cancel_check: Optional[Callable[[], bool]] = None
    sleep: Callable[[float], None] = time.sleep
    provider_name: str = "gemini"
    _requests_made: int = 0
    _retries_total: int = 0
    _state_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    @staticmethod
    def from_options(
        options: RunOptions,
        *,
        api_key: str,
        logger: Logger,
        cancel_check: Optional[Callable[[], bool]] = None,
    ) -> "GeminiTTSClient":
        return GeminiTTSClient(
            api_key=str(api_key or "").strip(),
            model_name=options.model,
            voice=options.voice,
            timeout_seconds=max(1.0, options.timeout_ms / 1000.0),
            max_retries=max(1, int(options.max_retries)),
            logger=logger,
            debug=options.debug,
            cancel_check=cancel_check,
        )

    @property
    def requests_made(self) -> int:
        with self._state_lock:
            return int(self._requests_made)

    @property
    def retries_total(self) -> int:
        with self._state_lock:
            return int(self._retries_total)

    def _track_request(self) -> None:
        with self._state_lock:
            self._requests_made += 1

    def _record_retry(self) -> None:
        with self._state_lock:
            self._retries_total += 1

    def _redact(self, text: str) -> str:
        return redact_sensitive_text(text, api_key=self.api_key)

    def _sleep_backoff(self, delay_s: float, *, label: str) -> None:
        if self.cancel_check is None:
            self.sleep(delay_s)
            return
        remaining = max(0.0, float(delay_s))
        while True:
            if self.cancel_check():
                raise InterruptedError(f"Interrupted during Gemini TTS retry backoff ({label})")
            if remaining <= 0:
                break
            step = min(BACKOFF_SLICE_SECONDS, remaining)
            self.sleep(step)
            remaining -= step

    def _endpoint(self) -> str:
        model = urllib.parse.quote(self.model_name, safe="")
        return f"{self.base_url.rstrip('/')}/models/{model}:generateContent"

    def _payload(self, prompt: str, temperature: Optional[float]) -> Dict[str, Any]:
        generation_config: Dict[str, Any] = {
            "responseModalities": ["AUDIO"],
            "speechConfig": {
                "voiceConfig": {
                    "prebuiltVoiceConfig": {"voiceName": self.voice},
                },
            },
        }
        if temperature is not None:
            generation_config["temperature"] = float(temperature)
        return {
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": generation_config,
        }

    def _post_generation(self, payload: Dict[str, Any], *, label: str, attempt: int) -> Dict[str, Any]:
        """Single HTTP attempt; every failure surfaces as `TTSOperationError`."""
        request = urllib.request.Request(
            self._endpoint(),
            data=json.dumps(payload).encode("utf-8"),
            headers={
                "Content-Type": "application/json",
                "x-goog-api-key": self.api_key,
            },
            method="POST",
        )
        self._track_request()
        started = time.time()
        try:
            with urllib.request.urlopen(request, timeout=self.timeout_seconds) as resp:
                raw = resp.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            code = int(getattr(exc, "code", 0) or 0)
            try:
                detail = exc.read().decode("utf-8", errors="ignore").strip()[:500]
            except (OSError, AttributeError):
                detail = ""
            headers = getattr(exc, "headers", None)
            retry_after = headers.get("Retry-After") if headers is not None else None
            message = f"Gemini TTS failed (HTTP {code})"
            if detail:
                message = f"{message}: {detail}"
            raise TTSOperationError(
                self._redact(message),
                error_kind=error_kind_for_http_status(code),
                retry_after=retry_after,
                status_code=code,
            ) from None
        except Exception as exc:  # noqa: BLE001
            raise TTSOperationError(
                self._redact(f"Gemini TTS request failed: {exc}"),
                error_kind=classify_tts_exception(exc),
            ) from None
        try:
            parsed = json.loads(raw)
        except ValueError as exc:
            raise TTSOperationError(
                f"Gemini TTS returned malformed JSON: {exc}",
                error_kind=ERROR_KIND_INVALID_RESPONSE,
            ) from None
        if not isinstance(parsed, dict):
            raise TTSOperationError(
                "Gemini TTS returned a non-object JSON payload",
                error_kind=ERROR_KIND_INVALID_RESPONSE,
            )
        self.logger.debug(
            "gemini_tts_request_ok",
            label=label,
            attempt=attempt,
            elapsed_ms=int((time.time() - started) * 1000),
            requests_made=self.requests_made,
        )
        return parsed

    def _generate_audio(self, prompt: str, temperature: Optional[float], *, label: str, attempt: int) -> InlineAudio:
        response = self._post_generation(self._payload(prompt, temperature), label=label, attempt=attempt)
        try:
            inline = extract_inline_audio(response)
        except ValueError as exc:
            raise TTSOperationError(str(exc), error_kind=ERROR_KIND_INVALID_RESPONSE) from None
        if inline is None:
            raise TTSOperationError(
                "Gemini response did not include inline audio.",
                error_kind=ERROR_KIND_MISSING_AUDIO,
            )
        return normalize_inline_audio(inline.data, inline.mime_type)

    def request_with_retries(self, label: str, thunk: Callable[[int], T]) -> Tuple[T, int]:
        """Run `thunk(attempt)` under the retry policy; returns `(value, attempts)`.

        Retryable kinds back off and try again up to `max_retries` attempts;
        anything else ends this tier at once.
        """
        last_exc: Optional[TTSOperationError] = None
        for attempt in range(1, self.max_retries + 1):
            if self.cancel_check is not None and self.cancel_check():
                raise InterruptedError(f"Interrupted before Gemini TTS request ({label})")
            try:
                return thunk(attempt), attempt
            except InterruptedError:
                raise
            except TTSOperationError as exc:
                last_exc = exc
            except Exception as exc:  # noqa: BLE001
                last_exc = TTSOperationError(
                    self._redact(str(exc)),
                    error_kind=classify_tts_exception(exc),
                )
            if not last_exc.retryable or attempt >= self.max_retries:
                self.logger.warn(
                    "gemini_tts_tier_failed",
                    label=label,
                    attempt=attempt,
                    error_kind=last_exc.error_kind,
                    retryable=last_exc.retryable,
                    error=self._redact(str(last_exc)),
                )
                break
            delay_s = retry_delay_seconds(last_exc.retry_after, attempt)
            log = self.logger.info if self.debug else self.logger.debug
            log(
                "gemini_tts_retry",
                label=label,
                attempt=attempt,
                error_kind=last_exc.error_kind,
                status_code=last_exc.status_code,
                delay_ms=int(round(delay_s * 1000)),
                error=self._redact(str(last_exc)),
            )
            self._record_retry()
            self._sleep_backoff(delay_s, label=label)
        if last_exc is not None:
            last_exc.attempts = attempt
            raise last_exc
        raise TTSOperationError(f"Gemini TTS request exhausted retries ({label})", error_kind=ERROR_KIND_UNKNOWN)

    def synthesize(self, item: WorkItem) -> TTSAudioResult:
        """Try each prompt tier in order; the last tier's error wins when all fail."""
        total_attempts = 0
        last_exc: Optional[TTSOperationError] = None
        for variant in prompt_variants(item.text, item.style):
            try:
                audio, attempts = self.request_with_retries(
                    variant.label,
                    lambda attempt, prompt=variant.prompt, label=variant.label: self._generate_audio(
                        prompt,
                        item.temperature,
                        label=label,
                        attempt=attempt,
                    ),
                )
            except TTSOperationError as exc:
                total_attempts += exc.attempts
                last_exc = exc
                self.logger.warn(
                    "gemini_tts_prompt_fallback" if variant.label == "primary" else "gemini_tts_prompt_failed",
                    file_name=item.file_name,
                    label=variant.label,
                    error_kind=exc.error_kind,
                )
                continue
            total_attempts += attempts
            return TTSAudioResult(
                audio_bytes=audio.data,
                content_type=audio.mime_type,
                file_extension=extension_for_mime_type(audio.mime_type),
                provider=self.provider_name,
                model=self.model_name,
                prompt_label=variant.label,
                attempts=total_attempts,
            )
        if last_exc is None:
            raise TTSOperationError("Gemini TTS produced no prompt variants", error_kind=ERROR_KIND_UNKNOWN)
        last_exc.attempts = total_attempts
        raise last_exc
