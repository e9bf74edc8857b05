#!/usr/bin/env python3
from __future__ import annotations

"""Inline-audio extraction and raw PCM to WAV wrapping."""

import base64
import binascii
import re
import struct
from dataclasses import dataclass
from typing import Any, List, Optional, Tuple

DEFAULT_SAMPLE_RATE = 24000
DEFAULT_CHANNELS = 1
DEFAULT_BITS_PER_SAMPLE = 16
DEFAULT_AUDIO_MIME_TYPE = "audio/wav"
WAV_HEADER_SIZE = 44

_LEADING_DIGITS_RE = re.compile(r"^\d+")
_DATA_URL_PREFIX_RE = re.compile(r"^data:[^,]*;base64,", re.IGNORECASE)


@dataclass(frozen=True)
class PcmFormat:
    sample_rate: int = DEFAULT_SAMPLE_RATE
    channels: int = DEFAULT_CHANNELS
    bits_per_sample: int = DEFAULT_BITS_PER_SAMPLE

    @property
    def block_align(self) -> int:
        return self.channels * (self.bits_per_sample // 8)

    @property
    def byte_rate(self) -> int:
        return self.sample_rate * self.block_align


@dataclass(frozen=True)
class InlineAudio:
    data: bytes
    mime_type: str


def _positive_int(raw: str) -> Optional[int]:
    try:
        value = int(str(raw).strip())
    except (TypeError, ValueError):
        return None
    return value if value > 0 else None


def parse_pcm_mime_type(mime_type: str) -> Optional[PcmFormat]:
    """Parse `audio/L<bits>;rate=...;channels=...`; None for non-PCM types.

    Any `audio/` format starting with `l` is raw PCM (`audio/L16`, `audio/L`,
    `audio/lpcm`); bits come from the digits right after the `l`, else 16.
    """
    parts = [part.strip() for part in str(mime_type or "").split(";")]
    category, _, fmt_token = parts[0].partition("/")
    if category.strip().lower() != "audio" or not fmt_token.strip().lower().startswith("l"):
        return None
    digits = _LEADING_DIGITS_RE.match(fmt_token.strip()[1:])
    bits = (_positive_int(digits.group(0)) if digits else None) or DEFAULT_BITS_PER_SAMPLE
    sample_rate = DEFAULT_SAMPLE_RATE
    channels = DEFAULT_CHANNELS
    for param in parts[1:]:
        if "=" not in param:
            continue
        key, value = param.split("=", 1)
        key = key.strip().lower()
        parsed = _positive_int(value)
        if parsed is None:
            continue
        if key in {"rate", "samplerate"}:
            sample_rate = parsed
        elif key in {"channels", "channel"}:
            channels = parsed
    return PcmFormat(sample_rate=sample_rate, channels=channels, bits_per_sample=bits)


def create_wav_header(data_length: int, fmt: PcmFormat) -> bytes:
    """Canonical 44-byte RIFF/WAVE header for little-endian PCM data."""
    return struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF",
        36 + int(data_length),
        b"WAVE",
        b"fmt ",
        16,
        1,
        fmt.channels,
        fmt.sample_rate,
        fmt.byte_rate,
        fmt.block_align,
        fmt.bits_per_sample,
        b"data",
        int(data_length),
    )


def normalize_audio_base64(raw: str) -> bytes:
    """Decode base64 audio, tolerating a `data:...;base64,` prefix and whitespace."""
    cleaned = _DATA_URL_PREFIX_RE.sub("", str(raw or "").strip())
    cleaned = re.sub(r"\s+", "", cleaned)
    try:
        return base64.b64decode(cleaned, validate=False)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"Invalid base64 audio payload: {exc}") from exc


def _inline_parts(candidate: Any) -> List[Tuple[str, str]]:
    if not isinstance(candidate, dict):
        return []
    content = candidate.get("content")
    parts = content.get("parts") if isinstance(content, dict) else None
    if not isinstance(parts, list):
        return []
    found: List[Tuple[str, str]] = []
    for part in parts:
        if not isinstance(part, dict):
            continue
        inline = part.get("inlineData") or part.get("inline_data")
        if not isinstance(inline, dict):
            continue
        data = inline.get("data")
        if not isinstance(data, str) or not data.strip():
            continue
        mime_type = inline.get("mimeType") or inline.get("mime_type") or ""
        found.append((data, str(mime_type)))
    return found


def extract_inline_audio(payload: Any) -> Optional[InlineAudio]:
    """Concatenate inline audio parts of the first candidate that carries any."""
    if not isinstance(payload, dict):
        return None
    candidates = payload.get("candidates")
    if not isinstance(candidates, list):
        return None
    for candidate in candidates:
        parts = _inline_parts(candidate)
        if not parts:
            continue
        chunks = [normalize_audio_base64(data) for data, _ in parts]
        mime_type = next((mime for _, mime in parts if mime), "")
        audio = b"".join(chunks)
        if not audio:
            continue
        return InlineAudio(data=audio, mime_type=mime_type)
    return None


def normalize_inline_audio(data: bytes, mime_type: str) -> InlineAudio:
    """Wrap raw PCM in a WAV container; pass anything else through."""
    fmt = parse_pcm_mime_type(mime_type)
    if fmt is None:
        declared = str(mime_type or "").strip() or DEFAULT_AUDIO_MIME_TYPE
        return InlineAudio(data=bytes(data), mime_type=declared)
    return InlineAudio(data=create_wav_header(len(data), fmt) + bytes(data), mime_type="audio/wav")
