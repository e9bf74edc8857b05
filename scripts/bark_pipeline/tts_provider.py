#!/usr/bin/env python3
from __future__ import annotations

"""Synthesis contract shared by the execution loop and the Gemini client."""

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from .catalog import WorkItem

DEFAULT_AUDIO_EXTENSION = "wav"

MIME_EXTENSIONS = {
    "audio/wav": "wav",
    "audio/wave": "wav",
    "audio/x-wav": "wav",
    "audio/vnd.wave": "wav",
    "audio/mpeg": "mp3",
    "audio/mp3": "mp3",
    "audio/ogg": "ogg",
    "audio/opus": "ogg",
}


def extension_for_mime_type(mime_type: str, *, fallback: str = DEFAULT_AUDIO_EXTENSION) -> str:
    """File extension for a clip's mime type; parameters like `;rate=` are ignored."""
    base = str(mime_type or "").split(";", 1)[0].strip().lower()
    return MIME_EXTENSIONS.get(base, fallback)


@dataclass(frozen=True)
class TTSAudioResult:
    """One synthesized clip, ready to be written as-is."""

    audio_bytes: bytes
    content_type: str
    file_extension: str
    provider: str
    model: str
    prompt_label: str
    attempts: int


@runtime_checkable
class SynthesisClient(Protocol):
    """What the execution loop needs from a backend.

    Implementations own retries and prompt fallback; admission control stays
    with the caller.
    """

    provider_name: str
    model_name: str

    @property
    def requests_made(self) -> int:
        ...

    @property
    def retries_total(self) -> int:
        ...

    def synthesize(self, item: WorkItem) -> TTSAudioResult:
        ...
