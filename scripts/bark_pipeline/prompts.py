#!/usr/bin/env python3
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List

PERSONA_LINE = "You are Jarvis, a British AI assistant with a sophisticated accent and personality."

PROMPT_LABEL_PRIMARY = "primary"
PROMPT_LABEL_COMPATIBILITY = "compatibility"


@dataclass(frozen=True)
class PromptVariant:
    label: str
    prompt: str


def build_style_prompt(text: str, style: str) -> str:
    """Rich prompt: persona, delivery profile and the exact line to speak."""
    return "\n".join(
        [
            PERSONA_LINE,
            "Your task is to synthesize one short canned bark line exactly as written.",
            "",
            "Delivery profile:",
            str(style or "").strip(),
            "",
            "Rules:",
            "- Keep pacing and expression aligned with the delivery profile.",
            "- Preserve the exact text content.",
            "- Do not add or remove words.",
            "",
            "Text to speak:",
            f'"{text}"',
        ]
    )


def build_compatibility_prompt(text: str) -> str:
    """Terse fallback for models that reject long stylistic prompts."""
    return f"Say this exactly, with a sophisticated British assistant tone: {text}"


def prompt_variants(text: str, style: str) -> List[PromptVariant]:
    """Prompt tiers in the order they are tried."""
    return [
        PromptVariant(label=PROMPT_LABEL_PRIMARY, prompt=build_style_prompt(text, style)),
        PromptVariant(label=PROMPT_LABEL_COMPATIBILITY, prompt=build_compatibility_prompt(text)),
    ]


def estimate_tokens(prompt_text: str) -> int:
    # ~4 chars per token plus a fixed allowance for the audio response.
    return max(1, int(math.ceil(len(prompt_text) / 4.0)) + 80)
