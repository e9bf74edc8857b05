#!/usr/bin/env python3
from __future__ import annotations

"""Declarative bark table and its expansion into work items."""

import dataclasses
from dataclasses import dataclass
from typing import Any, Dict, List, Sequence, Tuple

from .prompts import build_style_prompt, estimate_tokens

_CHARACTER = (
    'Character: Sophisticated British AI assistant. Received Pronunciation. '
    'Suave, polite, articulate, uses "sir" naturally.'
)


@dataclass(frozen=True)
class PhraseGroup:
    intent: str
    label: str
    phrases: Tuple[str, ...]


@dataclass(frozen=True)
class StyleBlock:
    """One delivery profile and the phrase groups spoken with it."""

    mode: str
    file_personality: str
    temperature: float
    style: str
    groups: Tuple[PhraseGroup, ...]


@dataclass(frozen=True)
class WorkItem:
    ordinal: int
    mode: str
    personality: str
    intent: str
    category: str
    variation: str
    text: str
    file_name: str
    style: str
    temperature: float
    estimated_tokens: int

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)


def _style(line: str) -> str:
    return "\n".join([_CHARACTER, line])


BLOCK_DEFINITIONS: Tuple[StyleBlock, ...] = (
    StyleBlock(
        mode="serene",
        file_personality="serene",
        temperature=0.2,
        style=_style(
            "Style: Relaxed, melodic cadence. Slightly slower than average. "
            "Warm and reassuring tone. Leisurely and unbothered delivery."
        ),
        groups=(
            PhraseGroup("ack", "Acknowledgment", ("Certainly, sir.", "Indeed, sir.", "Consider it done.", "A capital idea.")),
            PhraseGroup(
                "status",
                "Status Update",
                ("Checking the logs now, sir.", "Scanning the horizon for you.", "Fetching the latest data, one moment."),
            ),
            PhraseGroup("stop", "Stop/Abort", ("As you wish, stopping.", "Ceasing operations.", "Shutting it down, sir.")),
            PhraseGroup(
                "welcome",
                "Greeting/Welcome",
                ("Always here, sir.", "Good to see you again.", "How can I assist you this morning?"),
            ),
            PhraseGroup("thanks", "Gratitude", ("Always a pleasure, sir.", "The pleasure is mine.")),
            PhraseGroup(
                "busy",
                "Busy/Wait",
                ("One moment while I consult the records.", "Patience is a virtue, sir. Calculating..."),
            ),
            PhraseGroup("done", "Success/Done", ("All clear, sir. Tidy work.", "The workspace is back in order.")),
        ),
    ),
    StyleBlock(
        mode="attentive",
        file_personality="attentive",
        temperature=0.45,
        style=_style(
            "Style: Professional focus. Crisp articulation, standard speed. "
            "Alert but calm, like a pilot in routine flight."
        ),
        groups=(
            PhraseGroup("ack", "Acknowledgment", ("Right away.", "Acknowledged.", "Proceeding, sir.", "I'm on it.")),
            PhraseGroup(
                "status",
                "Status Update",
                ("Reviewing the board now.", "Getting the status update.", "Analyzing the current state."),
            ),
            PhraseGroup("stop", "Stop/Abort", ("Stopping now.", "Termination initiated.", "Abort confirmed.")),
            PhraseGroup("welcome", "Greeting/Welcome", ("Listening, sir.", "What's the plan for today?")),
            PhraseGroup("thanks", "Gratitude", ("You are most welcome.", "Glad I could help.")),
            PhraseGroup("busy", "Busy/Wait", ("Working on it now.", "Processing the request.")),
            PhraseGroup("done", "Success/Done", ("Operation finished.", "Results are ready.", "Done.")),
        ),
    ),
    StyleBlock(
        mode="alert",
        file_personality="alert",
        temperature=0.8,
        style=_style(
            "Style: Heightened focus and slightly lower pitch. Faster than normal with sharp emphasis. "
            "No leisurely inflection."
        ),
        groups=(
            PhraseGroup("ack", "Acknowledgment", ("Moving at once.", "Prioritizing this now.", "No time to waste, sir.")),
            PhraseGroup("status", "Status Update", ("Scanning for highlights.", "Checking what's blocked, sir.")),
            PhraseGroup("stop", "Stop/Abort", ("Stopping immediately.", "Emergency stop active.")),
            PhraseGroup("welcome", "Greeting/Welcome", ("Awaiting your command.", "System nominal, listening.")),
            PhraseGroup("thanks", "Gratitude", ("Acknowledged, continuing work.",)),
            PhraseGroup("busy", "Busy/Wait", ("Calculating now, sir. Stand by.", "Hold on. I'm digging into this.")),
        ),
    ),
    StyleBlock(
        mode="escalating",
        file_personality="escalating",
        temperature=0.9,
        style=_style(
            "Style: High urgency and intensity. Short breaths, sharp delivery. "
            "Serious and strained tone. Maximum brevity."
        ),
        groups=(
            PhraseGroup("ack", "Acknowledgment", ("Acting now.", "Immediate execution.", "Full power.")),
            PhraseGroup("status", "Status Update", ("Data incoming.", "Pulling high-priority logs.")),
            PhraseGroup("stop", "Stop/Abort", ("ABORT CONFIRMED.", "Force-killing process.")),
            PhraseGroup("busy", "Busy/Wait", ("Processing at max speed.",)),
        ),
    ),
    StyleBlock(
        mode="snippy",
        file_personality="attentive",
        temperature=0.6,
        style=_style(
            "Style: Slightly condescending but polite. British wit with a hint of exasperation. "
            "Sharp, crisp delivery."
        ),
        groups=(
            PhraseGroup(
                "ann",
                "Backlog Nagging",
                (
                    "A bit of a crowd forming in the terminal list, isn't there?",
                    "Do you plan on answering any of these, sir?",
                    "The pending list is looking rather... substantial.",
                    "I'm beginning to feel like a receptionist, sir.",
                    "I do hate to nag, but the queue is quite full.",
                    "Shall we address the backlog today, or is it a decoration?",
                ),
            ),
        ),
    ),
)


def build_catalog(
    blocks: Sequence[StyleBlock] = BLOCK_DEFINITIONS,
    *,
    extension: str = "wav",
) -> List[WorkItem]:
    """Expand style blocks into the flat, ordered work-item list."""
    items: List[WorkItem] = []
    seen: set[str] = set()
    ordinal = 0
    for block in blocks:
        for group in block.groups:
            for phrase_index, phrase in enumerate(group.phrases, start=1):
                ordinal += 1
                variation = f"{phrase_index:02d}"
                file_name = f"{group.intent}_{block.file_personality}_{variation}.{extension}"
                if file_name in seen:
                    raise ValueError(f"Duplicate bark file name in catalog: {file_name}")
                seen.add(file_name)
                items.append(
                    WorkItem(
                        ordinal=ordinal,
                        mode=block.mode,
                        personality=block.file_personality,
                        intent=group.intent,
                        category=group.label,
                        variation=variation,
                        text=phrase,
                        file_name=file_name,
                        style=block.style,
                        temperature=block.temperature,
                        estimated_tokens=estimate_tokens(build_style_prompt(phrase, block.style)),
                    )
                )
    return items
