#!/usr/bin/env python3
from __future__ import annotations

"""Catalog narrowing: mode/intent/personality allow-lists and file selectors."""

import os
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Pattern, Sequence, Tuple

from .catalog import WorkItem
from .config import RunOptions, normalize_filter_value, normalize_string_list
from .errors import ConfigurationError
from .io_utils import parse_jsonc, read_text_file_with_fallback

SELECTION_OBJECT_KEYS = ("files", "onlyFiles", "include", "selection", "items", "results")


def wildcard_to_regex(pattern: str) -> Pattern[str]:
    """`*` matches any run, `?` one character; everything else is literal."""
    translated = "".join(
        ".*" if ch == "*" else "." if ch == "?" else re.escape(ch)
        for ch in pattern
    )
    return re.compile(f"^{translated}$", re.IGNORECASE)


@dataclass
class _PatternSelector:
    raw: str
    regex: Pattern[str]
    hits: int = 0


@dataclass
class FileMatcher:
    exact: List[str] = field(default_factory=list)
    patterns: List[_PatternSelector] = field(default_factory=list)
    matched_exact: set[str] = field(default_factory=set)

    @staticmethod
    def build(values: Sequence[Any]) -> "FileMatcher":
        matcher = FileMatcher()
        for entry in normalize_string_list(list(values)):
            if "*" in entry or "?" in entry:
                matcher.patterns.append(_PatternSelector(raw=entry, regex=wildcard_to_regex(entry)))
            else:
                matcher.exact.append(entry)
        return matcher

    @property
    def active(self) -> bool:
        return bool(self.exact or self.patterns)

    def matches(self, file_name: str, *, mark_hits: bool = False) -> bool:
        if not self.active:
            return True
        normalized = normalize_filter_value(file_name)
        if normalized in self.exact:
            if mark_hits:
                self.matched_exact.add(normalized)
            return True
        for selector in self.patterns:
            if selector.regex.match(normalized):
                if mark_hits:
                    selector.hits += 1
                return True
        return False

    def selectors(self) -> List[str]:
        return list(self.exact) + [selector.raw for selector in self.patterns]

    def unmatched(self) -> Dict[str, List[str]]:
        return {
            "exact": [entry for entry in self.exact if entry not in self.matched_exact],
            "patterns": [selector.raw for selector in self.patterns if selector.hits == 0],
        }


@dataclass(frozen=True)
class SelectionSummary:
    modes: Tuple[str, ...]
    intents: Tuple[str, ...]
    personalities: Tuple[str, ...]
    include_files: Tuple[str, ...]
    exclude_files: Tuple[str, ...]
    unmatched_include_selectors: Dict[str, List[str]]
    selection_source: Optional[str] = None
    catalog_size: int = 0
    selected: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "modes": list(self.modes),
            "intents": list(self.intents),
            "personalities": list(self.personalities),
            "include_files": list(self.include_files),
            "exclude_files": list(self.exclude_files),
            "unmatched_include_selectors": {
                "exact": list(self.unmatched_include_selectors.get("exact", [])),
                "patterns": list(self.unmatched_include_selectors.get("patterns", [])),
            },
            "selection_source": self.selection_source,
            "catalog_size": self.catalog_size,
            "selected": self.selected,
        }


@dataclass(frozen=True)
class SelectionInput:
    entries: Tuple[str, ...]
    source: Optional[str]


def _entries_from_structured(parsed: Any) -> Optional[List[str]]:
    if isinstance(parsed, list):
        return [str(entry) for entry in parsed]
    if not isinstance(parsed, dict):
        return None
    collected: List[str] = []
    for key in SELECTION_OBJECT_KEYS:
        candidate = parsed.get(key)
        if not isinstance(candidate, list):
            continue
        for entry in candidate:
            if isinstance(entry, str):
                collected.append(entry)
            elif isinstance(entry, dict) and isinstance(entry.get("fileName"), str):
                collected.append(entry["fileName"])
    return collected or None


def parse_selection_text(raw: str) -> List[str]:
    """Parse selection content as JSON/JSONC first, plain line list otherwise."""
    try:
        structured = _entries_from_structured(parse_jsonc(raw))
    except ValueError:
        structured = None
    if structured is not None:
        return normalize_string_list(structured)
    lines = [line.strip() for line in raw.splitlines()]
    return normalize_string_list(
        [line for line in lines if line and not line.startswith("#") and not line.startswith("//")]
    )


def load_selection_entries(
    path: str,
    *,
    on_fallback: Optional[Callable[[str], None]] = None,
) -> SelectionInput:
    """Read an external selection list; an empty path selects nothing extra.

    `on_fallback` receives the encoding used when the file is not plain UTF-8.
    """
    candidate = str(path or "").strip()
    if not candidate:
        return SelectionInput(entries=(), source=None)
    resolved = os.path.abspath(candidate)
    try:
        raw, _ = read_text_file_with_fallback(resolved, on_fallback=on_fallback)
    except (OSError, RuntimeError) as exc:
        raise ConfigurationError(f"Unable to read selection file {resolved}: {exc}") from exc
    return SelectionInput(entries=tuple(parse_selection_text(raw)), source=resolved)


def apply_selection_filters(
    items: Sequence[WorkItem],
    options: RunOptions,
    selection_entries: Sequence[str] = (),
    *,
    selection_source: Optional[str] = None,
) -> Tuple[List[WorkItem], SelectionSummary]:
    modes = normalize_string_list(list(options.only_modes))
    intents = normalize_string_list(list(options.only_intents))
    personalities = normalize_string_list(list(options.only_personalities))
    include = FileMatcher.build(list(options.only_files) + list(selection_entries))
    exclude = FileMatcher.build(list(options.exclude_files))

    selected: List[WorkItem] = []
    for item in items:
        if modes and normalize_filter_value(item.mode) not in modes:
            continue
        if intents and normalize_filter_value(item.intent) not in intents:
            continue
        if personalities and normalize_filter_value(item.personality) not in personalities:
            continue
        if include.active and not include.matches(item.file_name, mark_hits=True):
            continue
        if exclude.active and exclude.matches(item.file_name):
            continue
        selected.append(item)

    summary = SelectionSummary(
        modes=tuple(modes),
        intents=tuple(intents),
        personalities=tuple(personalities),
        include_files=tuple(include.selectors()),
        exclude_files=tuple(exclude.selectors()),
        unmatched_include_selectors=include.unmatched(),
        selection_source=selection_source,
        catalog_size=len(items),
        selected=len(selected),
    )
    return selected, summary


def limit_items(items: Sequence[WorkItem], max_items: Optional[int]) -> List[WorkItem]:
    if max_items is None:
        return list(items)
    return list(items)[: max(1, int(max_items))]


def format_list_preview(values: Sequence[str], max_items: int = 12) -> str:
    if not values:
        return ""
    if len(values) <= max_items:
        return ",".join(values)
    return f"{','.join(values[:max_items])} ...(+{len(values) - max_items} more)"
