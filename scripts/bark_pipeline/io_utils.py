#!/usr/bin/env python3
from __future__ import annotations

"""I/O helpers shared by the generator modules and entrypoint."""

import json
import os
import re
from typing import Any, Callable, Dict, Optional, Tuple


def read_text_file_with_fallback(
    path: str,
    *,
    on_fallback: Optional[Callable[[str], None]] = None,
) -> Tuple[str, str]:
    """Read text file trying a safe sequence of fallback encodings.

    Returns `(content, encoding_used)`.
    """
    encodings = ["utf-8", "utf-8-sig", "cp1252", "latin-1"]
    last_exc: Exception | None = None
    for enc in encodings:
        try:
            with open(path, "r", encoding=enc) as f:
                data = f.read()
            if enc != "utf-8" and on_fallback is not None:
                on_fallback(enc)
            return data, enc
        except UnicodeDecodeError as exc:
            last_exc = exc
            continue
    raise RuntimeError(f"Failed to decode input file with supported encodings: {last_exc}")


def parse_jsonc(raw: str) -> Any:
    """Parse JSON that may carry comments and trailing commas (editor settings style)."""
    without_block_comments = re.sub(r"/\*[\s\S]*?\*/", "", raw)
    without_line_comments = re.sub(r"(?m)^\s*//.*$", "", without_block_comments)
    without_trailing_commas = re.sub(r",\s*([}\]])", r"\1", without_line_comments)
    return json.loads(without_trailing_commas)


def read_jsonc_file(path: str) -> Any:
    """Load a JSONC file, returning None when missing or unparseable."""
    try:
        raw, _ = read_text_file_with_fallback(path)
        return parse_jsonc(raw)
    except (OSError, RuntimeError, ValueError):
        return None


def atomic_write_json(path: str, payload: Dict[str, Any]) -> None:
    """Write JSON atomically to avoid partial manifest files."""
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    tmp = f"{path}.tmp"
    try:
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False, indent=2, sort_keys=True)
            f.write("\n")
        os.replace(tmp, path)
    except Exception:
        try:
            if os.path.exists(tmp):
                os.remove(tmp)
        except OSError:
            pass
        raise


def atomic_write_bytes(path: str, content: bytes) -> None:
    """Write audio bytes atomically so a crash never leaves a resumable stub."""
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    tmp = f"{path}.tmp"
    try:
        with open(tmp, "wb") as f:
            f.write(content)
        os.replace(tmp, path)
    except Exception:
        try:
            if os.path.exists(tmp):
                os.remove(tmp)
        except OSError:
            pass
        raise
