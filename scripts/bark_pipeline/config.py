#!/usr/bin/env python3
from __future__ import annotations

"""Centralized runtime configuration for the canned-bark generator.

This module maps environment variables and optional CLI overrides into typed
dataclasses used by the admission controller, the synthesis client and the
execution loop. Explicit overrides win over env vars, env vars win over
defaults. Env numbers are clamped to a safe range; CLI numbers that are not
positive are ignored, and the rest only meet the provider caps.
"""

import dataclasses
import hashlib
import json
import math
import os
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from .io_utils import read_jsonc_file

MINUTE_WINDOW_MS = 60_000

DEFAULT_MODEL = "gemini-2.5-flash-preview-tts"
DEFAULT_VOICE = "Charon"
DEFAULT_OUTPUT_ROOT = os.path.join("artifacts", "canned-barks")

API_KEY_ENV_NAMES = (
    "BARKS_GEMINI_API_KEY",
    "GEMINI_API_KEY",
    "GOOGLE_API_KEY",
)
API_KEY_SETTINGS_KEY = "cannedBarks.geminiApiKey"


def _env_str(name: str, default: str) -> str:
    """Read string env var with trim + default fallback."""
    v = os.environ.get(name)
    if v is None or str(v).strip() == "":
        return default
    return str(v).strip()


def _env_int(name: str, default: int) -> int:
    """Read integer env var with defensive fallback."""
    v = os.environ.get(name)
    if v is None or str(v).strip() == "":
        return default
    try:
        value = float(str(v).strip())
    except (TypeError, ValueError):
        return default
    if not math.isfinite(value):
        return default
    return int(math.floor(value))


def _env_bool(name: str, default: bool) -> bool:
    """Read boolean env var from common truthy literals."""
    v = os.environ.get(name)
    if v is None or str(v).strip() == "":
        return default
    return v.strip().lower() in {"1", "true", "yes", "on"}


def _coalesce(value: Any, fallback: Any) -> Any:
    """Return fallback when value is None."""
    return fallback if value is None else value


def _clamp_int(value: int, low: int, high: int) -> int:
    """Clamp integer to inclusive range."""
    return max(low, min(high, value))


def _override_int(
    value: Optional[float],
    *,
    low: Optional[int] = None,
    high: Optional[int] = None,
    allow_zero: bool = False,
) -> Optional[int]:
    """Floor an explicit override; None when absent, non-finite or not positive."""
    if value is None:
        return None
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(numeric) or numeric < 0 or (numeric == 0 and not allow_zero):
        return None
    out = max(0 if allow_zero else 1, int(math.floor(numeric)))
    if low is not None:
        out = max(low, out)
    if high is not None:
        out = min(high, out)
    return out


def timestamp_label(now: Optional[float] = None) -> str:
    """Filesystem-safe UTC timestamp used as the default run name."""
    current = time.time() if now is None else float(now)
    millis = int((current - math.floor(current)) * 1000)
    stamp = time.strftime("%Y-%m-%dT%H-%M-%S", time.gmtime(current))
    return f"{stamp}-{millis:03d}Z"


def normalize_filter_value(raw: Any) -> str:
    return str(raw if raw is not None else "").strip().lower()


def normalize_string_list(values: Sequence[Any]) -> List[str]:
    """Lower-case, trim and de-duplicate values, keeping first-seen order."""
    out: List[str] = []
    for value in values:
        normalized = normalize_filter_value(value)
        if normalized and normalized not in out:
            out.append(normalized)
    return out


def parse_list_value(raw: Any) -> List[str]:
    """Split a CLI/env list on commas, semicolons and newlines."""
    if not isinstance(raw, str):
        return []
    return [part.strip() for part in re.split(r"[\n,;]", raw) if part.strip()]


def minimum_spacing_ms(rpm_limit: int) -> int:
    """Smallest dispatch spacing that keeps a steady stream under the RPM cap."""
    return int(math.ceil(MINUTE_WINDOW_MS / max(1, int(rpm_limit))))


@dataclass(frozen=True)
class LoggingConfig:
    """Logging behavior used by `Logger`."""

    level: str
    heartbeat_seconds: int
    debug_events: bool
    include_event_ids: bool

    @staticmethod
    def from_env() -> "LoggingConfig":
        """Build logging config from environment."""
        return LoggingConfig(
            level=_env_str("LOG_LEVEL", "INFO").upper(),
            heartbeat_seconds=max(1, _env_int("LOG_HEARTBEAT_SECONDS", 15)),
            debug_events=_env_bool("LOG_DEBUG_EVENTS", False),
            include_event_ids=_env_bool("LOG_INCLUDE_EVENT_IDS", True),
        )


@dataclass(frozen=True)
class RunOptions:
    """Resolved configuration for one generator invocation."""

    api_key: str
    model: str
    voice: str
    output_root: str
    run_name: str
    rpm_limit: int
    tpm_limit: int
    rpd_limit: int
    min_delay_ms: int
    timeout_ms: int
    max_retries: int
    max_items: Optional[int]
    only_modes: Tuple[str, ...]
    only_intents: Tuple[str, ...]
    only_personalities: Tuple[str, ...]
    only_files: Tuple[str, ...]
    exclude_files: Tuple[str, ...]
    selection_file: str
    organize: bool
    dry_run: bool
    resume: bool
    debug: bool

    @property
    def run_dir(self) -> str:
        return os.path.join(self.output_root, self.run_name)

    @staticmethod
    def from_env(
        *,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        voice: Optional[str] = None,
        output_root: Optional[str] = None,
        run_name: Optional[str] = None,
        rpm_limit: Optional[int] = None,
        tpm_limit: Optional[int] = None,
        rpd_limit: Optional[int] = None,
        min_delay_ms: Optional[int] = None,
        timeout_ms: Optional[int] = None,
        max_retries: Optional[int] = None,
        max_items: Optional[int] = None,
        only_modes: Sequence[str] = (),
        only_intents: Sequence[str] = (),
        only_personalities: Sequence[str] = (),
        only_files: Sequence[str] = (),
        exclude_files: Sequence[str] = (),
        selection_file: Optional[str] = None,
        organize: bool = False,
        dry_run: bool = False,
        resume: bool = True,
        debug: bool = False,
    ) -> "RunOptions":
        """Build run options from env and optional CLI overrides."""
        # Env values are clamped to the full range. CLI values that are not
        # positive are ignored, and only the caps a CLI user cannot lift apply.
        resolved_rpm = _coalesce(
            _override_int(rpm_limit, high=10),
            _clamp_int(_env_int("BARKS_RPM", 8), 1, 10),
        )
        resolved_tpm = _coalesce(
            _override_int(tpm_limit, high=10_000),
            _clamp_int(_env_int("BARKS_TPM", 8000), 256, 10_000),
        )
        resolved_rpd = _coalesce(
            _override_int(rpd_limit, high=100),
            _clamp_int(_env_int("BARKS_RPD", 90), 1, 100),
        )
        spacing_floor = minimum_spacing_ms(resolved_rpm)
        resolved_min_delay = _coalesce(
            _override_int(min_delay_ms, allow_zero=True),
            _clamp_int(_env_int("BARKS_MIN_DELAY_MS", spacing_floor), 0, 120_000),
        )
        # A spacing below 60s/rpm would only trade the min-delay wait for an RPM wait.
        resolved_min_delay = max(resolved_min_delay, spacing_floor)
        resolved_timeout = _coalesce(
            _override_int(timeout_ms, low=5_000),
            _clamp_int(_env_int("BARKS_TIMEOUT_MS", 120_000), 5_000, 300_000),
        )
        resolved_retries = _coalesce(
            _override_int(max_retries, low=1, high=10),
            _clamp_int(_env_int("BARKS_MAX_RETRIES", 5), 1, 10),
        )

        env_max_items = _env_int("BARKS_MAX_ITEMS", 0)
        resolved_max_items = _coalesce(
            _override_int(max_items),
            env_max_items if env_max_items > 0 else None,
        )

        resolved_output_root = os.path.abspath(
            str(_coalesce(output_root, _env_str("BARKS_OUTPUT_ROOT", DEFAULT_OUTPUT_ROOT)))
        )
        resolved_run_name = str(_coalesce(run_name, _env_str("BARKS_RUN_NAME", ""))).strip()
        if not resolved_run_name:
            resolved_run_name = timestamp_label()

        return RunOptions(
            api_key=str(api_key or "").strip(),
            model=str(model or "").strip() or _env_str("BARKS_MODEL", DEFAULT_MODEL),
            voice=str(voice or "").strip() or _env_str("BARKS_VOICE", DEFAULT_VOICE),
            output_root=resolved_output_root,
            run_name=resolved_run_name,
            rpm_limit=resolved_rpm,
            tpm_limit=resolved_tpm,
            rpd_limit=resolved_rpd,
            min_delay_ms=resolved_min_delay,
            timeout_ms=resolved_timeout,
            max_retries=resolved_retries,
            max_items=resolved_max_items,
            only_modes=tuple(normalize_string_list(list(only_modes))),
            only_intents=tuple(normalize_string_list(list(only_intents))),
            only_personalities=tuple(normalize_string_list(list(only_personalities))),
            only_files=tuple(normalize_string_list(list(only_files))),
            exclude_files=tuple(normalize_string_list(list(exclude_files))),
            selection_file=str(selection_file or "").strip(),
            organize=bool(organize),
            dry_run=bool(dry_run),
            resume=bool(resume),
            debug=bool(debug),
        )

    def to_manifest_dict(self) -> Dict[str, Any]:
        """Options as recorded in the manifest; the API key never leaves memory."""
        payload = dataclasses.asdict(self)
        payload.pop("api_key", None)
        for key in ("only_modes", "only_intents", "only_personalities", "only_files", "exclude_files"):
            payload[key] = list(payload[key])
        return payload


@dataclass(frozen=True)
class ApiKeyResolution:
    key: str
    source: str


def _user_settings_path(env: Mapping[str, str]) -> str:
    app_data = str(env.get("APPDATA", "") or "").strip()
    if app_data:
        return os.path.join(app_data, "Code", "User", "settings.json")
    return os.path.join(os.path.expanduser("~"), ".config", "Code", "User", "settings.json")


def _settings_value(path: str) -> str:
    payload = read_jsonc_file(path)
    if not isinstance(payload, dict):
        return ""
    value = payload.get(API_KEY_SETTINGS_KEY)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return ""


def resolve_api_key(
    explicit: Optional[str] = None,
    *,
    cwd: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
) -> ApiKeyResolution:
    """Resolve API key from CLI, then env vars, then editor settings files."""
    if isinstance(explicit, str) and explicit.strip():
        return ApiKeyResolution(key=explicit.strip(), source="--api-key")
    environ = os.environ if env is None else env
    for name in API_KEY_ENV_NAMES:
        value = environ.get(name)
        if isinstance(value, str) and value.strip():
            return ApiKeyResolution(key=value.strip(), source=f"env:{name}")
    workspace_settings = os.path.join(cwd or os.getcwd(), ".vscode", "settings.json")
    workspace_key = _settings_value(workspace_settings)
    if workspace_key:
        return ApiKeyResolution(key=workspace_key, source=".vscode/settings.json")
    user_key = _settings_value(_user_settings_path(environ))
    if user_key:
        return ApiKeyResolution(key=user_key, source="user settings")
    return ApiKeyResolution(key="", source="none")


def fingerprint_dict(value: Dict[str, Any]) -> str:
    """Return stable SHA-256 hash for a dictionary payload."""
    encoded = json.dumps(value, sort_keys=True, ensure_ascii=True).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


def options_fingerprint(options: RunOptions) -> str:
    """Fingerprint of everything that changes what a run would synthesize."""
    payload = options.to_manifest_dict()
    for volatile in ("run_name", "output_root", "dry_run", "resume", "debug"):
        payload.pop(volatile, None)
    return fingerprint_dict(payload)
