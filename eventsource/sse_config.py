"""Connection configuration: YAML loading, deep merge, interpolation, redaction.

Provides:
- DEFAULT_CONFIG and the validated ConnectionConfig built from it
- {env:VAR} secret interpolation with allowlist enforcement (header values)
- Deep merge for layered config (defaults < file < overrides)
- Header redaction for safe logging (never leak secrets)
"""

from __future__ import annotations

import copy
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, List, Optional, Sequence

import yaml

logger = logging.getLogger("eventsource.config")

# Redaction sentinel
REDACTED = "***REDACTED***"

DEFAULT_CONFIG: Dict[str, Any] = {
    "retry_ms": 3000,
    "max_retry_ms": 30000,
    "backoff_multiplier": 1.0,
    "jitter_percent": 0,
    "max_reconnect_attempts": None,
    "non_retryable_status_codes": [204],
    "headers": {},
    "last_event_id": None,
    "connect_timeout_ms": 5000,
    "read_timeout_ms": None,  # None = wait forever between chunks
    "write_timeout_ms": 30000,
    "pool_timeout_ms": 30000,
}

# Optional top-level section name in YAML files
CONFIG_SECTION = "eventsource"

_CORE_ENV_PATTERNS = [
    re.compile(r"^SSE_"),
    re.compile(r"^EVENTSOURCE_"),
]

_INTERP_RE = re.compile(r"\{env:([^}]+)\}")

# Patterns that indicate sensitive header names
_SENSITIVE_KEY_RE = re.compile(
    r"(auth|key|secret|token|password|credential|bearer|cookie)",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class ConnectionConfig:
    """Validated settings for one EventSource."""

    retry_ms: int = 3000
    max_retry_ms: int = 30000
    backoff_multiplier: float = 1.0
    jitter_percent: float = 0
    max_reconnect_attempts: Optional[int] = None
    non_retryable_status_codes: FrozenSet[int] = frozenset({204})
    headers: Dict[str, str] = field(default_factory=dict)
    last_event_id: Optional[str] = None
    connect_timeout_ms: Optional[int] = 5000
    read_timeout_ms: Optional[int] = None
    write_timeout_ms: Optional[int] = 30000
    pool_timeout_ms: Optional[int] = 30000

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "ConnectionConfig":
        """Build from a (partial) config dict layered over DEFAULT_CONFIG.

        Raises ValueError listing every problem found.
        """
        merged = deep_merge(DEFAULT_CONFIG, raw)
        errors = validate_config(merged)
        if errors:
            raise ValueError("Invalid eventsource config: " + "; ".join(errors))
        return cls(
            retry_ms=int(merged["retry_ms"]),
            max_retry_ms=int(merged["max_retry_ms"]),
            backoff_multiplier=float(merged["backoff_multiplier"]),
            jitter_percent=float(merged["jitter_percent"]),
            max_reconnect_attempts=merged["max_reconnect_attempts"],
            non_retryable_status_codes=frozenset(merged["non_retryable_status_codes"]),
            headers={str(k): str(v) for k, v in merged["headers"].items()},
            last_event_id=merged["last_event_id"],
            connect_timeout_ms=merged["connect_timeout_ms"],
            read_timeout_ms=merged["read_timeout_ms"],
            write_timeout_ms=merged["write_timeout_ms"],
            pool_timeout_ms=merged["pool_timeout_ms"],
        )


# ── Validation ────────────────────────────────────────────────────────


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def validate_config(config: Dict[str, Any]) -> List[str]:
    """Validate a config dict.

    Returns list of error strings (empty = valid).
    """
    errors = []

    for key in ("retry_ms", "max_retry_ms"):
        value = config.get(key)
        if not _is_int(value) or value < 0:
            errors.append(f"'{key}' must be a non-negative integer (ms)")

    multiplier = config.get("backoff_multiplier")
    if not isinstance(multiplier, (int, float)) or isinstance(multiplier, bool) or multiplier < 1:
        errors.append("'backoff_multiplier' must be a number >= 1")

    jitter = config.get("jitter_percent")
    if not isinstance(jitter, (int, float)) or isinstance(jitter, bool) or not 0 <= jitter <= 100:
        errors.append("'jitter_percent' must be between 0 and 100")

    attempts = config.get("max_reconnect_attempts")
    if attempts is not None and (not _is_int(attempts) or attempts < 0):
        errors.append("'max_reconnect_attempts' must be null or a non-negative integer")

    codes = config.get("non_retryable_status_codes")
    if not isinstance(codes, (list, tuple, set, frozenset)) or not all(
        _is_int(c) and 100 <= c <= 599 for c in codes
    ):
        errors.append("'non_retryable_status_codes' must be a list of HTTP status codes")

    headers = config.get("headers")
    if not isinstance(headers, dict):
        errors.append("'headers' must be a mapping")
    elif any(k.lower() == "last-event-id" for k in headers if isinstance(k, str)):
        errors.append("'headers' must not set Last-Event-ID; use 'last_event_id'")

    last_id = config.get("last_event_id")
    if last_id is not None and (not isinstance(last_id, str) or "\0" in last_id):
        errors.append("'last_event_id' must be a string without NULL characters")

    for key in ("connect_timeout_ms", "read_timeout_ms", "write_timeout_ms", "pool_timeout_ms"):
        value = config.get(key)
        if value is not None and (not _is_int(value) or value <= 0):
            errors.append(f"'{key}' must be null or a positive integer (ms)")

    return errors


# ── Env allowlist ─────────────────────────────────────────────────────


def _check_env_allowed(
    var_name: str, extra_patterns: Sequence[re.Pattern] = ()
) -> bool:
    """Check if env var name is in the allowlist."""
    for pattern in _CORE_ENV_PATTERNS:
        if pattern.search(var_name):
            return True
    for pattern in extra_patterns:
        if pattern.search(var_name):
            return True
    return False


# ── Interpolation ─────────────────────────────────────────────────────


def interpolate_value(
    value: str,
    extra_env_patterns: Sequence[re.Pattern] = (),
) -> str:
    """Resolve {env:VAR_NAME} tokens in a string value (allowlisted names only)."""

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        if not _check_env_allowed(var_name, extra_env_patterns):
            raise ValueError(
                f"Environment variable '{var_name}' is not in the allowlist. "
                f"Allowed: ^SSE_.*, ^EVENTSOURCE_.*"
            )
        val = os.environ.get(var_name)
        if val is None:
            raise ValueError(f"Environment variable '{var_name}' is not set")
        return val

    return _INTERP_RE.sub(_replace, value)


def interpolate_config(
    config: Dict[str, Any],
    extra_env_patterns: Sequence[re.Pattern] = (),
) -> Dict[str, Any]:
    """Recursively interpolate all string values in a config dict.

    Returns a new dict with resolved values.
    """
    result = {}
    for key, value in config.items():
        if isinstance(value, str) and _INTERP_RE.search(value):
            result[key] = interpolate_value(value, extra_env_patterns)
        elif isinstance(value, dict):
            result[key] = interpolate_config(value, extra_env_patterns)
        else:
            result[key] = value
    return result


# ── Deep merge ────────────────────────────────────────────────────────


def deep_merge(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    """Deep merge overlay into base. Overlay values win.

    Returns a new dict (base and overlay are not modified).
    """
    result = copy.deepcopy(base)
    for key, value in overlay.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


# ── Loading ───────────────────────────────────────────────────────────


def load_config(
    path: Optional[str] = None,
    overrides: Optional[Dict[str, Any]] = None,
    extra_env_patterns: Sequence[re.Pattern] = (),
) -> ConnectionConfig:
    """Load config: DEFAULT_CONFIG < YAML file < overrides, then interpolate.

    The YAML file may hold the settings at top level or under an
    'eventsource:' section.
    """
    layered: Dict[str, Any] = {}

    if path is not None:
        if not os.path.exists(path):
            raise ValueError(f"Config not found: {path}")
        with open(path) as f:
            loaded = yaml.safe_load(f) or {}
        if not isinstance(loaded, dict):
            raise ValueError(f"Config file must contain a mapping: {path}")
        if isinstance(loaded.get(CONFIG_SECTION), dict):
            loaded = loaded[CONFIG_SECTION]
        layered = deep_merge(layered, loaded)
        logger.debug("Loaded config from %s", path)

    if overrides:
        layered = deep_merge(layered, overrides)

    return ConnectionConfig.from_dict(interpolate_config(layered, extra_env_patterns))


# ── Redaction ─────────────────────────────────────────────────────────


def redact_headers(headers: Dict[str, str]) -> Dict[str, str]:
    """Return a copy of headers with sensitive values redacted."""
    redacted = {}
    for key, value in headers.items():
        if _SENSITIVE_KEY_RE.search(key):
            redacted[key] = REDACTED
        else:
            redacted[key] = value
    return redacted
