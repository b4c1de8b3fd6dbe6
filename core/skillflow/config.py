"""Shared skillflow configuration utilities.

Centralises reading of ~/.skillflow/configuration.json and the SKILLFLOW_*
environment overrides. The resulting ``EngineConfig`` is passed explicitly to
the executor, orchestrator and telemetry sink; nothing in the engine reads
configuration on its own.
"""

import json
import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

SKILLFLOW_CONFIG_FILE = Path.home() / ".skillflow" / "configuration.json"

DEFAULT_REQUEST_TIMEOUT_MS = 30_000
DEFAULT_MAX_RETRY_ATTEMPTS = 3
DEFAULT_BACKOFF_BASE_MS = 1_000
DEFAULT_BACKOFF_FACTOR = 2.0
DEFAULT_BACKOFF_CAP_MS = 30_000
DEFAULT_BREAKER_THRESHOLD = 5
DEFAULT_BREAKER_COOLDOWN_MS = 60_000
DEFAULT_TELEMETRY_FLUSH_INTERVAL_MS = 60_000
DEFAULT_TELEMETRY_MAX_BUFFER = 100

# Environment variable -> EngineConfig field
ENV_OVERRIDES = {
    "SKILLFLOW_REQUEST_TIMEOUT_MS": "request_timeout_ms",
    "SKILLFLOW_MAX_RETRY_ATTEMPTS": "max_retry_attempts",
    "SKILLFLOW_BACKOFF_BASE_MS": "backoff_base_ms",
    "SKILLFLOW_BACKOFF_FACTOR": "backoff_factor",
    "SKILLFLOW_BACKOFF_CAP_MS": "backoff_cap_ms",
    "SKILLFLOW_BREAKER_ENABLED": "breaker_enabled",
    "SKILLFLOW_BREAKER_THRESHOLD": "breaker_threshold",
    "SKILLFLOW_BREAKER_COOLDOWN_MS": "breaker_cooldown_ms",
    "SKILLFLOW_TELEMETRY_FLUSH_INTERVAL_MS": "telemetry_flush_interval_ms",
    "SKILLFLOW_TELEMETRY_MAX_BUFFER": "telemetry_max_buffer",
    "SKILLFLOW_TELEMETRY_ENDPOINT": "telemetry_endpoint",
    "SKILLFLOW_TELEMETRY_PATH": "telemetry_path",
    "SKILLFLOW_CAPABILITY_URL": "capability_url",
}


def get_skillflow_config(path: Path | None = None) -> dict[str, Any]:
    """Load skillflow configuration from ~/.skillflow/configuration.json."""
    config_file = path or SKILLFLOW_CONFIG_FILE
    if not config_file.exists():
        return {}
    try:
        with open(config_file, encoding="utf-8-sig") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Ignoring unreadable config file {config_file}: {e}")
        return {}
    return data if isinstance(data, dict) else {}


def _coerce(value: Any, target: Any) -> Any:
    """Coerce a raw config/env value to the type of the field default."""
    if isinstance(target, bool):
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    if isinstance(target, int):
        return int(float(value))
    if isinstance(target, float):
        return float(value)
    return value


# ---------------------------------------------------------------------------
# EngineConfig
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """Tunables for invocation resilience and telemetry."""

    request_timeout_ms: int = DEFAULT_REQUEST_TIMEOUT_MS
    max_retry_attempts: int = DEFAULT_MAX_RETRY_ATTEMPTS
    backoff_base_ms: int = DEFAULT_BACKOFF_BASE_MS
    backoff_factor: float = DEFAULT_BACKOFF_FACTOR
    backoff_cap_ms: int = DEFAULT_BACKOFF_CAP_MS

    breaker_enabled: bool = True
    breaker_threshold: int = DEFAULT_BREAKER_THRESHOLD
    breaker_cooldown_ms: int = DEFAULT_BREAKER_COOLDOWN_MS

    telemetry_flush_interval_ms: int = DEFAULT_TELEMETRY_FLUSH_INTERVAL_MS
    telemetry_max_buffer: int = DEFAULT_TELEMETRY_MAX_BUFFER
    telemetry_endpoint: str = ""
    telemetry_path: str = ""

    capability_url: str = ""
    extra: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        errors = []
        if self.request_timeout_ms <= 0:
            errors.append("request_timeout_ms must be positive")
        if not 1 <= self.max_retry_attempts <= 10:
            errors.append("max_retry_attempts must be between 1 and 10")
        if self.backoff_base_ms < 0 or self.backoff_cap_ms < 0:
            errors.append("backoff delays must not be negative")
        if self.backoff_factor < 1:
            errors.append("backoff_factor must be >= 1")
        if self.breaker_threshold < 1:
            errors.append("breaker_threshold must be >= 1")
        if self.telemetry_max_buffer < 1:
            errors.append("telemetry_max_buffer must be >= 1")
        if errors:
            raise ValueError("Invalid skillflow configuration: " + "; ".join(errors))

    @classmethod
    def load(
        cls,
        path: Path | None = None,
        environ: dict[str, str] | None = None,
        **overrides: Any,
    ) -> "EngineConfig":
        """Build a config from file, then environment, then explicit overrides."""
        env = os.environ if environ is None else environ
        known = {f.name: f for f in fields(cls) if f.name != "extra"}

        values: dict[str, Any] = {}
        extra: dict[str, Any] = {}
        for key, value in get_skillflow_config(path).items():
            if key in known:
                values[key] = value
            else:
                extra[key] = value

        for env_name, field_name in ENV_OVERRIDES.items():
            raw = env.get(env_name)
            if raw not in (None, ""):
                values[field_name] = raw

        unknown = set(overrides) - set(known)
        if unknown:
            raise TypeError(f"Unknown configuration keys: {sorted(unknown)}")
        values.update({k: v for k, v in overrides.items() if v is not None})

        coerced: dict[str, Any] = {}
        for name, value in values.items():
            default = known[name].default
            try:
                coerced[name] = _coerce(value, default)
            except (TypeError, ValueError) as e:
                raise ValueError(f"Invalid value for {name}: {value!r}") from e

        return cls(**coerced, extra=extra)
