# hive/config.py
"""
Configuration for Hive.

All configuration flows through this module. Values are loaded from environment
variables (via .env file) and validated with Pydantic. Out-of-range limits are
clamped rather than rejected, so a bad environment never prevents startup.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated, Any, Optional

import structlog
from pydantic import BeforeValidator, Field, model_validator
from pydantic_settings import BaseSettings, NoDecode


logger = structlog.get_logger(__name__)

# Resolve .env relative to the project root (one level above hive/ package),
# so the config works regardless of the user's current working directory.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent
_ENV_FILE = _PROJECT_ROOT / ".env"

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def _coerce_str_list(value: object) -> list[str]:
    """Coerce env-var values into a list of stripped, non-empty strings.

    Accepts:
      - A single str         → ["value"]
      - Comma-separated str  → ["a", "b"]
      - JSON array str       → ["a", "b"]
      - An existing list     → passthrough with str coercion
    """
    if isinstance(value, (list, tuple, set, frozenset)):
        return [str(item).strip() for item in value if str(item).strip()]
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return []
        if stripped.startswith("["):
            try:
                parsed = json.loads(stripped)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, list):
                return _coerce_str_list(parsed)
        if "," in stripped:
            return [part.strip() for part in stripped.split(",") if part.strip()]
        return [stripped]
    return []


# Annotated type for list[str] fields that accept bare values, comma-separated,
# and JSON arrays from environment variables.
StrList = Annotated[list[str], NoDecode, BeforeValidator(_coerce_str_list)]


class OrchestrationConfig(BaseSettings):
    """Limits and defaults for the orchestration engine."""

    # Hard cap on simultaneously running tasks (worker slots).
    max_concurrent_tasks: int = Field(10, alias="HIVE_MAX_CONCURRENT_TASKS")
    # Cap on admitted-but-not-terminal tasks across all batches.
    max_queued_tasks: int = Field(100, alias="HIVE_MAX_QUEUED_TASKS")
    # Seconds; 0 disables the default timeout (per-task timeouts still apply).
    default_timeout: float = Field(0.0, alias="HIVE_DEFAULT_TIMEOUT")
    max_nesting_depth: int = Field(3, alias="HIVE_MAX_NESTING_DEPTH")
    max_retained_batches: int = Field(50, alias="HIVE_MAX_RETAINED_BATCHES")
    shutdown_grace_seconds: float = Field(10.0, alias="HIVE_SHUTDOWN_GRACE_SECONDS")
    capabilities_file: Optional[Path] = Field(None, alias="HIVE_CAPABILITIES_FILE")
    # Capabilities granted to descriptors that declare none.
    default_capabilities: StrList = Field(
        default_factory=list, alias="HIVE_DEFAULT_CAPABILITIES"
    )
    event_queue_size: int = Field(10000, alias="HIVE_EVENT_QUEUE_SIZE")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_limits(self) -> "OrchestrationConfig":
        self.max_concurrent_tasks = max(1, int(self.max_concurrent_tasks))
        self.max_queued_tasks = max(self.max_concurrent_tasks, int(self.max_queued_tasks))
        self.default_timeout = max(0.0, float(self.default_timeout))
        self.max_nesting_depth = max(1, min(10, int(self.max_nesting_depth)))
        self.max_retained_batches = max(1, int(self.max_retained_batches))
        self.shutdown_grace_seconds = max(0.0, float(self.shutdown_grace_seconds))
        self.event_queue_size = max(1, int(self.event_queue_size))
        return self


class LoggingConfig(BaseSettings):
    """Configuration for structured logging output."""

    level: str = Field("WARNING", alias="HIVE_LOG_LEVEL")
    json_output: bool = Field(False, alias="HIVE_LOG_JSON")

    model_config = {"env_file": _ENV_FILE, "extra": "ignore", "populate_by_name": True}

    @model_validator(mode="after")
    def normalize_level(self) -> "LoggingConfig":
        level = str(self.level).strip().upper()
        if level not in _LOG_LEVELS:
            logger.debug("config.invalid_log_level", value=self.level, coerced_to="WARNING")
            level = "WARNING"
        self.level = level
        return self


class HiveConfig:
    """
    Master configuration that composes all subsystem configs.

    Every component receives its config from here. No global state, no hidden
    settings.
    """

    def __init__(self, **orchestration_overrides: Any):
        self.orchestration = OrchestrationConfig(**orchestration_overrides)
        self.logging = LoggingConfig()
        self._resolve_paths()

    def _resolve_paths(self) -> None:
        """Resolve a relative capabilities file against the project root."""
        path = self.orchestration.capabilities_file
        if path is not None and not path.is_absolute():
            self.orchestration.capabilities_file = (_PROJECT_ROOT / path).resolve()

    def to_dict(self) -> dict[str, Any]:
        """Effective configuration as plain JSON-compatible data."""
        return {
            "orchestration": json.loads(self.orchestration.model_dump_json()),
            "logging": self.logging.model_dump(),
        }

    def __repr__(self) -> str:
        return (
            f"HiveConfig(max_concurrent={self.orchestration.max_concurrent_tasks}, "
            f"max_queued={self.orchestration.max_queued_tasks}, "
            f"max_depth={self.orchestration.max_nesting_depth})"
        )
