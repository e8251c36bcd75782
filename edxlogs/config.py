"""
Formatter configuration
─────────────────────────────────────────────────────────────────────────────
Settings come from three places, later ones winning:

  1. Defaults on FormatterConfig
  2. YAML file (config/formatter.yaml)
  3. EDXLOGS_* environment variables, then explicit CLI overrides

The resulting object is frozen and passed explicitly to every stage.
"""

from __future__ import annotations

import os
import logging
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

ROOT = Path(__file__).parent.parent
DEFAULT_CONFIG_PATH = ROOT / "config" / "formatter.yaml"

EXTRACTION_STRATEGIES = ("positional", "structured")

_BOOL_KEYS = {
    "keep_non_content",
    "keep_problem_server_events",
    "keep_ancillary_video_events",
    "cap_periods",
    "skip_completed",
}
_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


class ConfigError(ValueError):
    """Raised for configuration values that would make the whole run invalid."""
    pass


@dataclass(frozen=True)
class FormatterConfig:
    session_threshold: float = 60.0
    keep_non_content: bool = False
    keep_problem_server_events: bool = False
    keep_ancillary_video_events: bool = False
    cap_periods: bool = True
    extraction: str = "positional"
    workers: int = 1
    user_timeout: Optional[float] = None
    skip_completed: bool = False
    session_sentinel: str = "lastsession"
    zero_subdir: str = "zeroEvents"
    unusable_subdir: str = "noEventsProc"

    def __post_init__(self):
        for key in _BOOL_KEYS:
            value = getattr(self, key)
            if not isinstance(value, bool):
                raise ConfigError(f"invalid '{key}' specification: expected true/false, got {value!r}")
        if isinstance(self.session_threshold, bool) or not isinstance(self.session_threshold, (int, float)):
            raise ConfigError(f"session_threshold must be a number of minutes, got {self.session_threshold!r}")
        if self.session_threshold <= 0:
            raise ConfigError(f"session_threshold must be positive, got {self.session_threshold}")
        if self.extraction not in EXTRACTION_STRATEGIES:
            raise ConfigError(
                f"extraction must be one of {', '.join(EXTRACTION_STRATEGIES)}, got {self.extraction!r}"
            )
        if isinstance(self.workers, bool) or not isinstance(self.workers, int) or self.workers < 1:
            raise ConfigError(f"workers must be a positive integer, got {self.workers!r}")
        if self.user_timeout is not None and (
            isinstance(self.user_timeout, bool)
            or not isinstance(self.user_timeout, (int, float))
            or self.user_timeout <= 0
        ):
            raise ConfigError(f"user_timeout must be a positive number of seconds, got {self.user_timeout!r}")
        if not self.session_sentinel:
            raise ConfigError("session_sentinel must not be empty")

    def with_overrides(self, **overrides: Any) -> "FormatterConfig":
        """Return a copy with the non-None overrides applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        unknown = set(changes) - {f.name for f in fields(self)}
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")
        return replace(self, **changes)


def parse_bool(name: str, value: Any) -> bool:
    """Accept real booleans and the usual string spellings; anything else is fatal."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
    raise ConfigError(f"invalid '{name}' specification: expected true/false, got {value!r}")


def _coerce(name: str, value: Any) -> Any:
    if value is None:
        return None
    if name in _BOOL_KEYS:
        return parse_bool(name, value)
    if name in ("session_threshold", "user_timeout") and isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            raise ConfigError(f"{name} must be numeric, got {value!r}") from None
    if name == "workers" and isinstance(value, str):
        try:
            return int(value)
        except ValueError:
            raise ConfigError(f"workers must be an integer, got {value!r}") from None
    return value


def _env_overrides() -> Dict[str, Any]:
    overrides = {}
    for f in fields(FormatterConfig):
        raw = os.getenv(f"EDXLOGS_{f.name.upper()}")
        if raw is not None and raw != "":
            overrides[f.name] = _coerce(f.name, raw)
    return overrides


def load_config(config_path: Optional[str] = None, **overrides: Any) -> FormatterConfig:
    """
    Build the run configuration.

    Args:
        config_path: YAML file; the packaged default is used when omitted and
            silently skipped if it does not exist.
        overrides: explicit values (usually CLI flags); None means "not set".
    """
    path = Path(config_path) if config_path else DEFAULT_CONFIG_PATH
    values: Dict[str, Any] = {}
    if path.exists():
        with open(path, "r") as f:
            raw = yaml.safe_load(f) or {}
        if not isinstance(raw, dict):
            raise ConfigError(f"Configuration file {path} must contain a mapping")
        section = raw.get("formatter", raw)
        values.update({k: _coerce(k, v) for k, v in section.items()})
        logger.info(f"Loaded configuration from {path}")
    elif config_path:
        raise ConfigError(f"Configuration file not found: {config_path}")

    values.update(_env_overrides())
    values.update({k: _coerce(k, v) for k, v in overrides.items() if v is not None})

    known = {f.name for f in fields(FormatterConfig)}
    unknown = set(values) - known
    if unknown:
        raise ConfigError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")
    return FormatterConfig(**{k: v for k, v in values.items() if v is not None})
