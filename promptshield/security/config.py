"""
Configuration management for template security validation and monitoring.

Provides centralized configuration with environment variable and YAML file
support and validation of configuration values.
"""

import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from .exceptions import SecurityConfigError

ENV_PREFIX = "PROMPTSHIELD_"

WINDOW_MODES = ("cumulative", "sliding")


@dataclass
class SecurityConfig:
    """Configuration for the content analyzer and the security monitor."""

    # Analyzer limits
    max_template_length: int = field(default=50_000)
    max_variable_count: int = field(default=100)
    max_nesting_depth: int = field(default=10)
    high_variable_usage_threshold: int = field(default=50)
    long_line_threshold: int = field(default=1_000)
    max_variable_validation_rules: int = field(default=10)
    extra_reserved_variable_names: List[str] = field(default_factory=list)

    # Alert thresholds
    user_violation_threshold: int = field(default=3)
    user_violation_window_seconds: int = field(default=10 * 60)
    template_violation_threshold: int = field(default=5)
    template_violation_window_seconds: int = field(default=5 * 60)
    window_mode: str = field(default="cumulative")

    # Retention and cleanup
    counter_retention_seconds: int = field(default=24 * 60 * 60)
    resolved_alert_retention_seconds: int = field(default=7 * 24 * 60 * 60)
    cleanup_interval_seconds: int = field(default=60 * 60)

    # Alert detail sanitization
    detail_max_length: int = field(default=100)
    top_offenders_limit: int = field(default=10)

    # Audit dispatch
    audit_queue_size: int = field(default=1_000)
    audit_log_dir: Optional[Path] = field(default=None)

    @classmethod
    def from_env(cls) -> 'SecurityConfig':
        """Create configuration from PROMPTSHIELD_* environment variables."""
        overrides: Dict[str, Any] = {}
        for f in fields(cls):
            raw = os.getenv(ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            overrides[f.name] = _coerce(f.name, raw)
        config = cls(**overrides)
        config.validate()
        return config

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> 'SecurityConfig':
        """Load configuration from a YAML mapping.

        A top-level ``security`` key is honoured so the section can live in a
        shared application config file.
        """
        path = Path(path).expanduser()
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except OSError as e:
            raise SecurityConfigError(f"Cannot read config file {path}: {e}") from e
        except yaml.YAMLError as e:
            raise SecurityConfigError(f"Invalid YAML in config file {path}: {e}") from e

        if not isinstance(data, dict):
            raise SecurityConfigError(f"Config file {path} must contain a mapping")
        if isinstance(data.get("security"), dict):
            data = data["security"]

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise SecurityConfigError(f"Unknown configuration keys: {', '.join(unknown)}")

        if data.get("audit_log_dir") is not None:
            data["audit_log_dir"] = Path(data["audit_log_dir"])

        config = cls(**data)
        config.validate()
        return config

    def validate(self) -> None:
        """Validate configuration values."""
        positive = (
            "max_template_length",
            "max_variable_count",
            "max_nesting_depth",
            "high_variable_usage_threshold",
            "long_line_threshold",
            "user_violation_threshold",
            "user_violation_window_seconds",
            "template_violation_threshold",
            "template_violation_window_seconds",
            "counter_retention_seconds",
            "resolved_alert_retention_seconds",
            "cleanup_interval_seconds",
            "detail_max_length",
            "top_offenders_limit",
            "audit_queue_size",
        )
        for name in positive:
            value = getattr(self, name)
            if not isinstance(value, int) or value <= 0:
                raise SecurityConfigError(f"{name} must be a positive integer")
        if self.max_variable_validation_rules < 0:
            raise SecurityConfigError("max_variable_validation_rules must not be negative")
        if self.window_mode not in WINDOW_MODES:
            raise SecurityConfigError(
                f"window_mode must be one of {', '.join(WINDOW_MODES)}"
            )

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary for logging."""
        data = asdict(self)
        data["audit_log_dir"] = str(self.audit_log_dir) if self.audit_log_dir else None
        return data


def _coerce(name: str, raw: str) -> Any:
    if name == "window_mode":
        return raw.strip().lower()
    if name == "audit_log_dir":
        return Path(raw)
    if name == "extra_reserved_variable_names":
        return [item.strip() for item in raw.split(",") if item.strip()]
    try:
        return int(raw)
    except ValueError as e:
        raise SecurityConfigError(f"{ENV_PREFIX}{name.upper()} must be an integer") from e
