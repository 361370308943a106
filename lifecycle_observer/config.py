"""
Configuration Management
========================

Handles loading observer configuration from environment variables and config
files, including the alert thresholds that parameterize alert rule conditions.

Usage:
    from lifecycle_observer.config import ObserverConfig

    config = ObserverConfig.load()
    print(config.thresholds.consecutive_failures)
"""

import os
import json
from dataclasses import dataclass, field, asdict, fields
from pathlib import Path
from typing import Optional, Any

from dotenv import load_dotenv

# Default configuration values
CONFIG_FILENAME = "lifecycle_observer.json"
DEFAULT_DATA_DIR = "~/.lifecycle-observer"
DEFAULT_DB_FILENAME = "data.db"
ENV_PREFIX = "LIFECYCLE_OBSERVER_"


class ConfigError(Exception):
    """Raised when configuration values are missing or malformed."""
    pass


@dataclass
class AlertThresholds:
    """Numeric and boolean knobs that parameterize alert rules."""
    # Tool-level thresholds
    consecutive_failures: int = 3
    failure_rate_threshold: float = 0.30
    failure_rate_window: int = 86_400_000       # 24 hours, ms
    avg_duration_multiplier: float = 3.0
    timeout_threshold: int = 300_000            # 5 minutes, ms

    # Security thresholds
    secrets_detected: bool = True
    permission_escalation: bool = True
    unprotected_branch_push: bool = True

    # API thresholds
    api_failure_rate_threshold: float = 0.50
    api_failure_rate_window: int = 3_600_000    # 1 hour, ms
    rate_limit_hits: int = 5

    # Git thresholds
    git_operation_failures: int = 5
    git_operation_window: int = 3_600_000       # 1 hour, ms

    # Coverage thresholds
    coverage_drop_threshold: float = 0.05
    minimum_coverage: float = 0.70

    @classmethod
    def from_dict(cls, data: dict) -> "AlertThresholds":
        """
        Build thresholds from a (possibly partial) dictionary.

        Raises:
            ConfigError: On unknown keys or values of the wrong kind
        """
        known = {f.name: f for f in fields(cls)}
        values: dict[str, Any] = {}
        for key, value in data.items():
            if key not in known:
                raise ConfigError(f"Unknown alert threshold: {key}")
            default = known[key].default
            if isinstance(default, bool):
                if not isinstance(value, bool):
                    raise ConfigError(f"Threshold {key} must be true or false, got {value!r}")
            elif isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigError(f"Threshold {key} must be numeric, got {value!r}")
            elif isinstance(default, int):
                # Counts and millisecond windows stay integral.
                if isinstance(value, float) and not value.is_integer():
                    raise ConfigError(f"Threshold {key} must be a whole number, got {value!r}")
                value = int(value)
            values[key] = value
        return cls(**values)


@dataclass
class ObserverConfig:
    """Lifecycle observer configuration."""
    data_dir: str = DEFAULT_DATA_DIR
    db_filename: str = DEFAULT_DB_FILENAME
    log_level: str = "INFO"

    # History windows
    tool_history_limit: int = 50
    project_history_limit: int = 50
    global_history_limit: int = 100
    alert_window: int = 50

    # Detection tuning
    dedup_window_days: int = 7
    cooldown_ceiling_hours: int = 24
    default_confidence: float = 0.8

    retention_days: int = 90

    # Notification channels
    console_notifications: bool = True
    file_notifications: bool = True

    protected_branches: list[str] = field(default_factory=lambda: ["main", "master"])
    thresholds: AlertThresholds = field(default_factory=AlertThresholds)

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir).expanduser()

    @property
    def db_path(self) -> Path:
        return self.data_path / self.db_filename

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "ObserverConfig":
        """
        Load configuration from multiple sources in precedence order:
        1. Environment variables (``.env`` is read first)
        2. Config file (explicit path, or lifecycle_observer.json)
        3. Default values

        Raises:
            ConfigError: If the config file is unreadable or holds invalid values
        """
        load_dotenv()

        config: dict[str, Any] = {}

        config_path = Path(path) if path else Path(CONFIG_FILENAME)
        if config_path.exists():
            try:
                with open(config_path, "r") as f:
                    config.update(json.load(f))
            except (OSError, json.JSONDecodeError) as e:
                raise ConfigError(f"Failed to load config file {config_path}: {e}") from e
        elif path:
            raise ConfigError(f"Config file not found: {config_path}")

        # Override with environment variables
        env_data_dir = os.environ.get(f"{ENV_PREFIX}DATA_DIR")
        if env_data_dir:
            config["data_dir"] = env_data_dir
        env_log_level = os.environ.get(f"{ENV_PREFIX}LOG_LEVEL")
        if env_log_level:
            config["log_level"] = env_log_level.upper()
        for key in ("dedup_window_days", "retention_days"):
            raw = os.environ.get(f"{ENV_PREFIX}{key.upper()}")
            if raw:
                try:
                    config[key] = int(raw)
                except ValueError as e:
                    raise ConfigError(f"{ENV_PREFIX}{key.upper()} must be an integer, got {raw!r}") from e

        return cls.from_dict(config)

    @classmethod
    def from_dict(cls, data: dict) -> "ObserverConfig":
        """Create config from a dictionary, validating keys."""
        data = dict(data)
        thresholds = AlertThresholds.from_dict(data.pop("thresholds", {}) or {})
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")
        return cls(thresholds=thresholds, **data)

    def to_dict(self) -> dict:
        return asdict(self)

    def save(self, path: Path) -> Path:
        """Write this configuration as JSON."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)
        return path
