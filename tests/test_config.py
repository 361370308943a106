"""
Tests for Configuration Module
==============================

Tests for threshold validation and config loading precedence.
"""

import json
from pathlib import Path

import pytest

from lifecycle_observer.config import (
    CONFIG_FILENAME,
    AlertThresholds,
    ConfigError,
    ObserverConfig,
)

ENV_VARS = (
    "LIFECYCLE_OBSERVER_DATA_DIR",
    "LIFECYCLE_OBSERVER_LOG_LEVEL",
    "LIFECYCLE_OBSERVER_DEDUP_WINDOW_DAYS",
    "LIFECYCLE_OBSERVER_RETENTION_DAYS",
)


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Run in an empty directory with no observer environment variables."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(tmp_path)
    return tmp_path


class TestAlertThresholds:
    """Tests for AlertThresholds defaults and validation."""

    def test_defaults(self):
        t = AlertThresholds()
        assert t.consecutive_failures == 3
        assert t.failure_rate_threshold == 0.30
        assert t.failure_rate_window == 86_400_000
        assert t.avg_duration_multiplier == 3
        assert t.timeout_threshold == 300_000
        assert t.secrets_detected and t.permission_escalation and t.unprotected_branch_push
        assert t.api_failure_rate_threshold == 0.50
        assert t.api_failure_rate_window == 3_600_000
        assert t.rate_limit_hits == 5
        assert t.git_operation_failures == 5
        assert t.git_operation_window == 3_600_000
        assert t.coverage_drop_threshold == 0.05
        assert t.minimum_coverage == 0.70

    def test_partial_override(self):
        t = AlertThresholds.from_dict({"consecutive_failures": 5, "secrets_detected": False})
        assert t.consecutive_failures == 5
        assert t.secrets_detected is False
        assert t.rate_limit_hits == 5

    def test_unknown_key(self):
        with pytest.raises(ConfigError, match="Unknown alert threshold"):
            AlertThresholds.from_dict({"max_failures": 2})

    def test_non_numeric_value(self):
        with pytest.raises(ConfigError):
            AlertThresholds.from_dict({"rate_limit_hits": "five"})

    def test_bool_is_not_numeric(self):
        with pytest.raises(ConfigError):
            AlertThresholds.from_dict({"rate_limit_hits": True})

    def test_toggle_requires_bool(self):
        with pytest.raises(ConfigError):
            AlertThresholds.from_dict({"secrets_detected": 1})

    def test_count_must_be_whole(self):
        with pytest.raises(ConfigError, match="whole number"):
            AlertThresholds.from_dict({"consecutive_failures": 2.5})
        with pytest.raises(ConfigError, match="whole number"):
            AlertThresholds.from_dict({"git_operation_window": 3_600_000.5})

    def test_integral_float_becomes_int(self):
        t = AlertThresholds.from_dict({"rate_limit_hits": 4.0, "avg_duration_multiplier": 2.5})
        assert t.rate_limit_hits == 4
        assert isinstance(t.rate_limit_hits, int)
        assert t.avg_duration_multiplier == 2.5

    def test_ratio_accepts_int(self):
        assert AlertThresholds.from_dict({"minimum_coverage": 1}).minimum_coverage == 1


class TestObserverConfig:
    """Tests for ObserverConfig construction and loading."""

    def test_defaults(self):
        config = ObserverConfig()
        assert config.tool_history_limit == 50
        assert config.global_history_limit == 100
        assert config.dedup_window_days == 7
        assert config.cooldown_ceiling_hours == 24
        assert config.default_confidence == 0.8
        assert config.protected_branches == ["main", "master"]
        assert config.db_path == Path("~/.lifecycle-observer").expanduser() / "data.db"

    def test_from_dict_unknown_key(self):
        with pytest.raises(ConfigError, match="Unknown configuration keys"):
            ObserverConfig.from_dict({"colour": "blue"})

    def test_from_dict_nested_thresholds(self):
        config = ObserverConfig.from_dict({"retention_days": 30, "thresholds": {"minimum_coverage": 0.8}})
        assert config.retention_days == 30
        assert config.thresholds.minimum_coverage == 0.8

    def test_load_defaults_without_file(self, clean_env):
        config = ObserverConfig.load()
        assert config == ObserverConfig()

    def test_load_from_working_directory(self, clean_env):
        (clean_env / CONFIG_FILENAME).write_text(json.dumps({"log_level": "DEBUG"}))
        assert ObserverConfig.load().log_level == "DEBUG"

    def test_load_explicit_missing_path(self, clean_env):
        with pytest.raises(ConfigError, match="not found"):
            ObserverConfig.load(clean_env / "missing.json")

    def test_load_malformed_json(self, clean_env):
        path = clean_env / "broken.json"
        path.write_text("{not json")
        with pytest.raises(ConfigError):
            ObserverConfig.load(path)

    def test_environment_overrides_file(self, clean_env, monkeypatch):
        path = clean_env / "observer.json"
        path.write_text(json.dumps({"data_dir": "/from/file", "retention_days": 10}))
        monkeypatch.setenv("LIFECYCLE_OBSERVER_DATA_DIR", str(clean_env / "env-data"))
        monkeypatch.setenv("LIFECYCLE_OBSERVER_RETENTION_DAYS", "45")
        monkeypatch.setenv("LIFECYCLE_OBSERVER_LOG_LEVEL", "warning")

        config = ObserverConfig.load(path)
        assert config.data_dir == str(clean_env / "env-data")
        assert config.retention_days == 45
        assert config.log_level == "WARNING"

    def test_invalid_integer_environment(self, clean_env, monkeypatch):
        monkeypatch.setenv("LIFECYCLE_OBSERVER_DEDUP_WINDOW_DAYS", "a week")
        with pytest.raises(ConfigError):
            ObserverConfig.load()

    def test_save_and_load(self, clean_env):
        config = ObserverConfig(data_dir=str(clean_env / "data"), dedup_window_days=3)
        config.thresholds.rate_limit_hits = 8
        path = config.save(clean_env / "nested" / "observer.json")

        loaded = ObserverConfig.load(path)
        assert loaded.dedup_window_days == 3
        assert loaded.thresholds.rate_limit_hits == 8
