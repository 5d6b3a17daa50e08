"""Tests for configuration loading, merging and validation."""
import os
from unittest.mock import patch

import pytest

from config import load_config, get_config, _deep_merge, REQUIRED_SECTIONS


def test_defaults_load():
    config = load_config()
    for section in REQUIRED_SECTIONS:
        assert section in config
    assert config["alerts"]["device_ids"] == ["PUMP_001", "PUMP_002", "PUMP_003"]
    assert config["notifications"]["channel_timeout"] == 30
    assert config["alerts"]["count_suppressed_in_totals"] is False


def test_override_file_is_deep_merged(tmp_path):
    override = tmp_path / "local.yaml"
    override.write_text("notifications:\n  max_retries: 5\nalerts:\n  device_ids: [FAN_01]\n")
    config = load_config(str(override))
    assert config["notifications"]["max_retries"] == 5
    assert config["notifications"]["channel_timeout"] == 30
    assert config["alerts"]["device_ids"] == ["FAN_01"]
    assert config["alerts"]["retention_days"] == 90


def test_missing_override_file_raises():
    with pytest.raises(ValueError, match="not found"):
        load_config("/nonexistent/alertmon.yaml")


def test_env_overrides():
    env = {"ALERTMON_DB_PATH": "/tmp/x.db", "ALERTMON_RULE_SWEEP_SECONDS": "120"}
    with patch.dict(os.environ, env):
        config = load_config()
    assert config["database"]["path"] == "/tmp/x.db"
    assert config["scheduler"]["rule_sweep_seconds"] == 120


@pytest.mark.parametrize("body,message", [
    ("scheduler:\n  rule_sweep_seconds: 5\n", "rule_sweep_seconds"),
    ("alerts:\n  retention_days: 0\n", "retention_days"),
    ("notifications:\n  channel_timeout: 0\n", "channel_timeout"),
    ("notifications:\n  retry_interval_seconds: -1\n", "retry_interval_seconds"),
    ("alerts:\n  device_ids: PUMP_001\n", "device_ids"),
])
def test_validation_errors(tmp_path, body, message):
    override = tmp_path / "bad.yaml"
    override.write_text(body)
    with pytest.raises(ValueError, match=message):
        load_config(str(override))


def test_deep_merge_does_not_mutate_base():
    base = {"a": {"b": 1, "c": 2}}
    merged = _deep_merge(base, {"a": {"b": 9}})
    assert merged == {"a": {"b": 9, "c": 2}}
    assert base == {"a": {"b": 1, "c": 2}}


def test_get_config_returns_last_loaded(tmp_path):
    override = tmp_path / "cached.yaml"
    override.write_text("alerts:\n  retention_days: 7\n")
    loaded = load_config(str(override))
    assert get_config() is loaded
    assert get_config()["alerts"]["retention_days"] == 7
