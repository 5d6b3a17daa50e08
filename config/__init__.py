"""Configuration management."""
import os
import yaml
from pathlib import Path

_config = None
_DEFAULT_CONFIG = Path(__file__).parent / "default_config.yaml"

REQUIRED_SECTIONS = [
    "database", "alerts", "analysis", "notifications", "email", "sms",
    "realtime", "scheduler", "reporting", "logging",
]

ENV_OVERRIDES = {
    "ALERTMON_DB_PATH": ("database", "path"),
    "ALERTMON_LOG_LEVEL": ("logging", "level"),
    "ALERTMON_RULES_PATH": ("alerts", "rules_path"),
    "ALERTMON_ANALYSIS_URL": ("analysis", "base_url"),
    "ALERTMON_RULE_SWEEP_SECONDS": ("scheduler", "rule_sweep_seconds"),
}


def load_config(path=None):
    """Load config from YAML, merging defaults with optional overrides."""
    global _config

    with open(_DEFAULT_CONFIG) as f:
        config = yaml.safe_load(f)

    if path:
        if not Path(path).exists():
            raise ValueError(f"Config file not found: {path}")
        with open(path) as f:
            overrides = yaml.safe_load(f) or {}
        if not isinstance(overrides, dict):
            raise ValueError(f"Config file {path} must contain a mapping")
        config = _deep_merge(config, overrides)

    for env_key, config_path in ENV_OVERRIDES.items():
        val = os.environ.get(env_key)
        if val:
            d = config
            for k in config_path[:-1]:
                d = d.setdefault(k, {})
            try:
                d[config_path[-1]] = int(val)
            except ValueError:
                d[config_path[-1]] = val

    _validate_config(config)
    _config = config
    return config


def get_config():
    """Return cached config, loading defaults if needed."""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def _deep_merge(base, override):
    """Recursively merge override into base dict."""
    result = base.copy()
    for key, val in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(val, dict):
            result[key] = _deep_merge(result[key], val)
        else:
            result[key] = val
    return result


def _validate_config(config):
    for section in REQUIRED_SECTIONS:
        if section not in config:
            raise ValueError(f"Missing required config section: {section}")

    if config["scheduler"]["rule_sweep_seconds"] < 10:
        raise ValueError("scheduler.rule_sweep_seconds must be >= 10 seconds")
    if config["alerts"]["retention_days"] < 1:
        raise ValueError("alerts.retention_days must be >= 1")
    if config["notifications"]["channel_timeout"] <= 0:
        raise ValueError("notifications.channel_timeout must be > 0")
    if config["notifications"]["max_retries"] < 0:
        raise ValueError("notifications.max_retries must be >= 0")
    if config["notifications"].get("retry_interval_seconds", 0) < 0:
        raise ValueError("notifications.retry_interval_seconds must be >= 0")
    if not isinstance(config["alerts"].get("device_ids", []), list):
        raise ValueError("alerts.device_ids must be a list")
