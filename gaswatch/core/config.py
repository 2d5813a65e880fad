"""
GasWatch Configuration Loader
=============================

Loads and validates the YAML configuration file.

Every setting has a code default at its point of use, so an empty
``config.yaml`` is valid; the file itself must exist.

Environment overrides:
  GASWATCH_CONFIG       path to the config file
  BLOCKNATIVE_API_KEY   feeds.blocknative.api_key
  GASWATCH_DB_PATH      system.db_path
"""

import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

DEFAULT_CONFIG_PATH = "config/config.yaml"

_NUMERIC_SETTINGS = {
    'feeds': ('chain_id', 'predicted_interval', 'actual_interval', 'timeout_seconds'),
    'retry': ('max_attempts', 'backoff_seconds', 'backoff_multiplier'),
    'buffer': ('window_seconds', 'evict_interval'),
    'batcher': ('flush_interval',),
    'backfill': ('max_backfill', 'concurrency'),
    'query': ('max_points',),
    'retention': ('retention_days', 'sweep_interval', 'vacuum_threshold'),
    'dashboard': ('port',),
}

# Settings where zero is meaningful (port 0 binds an ephemeral port)
_ZERO_ALLOWED = {('dashboard', 'port')}


class ConfigurationError(Exception):
    """Raised when configuration is invalid."""
    pass


def load_yaml(path: str) -> Dict[str, Any]:
    """Load a YAML file."""
    with open(path, 'r', encoding='utf-8') as f:
        return yaml.safe_load(f) or {}


def find_repo_root(start: Optional[Path] = None) -> Path:
    """Locate the repo root by walking upward for known anchors."""
    start_path = (start or Path.cwd()).resolve()
    for current in [start_path, *start_path.parents]:
        if (current / "pyproject.toml").exists() or (current / "config" / "config.yaml").exists():
            return current
    return start_path


def _resolve_path(path: str) -> Path:
    candidate = Path(path)
    if candidate.is_absolute() or candidate.exists():
        return candidate
    repo_root = find_repo_root(Path(__file__).resolve())
    return repo_root / candidate


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load main configuration file and apply environment overrides.

    Args:
        config_path: Path to config.yaml (defaults to $GASWATCH_CONFIG,
            then config/config.yaml)

    Returns:
        Configuration dictionary
    """
    config_path = config_path or os.getenv("GASWATCH_CONFIG") or DEFAULT_CONFIG_PATH
    path = _resolve_path(config_path)
    if not path.exists():
        raise ConfigurationError(f"Config file not found: {config_path}")

    config = load_yaml(str(path))
    if not isinstance(config, dict):
        raise ConfigurationError(f"Config root must be a mapping: {config_path}")

    api_key = os.getenv("BLOCKNATIVE_API_KEY")
    if api_key:
        config.setdefault('feeds', {}).setdefault('blocknative', {})['api_key'] = api_key
    db_path = os.getenv("GASWATCH_DB_PATH")
    if db_path:
        config.setdefault('system', {})['db_path'] = db_path

    validate_config(config)
    return config


def validate_config(config: Dict[str, Any]) -> None:
    """
    Check section types and numeric settings.

    Raises:
        ConfigurationError: on the first invalid value found
    """
    for section, keys in _NUMERIC_SETTINGS.items():
        values = get_section(config, section)
        for key in keys:
            if key not in values:
                continue
            value = values[key]
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ConfigurationError(f"{section}.{key} must be a number, got {value!r}")
            if value < 0 or (value == 0 and (section, key) not in _ZERO_ALLOWED):
                raise ConfigurationError(f"{section}.{key} must be positive, got {value!r}")


def get_section(config: Dict[str, Any], name: str) -> Dict[str, Any]:
    """Get a top-level section, treating a missing or empty one as ``{}``."""
    section = config.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigurationError(f"Config section '{name}' must be a mapping")
    return section


def get_feed_config(config: Dict[str, Any], feed: str) -> Dict[str, Any]:
    """Get configuration for a specific upstream feed."""
    return get_section(config, 'feeds').get(feed) or {}
