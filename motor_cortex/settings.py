"""Runtime settings: built-in defaults overlaid with config/settings.yaml."""

import copy
import logging
import os
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)


_DEFAULTS: dict[str, Any] = {
    "motor": {
        "max_iterations": 20,
        # Iteration cap for attempts after the first.
        "retry_max_iterations": 15,
        "max_attempts": 3,
        "llm_max_retries": 2,
        "llm_retry_backoff_sec": 2.0,
        "max_tokens": 4096,
        "consecutive_failure_threshold": 3,
        "approval_timeout_sec": 900,
        "stale_run_sec": 300,
        "auto_retry": True,
        "auto_ask_on_blocked_domain": True,
        "energy_per_llm_call": 0.01,
    },
    "paths": {
        "workspaces": "data/workspaces",
        "artifacts": "data/artifacts",
        "skills": "data/skills",
    },
    "state": {
        "db_path": "data/motor_state.db",
        "busy_timeout": 5000,
    },
    "tools": {
        "shell_timeout_sec": 60,
        "code_timeout_sec": 30,
        "fetch_timeout_sec": 30,
        "max_fetch_chars": 15000,
    },
    "agents": {
        "motor": {
            "provider": "openai",
            "model": "gpt-4o-mini",
        },
    },
    "providers": {
        "openai": {
            "type": "openai_compatible",
            "api_key_secret": "OPENAI_API_KEY",
        },
    },
    "credentials": {
        "backend": "keyring",
    },
    "logging": {
        "file": "data/logs/motor.log",
        "level": "INFO",
        "log_to_console": False,
        "max_bytes": 10485760,  # 10 MB
        "backup_count": 3,
    },
}


_cached: dict[str, Any] | None = None

CONFIG_DIR_ENV = "MOTOR_CORTEX_CONFIG_DIR"
_SETTINGS_FILE = "settings.yaml"


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    """Fold overlay into base in place; nested sections merge key by key, null values are ignored."""
    for key, value in overlay.items():
        if value is None:
            continue
        current = base.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            base[key] = _deep_merge(current, value)
        else:
            base[key] = value
    return base


def get_default_settings() -> dict[str, Any]:
    return copy.deepcopy(_DEFAULTS)


def get_setting(settings: dict[str, Any], path: str, default: Any = None) -> Any:
    """Look up a dotted key such as 'motor.max_iterations'; default when any segment is missing."""
    node: Any = settings
    for part in path.split("."):
        try:
            node = node[part]
        except (KeyError, TypeError):
            return default
    return node


def reload_settings() -> None:
    """Drop the cached settings so the next load_settings reads the file again."""
    global _cached
    _cached = None


def _resolve_config_dir(config_dir: Path | None) -> Path:
    if config_dir is not None:
        return Path(config_dir)
    env_dir = os.environ.get(CONFIG_DIR_ENV)
    if env_dir:
        return Path(env_dir)
    return Path(__file__).resolve().parent.parent / "config"


def _read_overlay(path: Path) -> dict[str, Any]:
    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    except OSError as e:
        logger.warning("motor_cortex: cannot read %s: %s; using defaults", path, e)
        return {}
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        logger.warning("motor_cortex: invalid YAML in %s: %s; using defaults", path, e)
        return {}
    if data is None:
        return {}
    if not isinstance(data, dict):
        logger.warning("motor_cortex: %s must contain a mapping, got %s", path, type(data).__name__)
        return {}
    return data


def load_settings(config_dir: Path | None = None) -> dict[str, Any]:
    """Return defaults overlaid with <config_dir>/settings.yaml.

    The directory falls back to $MOTOR_CORTEX_CONFIG_DIR, then to the
    project's config/ folder. The result is cached for the process until
    reload_settings() is called.
    """
    global _cached
    if _cached is None:
        path = _resolve_config_dir(config_dir) / _SETTINGS_FILE
        _cached = _deep_merge(get_default_settings(), _read_overlay(path))
    return _cached
