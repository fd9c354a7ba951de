"""
Configuration loading with multi-layer merging.

Implements the configuration precedence chain:
    defaults < user config < project config < env vars
"""

import json
import logging
import os
from pathlib import Path
from typing import Any

from .models import FieldkitConfig

logger = logging.getLogger(__name__)

# Global cache to avoid reloading config multiple times per process
_config_cache: FieldkitConfig | None = None


def get_xdg_config_home() -> Path:
    """
    Get XDG config home directory.

    Returns:
        Path to config directory (defaults to ~/.config)
    """
    if xdg_home := os.environ.get("XDG_CONFIG_HOME"):
        return Path(xdg_home)
    return Path.home() / ".config"


def get_user_config_path() -> Path:
    """
    Get path to user configuration file.

    Returns:
        Path to ~/.config/fieldkit/config.json (or XDG equivalent)
    """
    return get_xdg_config_home() / "fieldkit" / "config.json"


def get_project_config_path(cwd: Path | None = None) -> Path:
    """
    Get path to project configuration file.

    Args:
        cwd: Working directory to search from (defaults to current directory)

    Returns:
        Path to .fieldkit.json in that directory
    """
    if cwd is None:
        cwd = Path.cwd()
    return cwd / ".fieldkit.json"


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Values in `override` take precedence over values in `base`. Nested
    dicts are merged recursively, everything else is replaced.

    Example:
        >>> deep_merge({"a": 1, "b": {"x": 10}}, {"b": {"y": 20}})
        {'a': 1, 'b': {'x': 10, 'y': 20}}
    """
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def load_json_file(path: Path) -> dict[str, Any] | None:
    """
    Load a JSON file, returning None if it doesn't exist or is invalid.

    Args:
        path: Path to JSON file

    Returns:
        Parsed JSON object, or None
    """
    if not path.exists():
        return None

    try:
        with path.open(encoding="utf-8") as f:
            data = json.load(f)
            if isinstance(data, dict):
                return data
            logger.warning(f"Ignoring config at {path}: top level is not an object")
            return None
    except (json.JSONDecodeError, OSError) as e:
        # Config system should be resilient
        logger.warning(f"Failed to parse config at {path}: {e}")
        return None


def _set_nested(config_dict: dict[str, Any], section: str, key: str, value: Any) -> None:
    if not isinstance(config_dict.get(section), dict):
        config_dict[section] = {}
    config_dict[section][key] = value


def apply_env_overrides(config_dict: dict[str, Any]) -> dict[str, Any]:
    """
    Apply environment variable overrides to configuration.

    Env vars have the highest precedence and override all config files.

    Supported env vars:
        FIELDKIT_MANIFEST_SOURCE - overrides manifest_source
        FIELDKIT_DATA_DIR - overrides data_dir
        FIELDKIT_EXEC_TIMEOUT - overrides execution.timeout_seconds
        FIELDKIT_GRACE_PERIOD - overrides execution.grace_period_seconds
        FIELDKIT_MAX_RETRIES - overrides network.max_retries

    Invalid values are ignored with a warning.
    """
    result = {k: (v.copy() if isinstance(v, dict) else v) for k, v in config_dict.items()}

    if source := os.environ.get("FIELDKIT_MANIFEST_SOURCE"):
        result["manifest_source"] = source

    if data_dir := os.environ.get("FIELDKIT_DATA_DIR"):
        result["data_dir"] = data_dir

    if timeout_str := os.environ.get("FIELDKIT_EXEC_TIMEOUT"):
        try:
            timeout = float(timeout_str)
            if timeout <= 0:
                logger.warning(
                    f"FIELDKIT_EXEC_TIMEOUT must be > 0, got {timeout_str}, ignoring"
                )
            else:
                _set_nested(result, "execution", "timeout_seconds", timeout)
        except ValueError:
            logger.warning(f"Invalid FIELDKIT_EXEC_TIMEOUT value '{timeout_str}', ignoring")

    if grace_str := os.environ.get("FIELDKIT_GRACE_PERIOD"):
        try:
            grace = float(grace_str)
            if grace <= 0:
                logger.warning(f"FIELDKIT_GRACE_PERIOD must be > 0, got {grace_str}, ignoring")
            else:
                _set_nested(result, "execution", "grace_period_seconds", grace)
        except ValueError:
            logger.warning(f"Invalid FIELDKIT_GRACE_PERIOD value '{grace_str}', ignoring")

    if retries_str := os.environ.get("FIELDKIT_MAX_RETRIES"):
        try:
            retries = int(retries_str)
            if retries < 0:
                logger.warning(f"FIELDKIT_MAX_RETRIES must be >= 0, got {retries}, ignoring")
            else:
                _set_nested(result, "network", "max_retries", retries)
        except ValueError:
            logger.warning(f"Invalid FIELDKIT_MAX_RETRIES value '{retries_str}', ignoring")

    return result


def get_default_config() -> dict[str, Any]:
    """
    Get hardcoded default configuration.

    Returns:
        Dictionary with default configuration values
    """
    return {
        "network": {"timeout_seconds": 30.0, "max_retries": 3, "base_delay": 1.0},
        "execution": {"grace_period_seconds": 5.0, "preflight": True},
        "history": {"enabled": True, "max_entries": 50, "usage_stats": True},
    }


def load_config(project_dir: Path | None = None, use_cache: bool = True) -> FieldkitConfig:
    """
    Load configuration with multi-layer merging.

    Configuration precedence (highest to lowest):
        1. Environment variables (FIELDKIT_*)
        2. Project config (.fieldkit.json)
        3. User config (~/.config/fieldkit/config.json)
        4. Hardcoded defaults

    Args:
        project_dir: Directory to load .fieldkit.json from (defaults to cwd)
        use_cache: If True, return cached config from previous load

    Returns:
        Validated FieldkitConfig instance

    Raises:
        pydantic.ValidationError: If the merged config fails validation
    """
    global _config_cache

    if use_cache and _config_cache is not None:
        return _config_cache

    merged = get_default_config()

    if user_config := load_json_file(get_user_config_path()):
        merged = deep_merge(merged, user_config)

    if project_config := load_json_file(get_project_config_path(project_dir)):
        merged = deep_merge(merged, project_config)

    merged = apply_env_overrides(merged)

    config = FieldkitConfig(**merged)

    _config_cache = config

    return config


def clear_cache() -> None:
    """
    Clear the cached configuration.

    Useful for testing or when config files change during execution.
    """
    global _config_cache
    _config_cache = None
