"""
Configuration Loader
~~~~~~~~~~~~~~~~~~~~

Loads and validates a zerup-guard YAML file, merging it over the
defaults. The file is looked up from an explicit path, then the
``ZERUP_GUARD_CONFIG`` environment variable, then ``/etc/zerup/guard.yaml``.
"""

from __future__ import annotations

import logging
import os
from typing import Any

import yaml
from pydantic import ValidationError

from zerup_guard.config.defaults import DEFAULT_CONFIG
from zerup_guard.config.schema import GuardConfig
from zerup_guard.exceptions import (
    ConfigFileNotFoundError,
    ConfigValidationError,
)

__all__ = ["load_config", "load_config_from_dict", "find_config", "CONFIG_ENV_VAR"]

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "ZERUP_GUARD_CONFIG"
SYSTEM_CONFIG_PATH = "/etc/zerup/guard.yaml"


def _deep_merge(base: dict, override: dict) -> dict:
    """Deep merge two dicts, with override taking precedence."""
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def find_config(path: str | None = None) -> str | None:
    """
    Resolve which config file to load.

    Returns:
        The explicit path or the env var path (even if missing, so the
        caller gets a clear error), else the system path if it exists,
        else None.
    """
    if path:
        return path
    env_path = os.environ.get(CONFIG_ENV_VAR)
    if env_path:
        return env_path
    if os.path.exists(SYSTEM_CONFIG_PATH):
        return SYSTEM_CONFIG_PATH
    return None


def load_config(path: str) -> GuardConfig:
    """
    Load configuration from a YAML file.

    Merges user config with defaults and validates via Pydantic.

    Args:
        path: Path to the YAML configuration file.

    Returns:
        Validated GuardConfig instance.

    Raises:
        ConfigFileNotFoundError: If the file doesn't exist.
        ConfigValidationError: If the config fails validation.
    """
    if not os.path.exists(path):
        raise ConfigFileNotFoundError(f"Configuration file not found: {path}")

    try:
        with open(path, encoding="utf-8") as f:
            user_config = yaml.safe_load(f) or {}
    except yaml.YAMLError as exc:
        raise ConfigValidationError(
            f"Invalid YAML in configuration file: {exc}"
        ) from exc

    if not isinstance(user_config, dict):
        raise ConfigValidationError(
            f"Configuration file {path} must contain a mapping, "
            f"got {type(user_config).__name__}"
        )

    logger.debug("Loaded configuration from %s", path)
    return load_config_from_dict(user_config)


def load_config_from_dict(data: dict[str, Any]) -> GuardConfig:
    """
    Load configuration from a dictionary, merging with defaults.

    Args:
        data: Configuration dictionary.

    Returns:
        Validated GuardConfig instance.

    Raises:
        ConfigValidationError: If validation fails.
    """
    merged = _deep_merge(DEFAULT_CONFIG, data)

    try:
        return GuardConfig(**merged)
    except ValidationError as exc:
        raise ConfigValidationError(f"Configuration validation failed: {exc}") from exc
