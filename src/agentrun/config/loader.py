"""
Configuration loader with deep merge.

Precedence order (lowest to highest):
1. Defaults (defined in the Pydantic schemas)
2. YAML file
3. Environment variables
4. Explicit overrides passed by the caller

The merge is recursive so every key is preserved at every level.
"""

import os
from pathlib import Path
from typing import Any

import yaml

from .schema import AppConfig


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursive dictionary merge.

    Args:
        base: Base dictionary
        override: Dictionary whose values win over base

    Returns:
        New merged dictionary. Override wins on leaf conflicts.

    Example:
        >>> deep_merge({"a": {"b": 1, "c": 2}}, {"a": {"b": 99}, "e": 4})
        {'a': {'b': 99, 'c': 2}, 'e': 4}
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def load_yaml_config(config_path: Path | None) -> dict[str, Any]:
    """Load configuration from a YAML file.

    Args:
        config_path: Path to the YAML file, or None to skip

    Returns:
        Configuration dictionary, empty if there is no file

    Raises:
        FileNotFoundError: If config_path does not exist
    """
    if not config_path:
        return {}

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f)
        return data if data else {}


def load_env_overrides() -> dict[str, Any]:
    """Load overrides from environment variables.

    Supported variables:
        AGENTRUN_MODEL: overrides llm.model
        AGENTRUN_LOG_LEVEL: overrides logging.level
        AGENTRUN_HISTORY_MAX_ENTRIES: overrides history.max_entries
        AGENTRUN_EXPORTER_URL: overrides exporter.base_url and enables export
        AGENTRUN_PUBLIC_KEY: overrides exporter.public_key
        AGENTRUN_GRACE_WINDOW: overrides streaming.grace_window

    Returns:
        Dictionary of overrides
    """
    overrides: dict[str, Any] = {}

    if model := os.environ.get("AGENTRUN_MODEL"):
        overrides.setdefault("llm", {})["model"] = model

    if log_level := os.environ.get("AGENTRUN_LOG_LEVEL"):
        overrides.setdefault("logging", {})["level"] = log_level.lower()

    if max_entries := os.environ.get("AGENTRUN_HISTORY_MAX_ENTRIES"):
        overrides.setdefault("history", {})["max_entries"] = int(max_entries)

    if base_url := os.environ.get("AGENTRUN_EXPORTER_URL"):
        exporter = overrides.setdefault("exporter", {})
        exporter["base_url"] = base_url
        exporter["enabled"] = True

    if public_key := os.environ.get("AGENTRUN_PUBLIC_KEY"):
        overrides.setdefault("exporter", {})["public_key"] = public_key

    if grace := os.environ.get("AGENTRUN_GRACE_WINDOW"):
        overrides.setdefault("streaming", {})["grace_window"] = float(grace)

    return overrides


def load_config(
    config_path: Path | None = None,
    overrides: dict[str, Any] | None = None,
) -> AppConfig:
    """Load and validate the full application configuration.

    Args:
        config_path: Path to the YAML configuration file
        overrides: Nested dictionary applied last (e.g. from an embedding app)

    Returns:
        Validated AppConfig

    Raises:
        FileNotFoundError: If config_path does not exist
        ValidationError: If the final configuration is invalid
    """
    merged = deep_merge(load_yaml_config(config_path), load_env_overrides())
    merged = deep_merge(merged, overrides or {})

    # Pydantic fills in the defaults
    return AppConfig(**merged)
