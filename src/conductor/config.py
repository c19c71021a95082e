"""YAML configuration for Sprint Conductor runs."""

from __future__ import annotations

import copy
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

__all__ = [
    "ConfigError",
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_CONFIG_TEMPLATE",
    "DEFAULT_EVAL_CRITERIA",
    "default_config",
    "load_config",
    "merge_config",
    "resolve_path",
    "write_config",
]

DEFAULT_CONFIG_NAME = "config.yaml"

DEFAULT_EVAL_CRITERIA = [
    "Clear scope with specific acceptance criteria",
    "Addresses edge cases and error handling",
    "Follows established project patterns",
    "Includes migration strategy if DB changes needed",
]

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "project": {
        "name": "",
        "description": "",
    },
    "models": {
        "default": "gpt-5-mini",
        "base_url": "https://api.openai.com/v1/responses",
        "timeout": 120,
        "max_attempts": 3,
        "retry_delay": 1.0,
        "routes": {},
        "pricing": {},
    },
    "eval_opt": {
        "quality_threshold": 8,
        "max_iterations": 3,
        "generator_task_type": "planning",
        "evaluator_task_type": "architecture",
        "enable_thinking": False,
        "thinking_budget": 2048,
        "criteria": list(DEFAULT_EVAL_CRITERIA),
    },
    "planning": {
        "file_limit": 5,
        "auto_split": True,
        "prefer_parallel": True,
        "default_calibration": 0.5,
        "decompose_task_type": "spot_check",
    },
    "paths": {
        "knowledge": "data/knowledge",
        "estimation": "data/knowledge/estimation-data.json",
        "logs": "data/logs",
    },
}


class ConfigError(ValueError):
    """Raised when a configuration file is missing or malformed."""


def default_config() -> Dict[str, Any]:
    """Return a deep copy of the default configuration template."""
    return copy.deepcopy(DEFAULT_CONFIG_TEMPLATE)


def merge_config(defaults: Mapping[str, Any], overrides: Mapping[str, Any]) -> Dict[str, Any]:
    """Deep-merge ``overrides`` on top of ``defaults`` without mutating either."""
    merged: Dict[str, Any] = copy.deepcopy(dict(defaults))
    for key, value in overrides.items():
        base = merged.get(key)
        if isinstance(base, Mapping) and isinstance(value, Mapping):
            merged[key] = merge_config(base, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_config(config_path: Path) -> Dict[str, Any]:
    """Load YAML configuration from disk merged over the defaults."""
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config: {error}") from error

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping at the top level.")

    return merge_config(DEFAULT_CONFIG_TEMPLATE, data)


def write_config(config_path: Path, config_data: Mapping[str, Any]) -> None:
    """Persist configuration data to disk with stable formatting."""
    config_path.parent.mkdir(parents=True, exist_ok=True)
    with config_path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(dict(config_data), handle, sort_keys=False)


def resolve_path(config: Mapping[str, Any], key: str, base: Path) -> Optional[Path]:
    """Resolve ``paths.<key>`` relative to ``base``; ``None`` when unset."""
    paths_cfg = config.get("paths") or {}
    value = paths_cfg.get(key)
    if not isinstance(value, str) or not value.strip():
        return None
    candidate = Path(value.strip())
    if not candidate.is_absolute():
        candidate = (base / candidate).resolve()
    return candidate
