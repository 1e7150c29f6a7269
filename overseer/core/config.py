"""Configuration loading from `.overseer/config.yaml`.

Example::

    respawn:
      update_prompt: "continue with the next todo"
      send_init: false
      ai_idle_check:
        enabled: true
    scheduler:
      max_concurrent_agents: 3
      max_spawn_depth: 2
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError

from overseer.core.models import RespawnConfig, SchedulerConfig

logger = logging.getLogger(__name__)

CONFIG_DIR = ".overseer"
CONFIG_FILE = "config.yaml"


class ConfigError(Exception):
    """Configuration file is malformed."""

    pass


class OverseerConfig(BaseModel):
    """Top-level configuration."""

    respawn: RespawnConfig = Field(default_factory=RespawnConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)


def config_path(repo_path: str | Path) -> Path:
    return Path(repo_path) / CONFIG_DIR / CONFIG_FILE


def load_config(repo_path: str | Path) -> OverseerConfig:
    """Load configuration for `repo_path`; defaults when no file exists.

    Raises:
        ConfigError: If the file is not valid YAML or fails validation.
    """
    path = config_path(repo_path)
    if not path.exists():
        logger.debug(f"No config at {path}; using defaults")
        return OverseerConfig()

    try:
        with open(path) as f:
            raw: Any = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"{path} must contain a mapping")

    try:
        return OverseerConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {path}: {e}") from e


def write_default_config(repo_path: str | Path, overwrite: bool = False) -> Path:
    """Write a config file populated with every default. Returns its path."""
    path = config_path(repo_path)
    if path.exists() and not overwrite:
        return path
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        yaml.safe_dump(OverseerConfig().model_dump(mode="json"), f, default_flow_style=False, sort_keys=False)
    return path
