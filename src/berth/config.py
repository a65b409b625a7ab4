"""Configuration loading for berth.

Reads a YAML config file (default ``.berth/config.yaml``) into pydantic
models. The ``sandbox`` section maps onto ``SandboxConfig``.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator

from berth.log_levels import normalize_log_level
from berth.sandbox.config import SandboxConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(".berth/config.yaml")
REGISTRY_FILENAME = "containers.db"


class BerthConfig(BaseModel):
    """Top-level berth configuration (matches .berth/config.yaml)."""

    sandbox: SandboxConfig = Field(default_factory=SandboxConfig)
    state_dir: str = ".berth/state"  # holds the container registry
    log_level: str = "info"

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, v: str) -> str:
        return normalize_log_level(v)

    @property
    def registry_path(self) -> Path:
        return Path(self.state_dir) / REGISTRY_FILENAME


def load_config(config_path: Path = DEFAULT_CONFIG_PATH) -> BerthConfig:
    """Load berth configuration from a YAML file.

    Args:
        config_path: Path to the config file.

    Returns:
        Validated BerthConfig.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        pydantic.ValidationError: If config validation fails.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"berth config not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    config = BerthConfig(**raw)

    # Environment variable overrides for deployment
    state_dir = os.environ.get("BERTH_STATE_DIR")
    if state_dir:
        config.state_dir = state_dir

    log_level = os.environ.get("BERTH_LOG_LEVEL")
    if log_level:
        config.log_level = normalize_log_level(log_level, fallback=config.log_level)

    image = os.environ.get("BERTH_SANDBOX_IMAGE")
    if image:
        config.sandbox.docker.image = image

    logger.info(
        "Loaded berth config: scope=%s image=%s",
        config.sandbox.scope.value,
        config.sandbox.docker.image,
    )
    return config
