"""
Agent configuration — file first, environment wins.

Settings come from ~/.keyway/config.yaml when it exists and are then
overridden by KEYWAY_* environment variables, so CI jobs never need
a config file.
"""

from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field

from . import KEYWAY_HOME

logger = logging.getLogger("keyway.config")

DEFAULT_API_URL = "https://api.keyway.sh"
DEFAULT_DASHBOARD_URL = "https://app.keyway.sh"
CONFIG_FILENAME = "config.yaml"

_TRUTHY = ("1", "true", "yes", "on")


class KeywayConfig(BaseModel):
    """Persistent configuration for the local agent."""

    home: Path = Field(default_factory=lambda: Path(KEYWAY_HOME).expanduser())
    api_url: str = DEFAULT_API_URL
    dashboard_url: str = DEFAULT_DASHBOARD_URL
    timeout_seconds: float = 30.0
    max_workers: int = Field(default=8, ge=1, le=64)
    strict_parsing: bool = False
    default_env_file: str = ".env"
    default_environment: str = "development"
    keyring_service: str = "keyway"
    insecure: bool = False
    token: Optional[str] = Field(default=None, repr=False, exclude=True)

    @property
    def audit_log(self) -> Path:
        return self.home / "audit.log"

    @property
    def state_file(self) -> Path:
        return self.home / "state.json"


def _env_flag(name: str) -> Optional[bool]:
    raw = os.environ.get(name)
    if raw is None:
        return None
    return raw.strip().lower() in _TRUTHY


def load_config(home: Optional[Path] = None) -> KeywayConfig:
    """Load configuration from disk and the environment.

    Args:
        home: Override for the agent home directory (~/.keyway).

    Returns:
        KeywayConfig: Merged configuration.
    """
    home_path = (home or Path(KEYWAY_HOME)).expanduser()
    data: dict = {}

    config_file = home_path / CONFIG_FILENAME
    if config_file.exists():
        try:
            data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
            if not isinstance(data, dict):
                raise ValueError("top-level YAML value must be a mapping")
        except (yaml.YAMLError, ValueError, OSError) as exc:
            logger.warning("Failed to load config %s: %s", config_file, exc)
            data = {}
    data.pop("token", None)

    overrides = {
        "api_url": os.environ.get("KEYWAY_API_URL"),
        "dashboard_url": os.environ.get("KEYWAY_DASHBOARD_URL"),
        "token": os.environ.get("KEYWAY_TOKEN") or None,
        "strict_parsing": _env_flag("KEYWAY_STRICT_PARSING"),
        "insecure": _env_flag("KEYWAY_INSECURE"),
    }
    data.update({k: v for k, v in overrides.items() if v is not None})
    data["home"] = home_path

    try:
        return KeywayConfig(**data)
    except ValueError as exc:
        logger.warning("Invalid configuration, using defaults: %s", exc)
        return KeywayConfig(home=home_path, token=overrides["token"])


def is_ci() -> bool:
    """True when running under a CI system (CI=true or CI=1)."""
    return os.environ.get("CI", "").strip().lower() in ("true", "1")


def is_interactive() -> bool:
    """True when a human can answer prompts: not CI and stdin is a TTY."""
    if is_ci():
        return False
    try:
        return sys.stdin.isatty()
    except (AttributeError, ValueError):
        return False
