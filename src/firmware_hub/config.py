"""Firmware hub configuration.

Settings are resolved from built-in defaults, then an optional YAML file,
then ``FIRMWARE_HUB_*`` environment variables.
"""

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

ENV_PREFIX = "FIRMWARE_HUB_"

DEFAULT_CONFIG_PATHS = [
    "/etc/firmware-hub/config.yaml",
    "./config/firmware_hub.yaml",
    "~/.config/firmware-hub/config.yaml",
]


class Settings(BaseModel):
    """Runtime configuration for the firmware hub server."""

    # Storage
    database_url: str = Field(
        default="sqlite+aiosqlite:///./firmware.db",
        description="SQLAlchemy async database URL"
    )
    storage_path: str = Field(
        default="./firmware",
        description="Directory holding firmware binaries"
    )

    # Releases
    default_device_class: str = Field(
        default="esp32",
        min_length=1,
        description="Device class used when a request omits one"
    )
    allowed_extension: str = Field(
        default=".bin",
        pattern=r"^\.[A-Za-z0-9]+$",
        description="Only accepted firmware file extension"
    )
    max_artifact_bytes: int = Field(
        default=16 * 1024 * 1024,
        gt=0,
        description="Upper bound on uploaded firmware size"
    )
    download_url_template: str = Field(
        default="/api/firmware/download?device={device_class}&version={version}",
        description="Template for download references handed to devices"
    )

    # Authentication
    auth_enabled: bool = True
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    token_expire_minutes: int = Field(default=60 * 24 * 30, gt=0)

    # Rate limiting
    redis_url: str = "redis://localhost:6379/0"
    rate_limit_enabled: bool = True
    rate_limit_per_minute: int = Field(default=120, gt=0)
    rate_limit_per_hour: int = Field(default=3000, gt=0)

    # Service
    log_level: str = "INFO"
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])


def _load_yaml(config_path: Optional[str]) -> Dict[str, Any]:
    """Load the first readable YAML config file.

    Args:
        config_path: Explicit path, or None to search the default locations

    Returns:
        Parsed mapping, empty if no file was found
    """
    paths = [config_path] if config_path else DEFAULT_CONFIG_PATHS

    for path in paths:
        expanded_path = Path(path).expanduser()
        if not expanded_path.exists():
            continue

        with open(expanded_path, "r") as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ValueError(f"Config file {expanded_path} must contain a mapping")

        logger.info(f"Loaded configuration from {expanded_path}")
        return data

    if config_path:
        raise FileNotFoundError(f"Config file not found: {config_path}")

    return {}


def _env_overrides() -> Dict[str, Any]:
    overrides: Dict[str, Any] = {}

    for name in Settings.model_fields:
        raw = os.environ.get(f"{ENV_PREFIX}{name.upper()}")
        if raw is None:
            continue

        if name == "cors_origins":
            overrides[name] = [origin.strip() for origin in raw.split(",") if origin.strip()]
        else:
            overrides[name] = raw

    return overrides


def load_settings(config_path: Optional[str] = None) -> Settings:
    """Build settings from defaults, YAML file and environment.

    Args:
        config_path: Path to a YAML config file. Falls back to
            ``FIRMWARE_HUB_CONFIG`` and then the default search paths.

    Returns:
        Validated settings
    """
    config_path = config_path or os.environ.get(f"{ENV_PREFIX}CONFIG")

    data = _load_yaml(config_path)
    data.update(_env_overrides())

    return Settings(**data)


@lru_cache
def get_settings() -> Settings:
    """Process-wide settings, loaded once."""
    return load_settings()
