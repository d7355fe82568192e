"""
Settings for the session bridge.

Loaded once from a YAML file at process start and passed explicitly to the
components that need it.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import yaml

from .errors import ConfigError

DEFAULT_SETTINGS_PATH = "/etc/foreman-cockpit/settings.yml"
DEFAULT_FOREMAN_URL = "https://localhost/"
DEFAULT_LOG_LEVEL = "INFO"

SETTINGS_ENV = "FOREMAN_COCKPIT_SETTINGS"


def get_int_env(name: str, default: int) -> int:
    """Get an integer from environment variable, with fallback to default."""
    value = os.environ.get(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def get_settings_path(override: Optional[str] = None) -> Path:
    """Resolve the settings file path: explicit argument, env var, default."""
    return Path(override or os.environ.get(SETTINGS_ENV) or DEFAULT_SETTINGS_PATH)


@dataclass(frozen=True)
class Settings:
    """Bridge settings."""
    log_level: str = DEFAULT_LOG_LEVEL
    foreman_url: str = DEFAULT_FOREMAN_URL
    ssl_ca_file: Optional[str] = None
    ssl_certificate: Optional[str] = None
    ssl_private_key: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert settings to dictionary."""
        return {
            "log_level": self.log_level,
            "foreman_url": self.foreman_url,
            "ssl_ca_file": self.ssl_ca_file,
            "ssl_certificate": self.ssl_certificate,
            "ssl_private_key": self.ssl_private_key,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Settings":
        """Create settings from dictionary. Unknown keys are ignored."""
        # YAML files written for the Ruby tooling use symbol-style ":key" names
        data = {str(k).lstrip(":"): v for k, v in data.items()}
        return cls(
            log_level=str(data.get("log_level") or DEFAULT_LOG_LEVEL),
            foreman_url=str(data.get("foreman_url") or DEFAULT_FOREMAN_URL),
            ssl_ca_file=data.get("ssl_ca_file"),
            ssl_certificate=data.get("ssl_certificate"),
            ssl_private_key=data.get("ssl_private_key"),
        )

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "Settings":
        """Load settings from file, or return defaults if it does not exist."""
        settings_path = path or get_settings_path()
        if not settings_path.exists():
            return cls()
        try:
            with open(settings_path) as f:
                data = yaml.safe_load(f)
        except (yaml.YAMLError, OSError) as e:
            raise ConfigError(f"Cannot read settings from {settings_path}: {e}") from e
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ConfigError(f"Settings file {settings_path} must contain a mapping")
        return cls.from_dict(data)
