"""Settings for storefront."""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .errors import ConfigError, InvalidSchemaVersionError

SCHEMA_VERSION = 1

# Can be overridden via STOREFRONT_DATA_DIR environment variable
_default_data_dir = Path.cwd() / "data"
SETTINGS_FILE = "settings.json"

DEFAULT_API_URL = "http://127.0.0.1:5000/api"
DEFAULT_TIMEOUT = 15.0
DEFAULT_CURRENCY = "INR"


@dataclass
class Settings:
    """Runtime configuration."""

    api_base_url: str = DEFAULT_API_URL
    api_token: str | None = None
    data_dir: Path = field(default_factory=lambda: _default_data_dir)
    timeout: float = DEFAULT_TIMEOUT
    currency: str = DEFAULT_CURRENCY

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": SCHEMA_VERSION,
            "api_base_url": self.api_base_url,
            "api_token": self.api_token,
            "timeout": self.timeout,
            "currency": self.currency,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], data_dir: Path) -> "Settings":
        return cls(
            api_base_url=data.get("api_base_url", DEFAULT_API_URL),
            api_token=data.get("api_token"),
            data_dir=data_dir,
            timeout=float(data.get("timeout", DEFAULT_TIMEOUT)),
            currency=data.get("currency", DEFAULT_CURRENCY),
        )


def _read_settings_file(path: Path) -> dict[str, Any]:
    """
    Read settings.json.

    Raises:
        ConfigError: If the file is not valid JSON.
        InvalidSchemaVersionError: If schema version is unsupported.
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(str(path), f"not valid JSON ({e.msg})")

    if not isinstance(data, dict):
        raise ConfigError(str(path), "expected a JSON object")

    version = data.get("schema_version", SCHEMA_VERSION)
    if version != SCHEMA_VERSION:
        raise InvalidSchemaVersionError(version, SCHEMA_VERSION)
    return data


def load_settings(env: dict[str, str] | None = None) -> Settings:
    """
    Load settings from the data directory's settings.json, then the environment.

    Environment variables take precedence:
    STOREFRONT_DATA_DIR, STOREFRONT_API_URL, STOREFRONT_API_TOKEN,
    STOREFRONT_HTTP_TIMEOUT.
    """
    env = os.environ if env is None else env
    data_dir = Path(env.get("STOREFRONT_DATA_DIR", _default_data_dir))

    settings_path = data_dir / SETTINGS_FILE
    if settings_path.exists():
        settings = Settings.from_dict(_read_settings_file(settings_path), data_dir)
    else:
        settings = Settings(data_dir=data_dir)

    if env.get("STOREFRONT_API_URL"):
        settings.api_base_url = env["STOREFRONT_API_URL"]
    if env.get("STOREFRONT_API_TOKEN"):
        settings.api_token = env["STOREFRONT_API_TOKEN"]
    if env.get("STOREFRONT_HTTP_TIMEOUT"):
        try:
            settings.timeout = float(env["STOREFRONT_HTTP_TIMEOUT"])
        except ValueError:
            raise ConfigError(
                "STOREFRONT_HTTP_TIMEOUT", f"not a number: {env['STOREFRONT_HTTP_TIMEOUT']}"
            )

    settings.api_base_url = settings.api_base_url.rstrip("/")
    return settings
