"""
Centralized environment configuration for parcel_vision.

Loads environment variables (optionally from a local .env file) and exposes
the locations the rest of the package reads its settings from.

Environment:
    PARCEL_VISION_CONFIG   Path of the measurement YAML (defaults to the
                           packaged measurement_config.yaml)
    PARCEL_VISION_LOG_DIR  Directory for CLI log files (no file logging if unset)
"""
from __future__ import annotations

import os
from pathlib import Path

from dotenv import load_dotenv

CONFIG_DIR = Path(__file__).resolve().parent
DEFAULT_CONFIG_PATH = CONFIG_DIR / "measurement_config.yaml"

# Priority: package .env > current working directory .env; never overrides the shell
for _env_path in (CONFIG_DIR / ".env", Path.cwd() / ".env"):
    if _env_path.exists():
        load_dotenv(_env_path)
        break


class ConfigError(RuntimeError):
    pass


def get_env(name: str, default: str | None = None) -> str | None:
    """Return the env var value or the provided default without raising."""
    val = os.getenv(name)
    if val is None or val.strip() == "":
        return default
    return val


def measurement_config_path() -> Path:
    """YAML the engine loads when no explicit path is given."""
    override = get_env("PARCEL_VISION_CONFIG")
    return Path(override).expanduser() if override else DEFAULT_CONFIG_PATH


def log_dir() -> Path | None:
    value = get_env("PARCEL_VISION_LOG_DIR")
    return Path(value).expanduser() if value else None
