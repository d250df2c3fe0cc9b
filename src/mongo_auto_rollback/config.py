"""Configuration module for Mongo Auto-Rollback.

Config file discovery, in order of precedence:
  1. the `MONGO_AUTO_ROLLBACK_CONFIG_PATH` environment variable,
  2. `.env` in the project root,
  3. environment variables only.

The `Settings` class uses Pydantic's `BaseSettings`, so every field can be set
from the environment or the discovered file. Extra environment variables are
allowed so deployment tooling can share the same file.

How to extend/maintain:
-----------------------
- Add new config fields to the `Settings` class, and document them.
- If you change the config discovery logic, update this docstring.
"""

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# --- Constants ---
DEFAULT_ENV_FILENAME: str = ".env"
CONFIG_ENV_VAR: str = "MONGO_AUTO_ROLLBACK_CONFIG_PATH"
PROJECT_ROOT: Path = Path(__file__).resolve().parent.parent.parent


# --- Config file discovery (no logging) ---
def get_config_path() -> Optional[str]:
    """Determine the config file path to use.

    Returns:
        Optional[str]: Path to config file, or None when only environment
        variables should be used.
    """
    env_path: Optional[str] = os.environ.get(CONFIG_ENV_VAR)
    if env_path and os.path.exists(env_path):
        return env_path
    env_path_file: Path = PROJECT_ROOT / DEFAULT_ENV_FILENAME
    if env_path_file.exists():
        return str(env_path_file)
    return None


CONFIG_PATH: Optional[str] = get_config_path()
if CONFIG_PATH:
    load_dotenv(dotenv_path=CONFIG_PATH, override=True)


class Settings(BaseSettings):
    """Application settings with environment variable support."""

    model_config = SettingsConfigDict(
        env_file=CONFIG_PATH if CONFIG_PATH else None,
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="allow",
    )

    # MongoDB configuration
    MONGODB_URL: str = "mongodb://localhost:27017"
    MONGODB_DATABASE: str = "migrations"
    MONGODB_CONNECTION_TIMEOUT: int = 10000
    MONGODB_SERVER_SELECTION_TIMEOUT: int = 5000

    # Authentication (optional)
    MONGODB_USERNAME: Optional[str] = None
    MONGODB_PASSWORD: Optional[SecretStr] = None

    # Bookkeeping collections, never intercepted
    CHANGELOG_COLLECTION_NAME: str = "changelog"
    LOCK_COLLECTION_NAME: str = "changelog_lock"
    # Unset disables undo logging entirely
    AUTO_ROLLBACK_COLLECTION_NAME: Optional[str] = "auto_rollback"
    # Requires a replica set or mongos
    AUTO_ROLLBACK_USE_TRANSACTIONS: bool = False

    # Logging configuration
    LOG_LEVEL: str = "INFO"
    APP_NAME: str = "mongo-auto-rollback"
    ENV: str = "dev"
    LOKI_ENABLED: bool = False
    LOKI_URL: str = "http://localhost:3100/loki/api/v1/push"
    LOKI_COMPRESS: bool = True

    @field_validator(
        "CHANGELOG_COLLECTION_NAME", "LOCK_COLLECTION_NAME", "AUTO_ROLLBACK_COLLECTION_NAME", mode="before"
    )
    @classmethod
    def valid_collection_name(cls, v, info):
        """Reject names MongoDB would refuse as collection names."""
        if v is None:
            if info.field_name == "AUTO_ROLLBACK_COLLECTION_NAME":
                return v
            raise ValueError(f"{info.field_name} must be set")
        name = str(v).strip()
        if not name:
            if info.field_name == "AUTO_ROLLBACK_COLLECTION_NAME":
                return None
            raise ValueError(f"{info.field_name} must not be empty")
        if "$" in name or "\x00" in name or name.startswith("system."):
            raise ValueError(f"{info.field_name} is not a valid collection name: {name!r}")
        return name

    @field_validator("MONGODB_URL", mode="before")
    @classmethod
    def valid_mongodb_url(cls, v, info):
        if v and not str(v).startswith(("mongodb://", "mongodb+srv://")):
            raise ValueError(f"{info.field_name} must use the mongodb:// or mongodb+srv:// scheme")
        return v

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def normalize_log_level(cls, v):
        return str(v).upper()

    @property
    def auto_rollback_configured(self) -> bool:
        """Check whether an undo-log collection is configured."""
        return bool(self.AUTO_ROLLBACK_COLLECTION_NAME)


# Global settings instance
settings: Settings = Settings()
