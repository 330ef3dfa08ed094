"""Configuration loading for chunkvault."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 3000
    environment: str = "development"
    cors_origins: list[str] = field(default_factory=lambda: ["*"])


@dataclass
class AuthConfig:
    """Shared-secret authentication.

    Every data route requires ``Authorization: Bearer <api_key>``.
    """

    api_key: str = ""


@dataclass
class StorageConfig:
    """Configuration for the chunk database."""

    db_path: str = "~/.chunkvault/chunks.db"
    busy_timeout_ms: int = 5000


@dataclass
class Config:
    server: ServerConfig = field(default_factory=ServerConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)


def _get_env(key: str, default: Any = None) -> Any:
    """Get environment variable with CHUNKVAULT_ prefix."""
    return os.environ.get(f"CHUNKVAULT_{key}", default)


def _parse_origins(value: str | list[str]) -> list[str]:
    """Accept either a YAML list or a comma-separated string."""
    if isinstance(value, str):
        return [origin.strip() for origin in value.split(",") if origin.strip()]
    return list(value)


def _apply_env_overrides(config: Config) -> Config:
    """Apply environment variable overrides to config."""
    # Server overrides
    if host := _get_env("HOST"):
        config.server.host = host
    if port := _get_env("PORT"):
        config.server.port = int(port)
    if environment := _get_env("ENVIRONMENT"):
        config.server.environment = environment
    if origins := _get_env("CORS_ORIGINS"):
        config.server.cors_origins = _parse_origins(origins)

    # Auth overrides
    if api_key := _get_env("API_KEY"):
        config.auth.api_key = api_key

    # Storage overrides
    if db_path := _get_env("DB_PATH"):
        config.storage.db_path = db_path
    if busy_timeout := _get_env("BUSY_TIMEOUT_MS"):
        config.storage.busy_timeout_ms = int(busy_timeout)

    return config


def load_config(config_path: str | Path | None = None) -> Config:
    """Load configuration from YAML file with environment variable overrides.

    Args:
        config_path: Path to YAML config file. If None, uses default config.

    Returns:
        Loaded Config object.
    """
    config = Config()

    if config_path:
        path = Path(config_path)
        if path.exists():
            with open(path) as f:
                data = yaml.safe_load(f) or {}

            # Parse server config
            if "server" in data:
                server_data = data["server"]
                config.server = ServerConfig(
                    host=server_data.get("host", config.server.host),
                    port=server_data.get("port", config.server.port),
                    environment=server_data.get(
                        "environment", config.server.environment
                    ),
                    cors_origins=_parse_origins(
                        server_data.get("cors_origins", config.server.cors_origins)
                    ),
                )

            # Parse auth config
            if "auth" in data:
                config.auth = AuthConfig(
                    api_key=str(data["auth"].get("api_key") or config.auth.api_key)
                )

            # Parse storage config
            if "storage" in data:
                storage_data = data["storage"]
                config.storage = StorageConfig(
                    db_path=storage_data.get("db_path", config.storage.db_path),
                    busy_timeout_ms=storage_data.get(
                        "busy_timeout_ms", config.storage.busy_timeout_ms
                    ),
                )

    # Apply environment variable overrides
    return _apply_env_overrides(config)
