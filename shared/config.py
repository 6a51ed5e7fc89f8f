"""
Shared configuration management for the Hapta data layer.

Settings resolve, highest priority first, from init kwargs, ``HAPTA_*``
environment variables, a ``.env`` file and finally an optional JSON config
file (``hapta.config.json`` in the working directory, or the path named by
``HAPTA_CONFIG_FILE``). Anything not set falls back to the defaults below.
"""

import os
import uuid
from typing import Tuple, Type

from pydantic import Field, SecretStr
from pydantic_settings import (
    BaseSettings,
    JsonConfigSettingsSource,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)


DEFAULT_CONFIG_FILE = "hapta.config.json"


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_prefix="HAPTA_",
        env_file=".env",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = "local"
    log_level: str = "info"
    node_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])

    # Record store
    pocketbase_url: str = "http://127.0.0.1:8090"
    pocketbase_admin_email: str = ""
    pocketbase_admin_password: SecretStr = SecretStr("")
    pocketbase_timeout: float = 10.0

    # Cache sync
    redis_url: str = "redis://localhost:6379/0"
    cache_sync_enabled: bool = False
    cache_sync_channel: str = "hapta:cache-sync"

    # Cache engine
    cache_compression_threshold: int = 1024
    cache_sweep_interval_seconds: float = 60.0
    cache_ttl_mode: str = "medium"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        json_file = os.getenv("HAPTA_CONFIG_FILE", DEFAULT_CONFIG_FILE)
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            JsonConfigSettingsSource(settings_cls, json_file=json_file),
            file_secret_settings,
        )


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int = 8080
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
