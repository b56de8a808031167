# SPDX-FileCopyrightText: 2025 Roland Knall <rknall@gmail.com>
# SPDX-License-Identifier: GPL-2.0-only
"""Application settings loaded from the environment."""

import logging
from pathlib import Path

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Plugin host settings.

    Every field can be overridden with a ``PLUGINHOST_``-prefixed
    environment variable (e.g. ``PLUGINHOST_LICENSE_SERVICE_URL``) or a
    ``.env`` file.
    """

    model_config = SettingsConfigDict(
        env_prefix="PLUGINHOST_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    host_version: str = "0.1.0"
    log_level: str = "INFO"

    # Plugin discovery
    plugins_dir: Path = Path("./plugins")
    autoload_plugins: bool = True

    # Storage backend
    database_url: str = "sqlite:///./pluginhost.db"

    # License service
    license_service_url: str = "http://localhost:8080"
    license_signing_key: SecretStr = SecretStr("change-me")
    license_request_timeout: float = 10.0
    license_cache_ttl_seconds: float = Field(default=300.0, gt=0)
    license_grace_period_seconds: float = Field(default=24 * 3600.0, ge=0)

    # Runtime
    request_timeout_ms: float = Field(default=5000.0, gt=0)
    http_timeout: float = 30.0
    shutdown_timeout: float = Field(default=5.0, ge=0)


settings = Settings()


def configure_logging(level: str | None = None) -> None:
    """Configure root logging for the host process."""
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
