"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file

Every group has defaults suitable for local development, so the service
boots against a local Redis without any environment at all.
"""

from __future__ import annotations

import os
from pathlib import Path
from urllib.parse import quote

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Determine which environment to load (default: development)
APP_ENV = os.getenv("APP_ENV", "development")

# Project root (so .env resolution doesn't depend on current working directory)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

ENV_FILE_MAP = {
    "development": ".env.development",
    "testing": ".env.testing",
    "staging": ".env.staging",
    "production": ".env.production",
}

_env_filename = ENV_FILE_MAP.get(APP_ENV, ".env.development")
_env_path = PROJECT_ROOT / _env_filename

# Only load from file if it exists (production might inject via env vars only)
_env_file = str(_env_path) if _env_path.is_file() else None


# Load .env file early to populate os.environ before creating nested settings
# This is necessary because Pydantic nested BaseSettings don't inherit env_file
if _env_file:
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=True)


class AppSettings(BaseSettings):
    """Application-wide configuration."""

    name: str = Field(
        "freelance-throttle",
        description="Service name reported by the health endpoint",
    )
    debug: bool = Field(
        False,
        description="Enable debug mode with verbose logging",
    )

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        case_sensitive=False,
    )


class RedisSettings(BaseSettings):
    """Connection settings for the key-value backend.

    ``REDIS_URL`` wins when set; otherwise the URL is assembled from
    ``REDIS_HOST`` and ``REDIS_PORT``.
    """

    url: str | None = Field(
        None,
        description="Full backend URL, e.g. redis://localhost:6379/0",
    )
    host: str = Field("localhost", description="Backend host")
    port: int = Field(6379, description="Backend port", ge=1, le=65535)
    password: str | None = Field(None, description="Backend password")
    db: int = Field(0, description="Logical database index", ge=0)
    connect_timeout_seconds: float = Field(
        2.0,
        description="Socket connect timeout for the backend client",
        gt=0,
    )

    model_config = SettingsConfigDict(
        env_prefix="REDIS_",
        case_sensitive=False,
    )

    def resolved_url(self) -> str:
        """Return the backend URL, building one from host/port if needed."""

        if self.url:
            return self.url
        return f"redis://{quote(self.host, safe='.-_')}:{self.port}"


class CacheSettings(BaseSettings):
    """General-purpose cache configuration."""

    enabled: bool = Field(True, description="Toggle the JSON cache service")
    prefix: str = Field(
        "freelance_cache:",
        description="Key prefix applied to every cache entry",
    )
    default_ttl_seconds: int = Field(
        3600,
        description="TTL used when callers do not pass one",
        ge=0,
    )
    max_retries: int = Field(
        3,
        description="Reconnect attempts before the connection is abandoned",
        ge=0,
    )

    model_config = SettingsConfigDict(
        env_prefix="CACHE_",
        case_sensitive=False,
    )


class RateLimitSettings(BaseSettings):
    """Request throttling configuration."""

    enabled: bool = Field(True, description="Enable per-route rate limiting")
    use_redis: bool = Field(
        True,
        description="Try the shared backend for counters before using memory",
    )
    trust_proxy: bool = Field(
        False,
        description="Derive client IP from X-Forwarded-For when behind a proxy",
    )
    window_ms: int | None = Field(
        None,
        description="Override for the general policy window in milliseconds",
        ge=1000,
    )
    max_requests: int | None = Field(
        None,
        description="Override for the general policy quota",
        ge=1,
    )

    model_config = SettingsConfigDict(
        env_prefix="RATE_LIMIT_",
        case_sensitive=False,
    )


class LogSettings(BaseSettings):
    """Logging output configuration."""

    level: str = Field("INFO", description="Root log level")
    format: str = Field("json", description="json or plain")
    output: str = Field("stdout", description="stdout or file")
    file_path: str | None = Field(None, description="Log file path when output=file")
    max_bytes: int = Field(10_485_760, description="Rotate file after this many bytes (0 disables)")
    backup_count: int = Field(5, description="Rotated files to keep")
    request_id_header: str = Field(
        "X-Request-ID",
        description="Header used to accept and echo the correlation id",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class Settings(BaseSettings):
    """Main application settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.
    Raises validation errors on startup if settings are malformed.
    """

    app_env: str = APP_ENV
    app: AppSettings = Field(default_factory=AppSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    rate_limit: RateLimitSettings = Field(default_factory=RateLimitSettings)
    log: LogSettings = Field(default_factory=LogSettings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


# Nested settings are created via default_factory so env loading works.
settings = Settings()
