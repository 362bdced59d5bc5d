"""Application configuration using Pydantic Settings.

Configuration is environment-aware:
- APP_ENV determines which .env file to load
- Supports: development, testing, staging, production
- Each environment has its own .env.{environment} file
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Determine which environment to load (default: development)
APP_ENV = os.getenv("APP_ENV", "development")

# Project root (so .env resolution doesn't depend on current working directory)
PROJECT_ROOT = Path(__file__).resolve().parents[2]

# Map environments to their respective .env files (relative to PROJECT_ROOT)
ENV_FILE_MAP = {
    "development": ".env.development",
    "testing": ".env.testing",
    "staging": ".env.staging",
    "production": ".env.production",
}

# Select the .env file for the current environment
_env_filename = ENV_FILE_MAP.get(APP_ENV, ".env.development")
_env_path = PROJECT_ROOT / _env_filename

# Only load from file if it exists (production might inject via env vars only)
_env_file = str(_env_path) if _env_path.is_file() else None


# Load .env file early to populate os.environ before creating nested settings
# This is necessary because Pydantic nested BaseSettings don't inherit env_file
if _env_file:
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=True)


RateLimitAlgorithm = Literal["fixed", "sliding", "token-bucket"]
StoreBackend = Literal["memory", "redis"]


def _build_admission_settings() -> "AdmissionSettings":
    """Build admission settings from environment."""

    return AdmissionSettings()


def _build_store_settings() -> "StoreSettings":
    """Build key store settings from environment."""

    return StoreSettings()


def _build_log_settings() -> "LogSettings":
    """Build logging settings from environment."""

    return LogSettings()


class AdmissionSettings(BaseSettings):
    """Rate limiting and idempotency configuration.

    Token bucket capacity and refill rate fall back to ``limit`` and
    ``limit / window_seconds`` when left unset.
    """

    enabled: bool = Field(
        True,
        description="Enable rate limiting and idempotency handling on inbound requests",
    )
    algorithm: RateLimitAlgorithm = Field(
        "fixed",
        description="Rate limiting algorithm: fixed, sliding or token-bucket",
    )
    limit: int = Field(
        60,
        description="Maximum number of requests allowed per window (per limiting key)",
        ge=1,
    )
    window_seconds: float = Field(
        60.0,
        description="Rate limit window size in seconds",
        gt=0,
    )
    bucket_capacity: int | None = Field(
        None,
        description="Token bucket capacity (defaults to limit)",
        ge=1,
    )
    refill_rate: float | None = Field(
        None,
        description="Token bucket refill rate in tokens per second (defaults to limit / window)",
        gt=0,
    )
    idempotency_ttl_seconds: float = Field(
        86400.0,
        description="How long idempotency records are kept before the key becomes claimable again",
        gt=0,
    )
    pending_wait_timeout_seconds: float = Field(
        10.0,
        description="How long a duplicate request waits for an in-flight owner (0 = answer immediately)",
        ge=0,
    )
    pending_poll_interval_seconds: float = Field(
        0.05,
        description="Interval between re-reads of a pending idempotency record",
        gt=0,
    )
    rate_limit_fail_open: bool = Field(
        True,
        description="Admit requests when the key store is unreachable during rate limiting",
    )
    idempotency_fail_open: bool = Field(
        False,
        description="Run handlers without deduplication when the key store is unreachable",
    )
    conflict_status_code: Literal[400, 409, 422] = Field(
        409,
        description="HTTP status returned when an idempotency key is reused with a different payload",
    )
    include_headers: bool = Field(
        True,
        description="Include X-RateLimit-* and Retry-After headers on responses",
    )
    exempt_paths: list[str] = Field(
        default_factory=lambda: ["/health", "/health/ready"],
        description="Paths that bypass rate limiting and idempotency handling",
    )
    trust_forwarded_for: bool = Field(
        False,
        description="Use the first X-Forwarded-For hop as client IP (only behind a trusted proxy)",
    )

    model_config = SettingsConfigDict(
        env_prefix="ADMISSION_",
        case_sensitive=False,
    )


class StoreSettings(BaseSettings):
    """Key store backend configuration."""

    backend: StoreBackend = Field(
        "memory",
        description="Key store backend: memory (single instance) or redis (shared)",
    )
    redis_url: str | None = Field(
        None,
        description="Redis connection URL (required for the redis backend)",
    )
    socket_timeout_seconds: float = Field(
        2.0,
        description="Socket timeout for network store operations",
        gt=0,
    )
    sweep_interval_seconds: float = Field(
        30.0,
        description="Minimum interval between expired-entry sweeps of the in-memory store",
        ge=0,
    )

    model_config = SettingsConfigDict(
        env_prefix="STORE_",
        case_sensitive=False,
    )


class LogSettings(BaseSettings):
    """Logging configuration."""

    level: str = Field("INFO", description="Root log level")
    format: Literal["json", "plain"] = Field("json", description="Log output format")
    output: Literal["stdout", "file"] = Field("stdout", description="Log destination")
    file_path: str | None = Field(None, description="Log file path when output=file")
    max_bytes: int = Field(
        10 * 1024 * 1024,
        description="Rotate the log file after this many bytes (0 disables rotation)",
        ge=0,
    )
    backup_count: int = Field(5, description="Number of rotated log files to keep", ge=0)
    request_id_header: str = Field(
        "X-Request-ID",
        description="Header used to propagate the request correlation id",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class Settings(BaseSettings):
    """Main application settings container.

    Automatically loads from the appropriate .env.{APP_ENV} file.
    Raises validation errors on startup if settings are invalid.

    Environments:
    - development: Local development
    - testing: Automated tests (uses .env.testing)
    - staging: Pre-production (uses .env.staging)
    - production: Production deployment (uses .env.production)
    """

    app_env: str = APP_ENV
    admission: AdmissionSettings = Field(default_factory=_build_admission_settings)
    store: StoreSettings = Field(default_factory=_build_store_settings)
    log: LogSettings = Field(default_factory=_build_log_settings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


# Global settings instance - composed from domain-specific settings
# Nested settings are created via default_factory so env loading works.
settings = Settings()
