"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
Token Trend Tracker pipeline, loading and validating environment
variables at startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


class DatabaseSettings(BaseSettings):
    """Database connection settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        alias="DATABASE_URL",
        description="PostgreSQL (or SQLite for local runs) connection string",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if not v.startswith(("postgresql://", "postgresql+asyncpg://", "sqlite+aiosqlite://")):
            raise ValueError(
                "DATABASE_URL must be a PostgreSQL or sqlite+aiosqlite connection string"
            )
        return v


class RedisSettings(BaseSettings):
    """Redis connection settings (optional RPC result cache)."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str | None = Field(
        default=None,
        alias="REDIS_URL",
        description="Redis connection string; enables caching of immutable RPC results",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate Redis URL format."""
        if v is None:
            return v
        if not v.startswith("redis://"):
            raise ValueError("REDIS_URL must start with redis://")
        return v


class ChainSettings(BaseSettings):
    """Ledger RPC settings."""

    model_config = SettingsConfigDict(env_prefix="CHAIN_", extra="ignore")

    rpc_url: str = Field(
        default="https://ethereum-rpc.publicnode.com",
        alias="CHAIN_RPC_URL",
        description="Primary HTTP RPC endpoint",
    )
    fallback_rpc_url: str | None = Field(
        default=None,
        alias="CHAIN_FALLBACK_RPC_URL",
        description="Fallback HTTP RPC endpoint",
    )
    ws_url: str = Field(
        default="wss://ethereum-rpc.publicnode.com",
        alias="CHAIN_WS_URL",
        description="WebSocket endpoint used for the Transfer log subscription",
    )
    call_timeout_seconds: float = Field(
        default=10.0,
        alias="CHAIN_CALL_TIMEOUT_SECONDS",
        gt=0.0,
        le=300.0,
        description="Timeout applied independently to each external call",
    )
    max_requests_per_second: float = Field(
        default=25.0,
        alias="CHAIN_MAX_REQUESTS_PER_SECOND",
        gt=0.0,
        le=10_000.0,
        description="Token-bucket rate limit for RPC calls",
    )

    @field_validator("rpc_url", "fallback_rpc_url")
    @classmethod
    def validate_url(cls, v: str | None) -> str | None:
        """Validate RPC URL format."""
        if v is None:
            return v
        if not v.startswith(("http://", "https://")):
            raise ValueError("RPC URL must be an HTTP(S) endpoint")
        return v

    @field_validator("ws_url")
    @classmethod
    def validate_ws_url(cls, v: str) -> str:
        """Validate WebSocket URL format."""
        if not v.startswith(("ws://", "wss://")):
            raise ValueError("WebSocket URL must start with ws:// or wss://")
        return v


class IngestSettings(BaseSettings):
    """Transfer buffering and flush settings."""

    model_config = SettingsConfigDict(env_prefix="INGEST_", extra="ignore")

    flush_interval_seconds: float = Field(
        default=5.0,
        alias="INGEST_FLUSH_INTERVAL_SECONDS",
        gt=0.0,
        le=3600.0,
        description="Wall-clock interval between transfer flushes",
    )
    batch_size: int = Field(
        default=500,
        alias="INGEST_BATCH_SIZE",
        ge=1,
        le=100_000,
        description="Buffer length that requests an early flush",
    )
    retry_attempts: int = Field(
        default=0,
        alias="INGEST_RETRY_ATTEMPTS",
        ge=0,
        le=10,
        description="Retries for a failed transfer batch before it is dead-lettered",
    )
    retry_backoff_seconds: float = Field(
        default=1.0,
        alias="INGEST_RETRY_BACKOFF_SECONDS",
        ge=0.0,
        le=60.0,
        description="Initial backoff between retries (doubles each attempt)",
    )
    dead_letter_path: Path | None = Field(
        default=None,
        alias="INGEST_DEAD_LETTER_PATH",
        description="JSON-lines file receiving batches that could not be persisted",
    )


class BalanceSettings(BaseSettings):
    """Holder balance refresh settings."""

    model_config = SettingsConfigDict(env_prefix="BALANCE_", extra="ignore")

    flush_interval_seconds: float = Field(
        default=10.0,
        alias="BALANCE_FLUSH_INTERVAL_SECONDS",
        gt=0.0,
        le=3600.0,
        description="Interval between balance refresh flushes",
    )
    freshness_ttl_seconds: int = Field(
        default=60,
        alias="BALANCE_FRESHNESS_TTL_SECONDS",
        ge=0,
        le=86_400,
        description="Age under which a stored balance is served without a new lookup",
    )
    max_concurrency: int = Field(
        default=50,
        alias="BALANCE_MAX_CONCURRENCY",
        ge=1,
        le=1_000,
        description="Concurrent balanceOf calls per asset",
    )
    max_deferrals: int = Field(
        default=30,
        alias="BALANCE_MAX_DEFERRALS",
        ge=0,
        le=10_000,
        description="Flushes a refresh may wait for its asset to be registered before it is dropped",
    )


class TrendSettings(BaseSettings):
    """Trend recomputation settings."""

    model_config = SettingsConfigDict(env_prefix="TREND_", extra="ignore")

    interval_seconds: float = Field(
        default=300.0,
        alias="TREND_INTERVAL_SECONDS",
        gt=0.0,
        le=86_400.0,
        description="Interval between trend recompute cycles",
    )
    cooldown_seconds: int = Field(
        default=3600,
        alias="TREND_COOLDOWN_SECONDS",
        ge=0,
        le=7 * 86_400,
        description="Minimum age of a snapshot before the asset is recomputed",
    )
    window_seconds: int = Field(
        default=86_400,
        alias="TREND_WINDOW_SECONDS",
        ge=60,
        le=30 * 86_400,
        description="Trailing window used for transfer-based metrics",
    )
    group_size: int = Field(
        default=10,
        alias="TREND_GROUP_SIZE",
        ge=1,
        le=100,
        description="Assets computed concurrently per group",
    )
    max_assets_per_cycle: int = Field(
        default=500,
        alias="TREND_MAX_ASSETS_PER_CYCLE",
        ge=1,
        le=100_000,
        description="Upper bound on assets recomputed in one cycle",
    )


class Settings(BaseSettings):
    """Main application settings.

    Aggregates all configuration sections and provides application-level
    settings.
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    redis: RedisSettings = Field(
        default_factory=lambda: RedisSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    chain: ChainSettings = Field(
        default_factory=lambda: ChainSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    ingest: IngestSettings = Field(
        default_factory=lambda: IngestSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    balance: BalanceSettings = Field(
        default_factory=lambda: BalanceSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    trend: TrendSettings = Field(
        default_factory=lambda: TrendSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )

    # Application settings
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        alias="LOG_LEVEL",
        description="Logging level",
    )

    def get_logging_level(self) -> int:
        """Get the numeric logging level."""
        level: int = getattr(logging, self.log_level)
        return level

    def redacted_summary(self) -> dict[str, str | dict[str, str]]:
        """Get a summary of settings with secrets redacted.

        Returns:
            Dictionary of settings with sensitive values masked.
        """
        return {
            "database_url": self._redact_url(self.database.url),
            "redis_url": self._redact_url(self.redis.url) if self.redis.url else "(not set)",
            "chain": {
                "rpc_url": self._redact_url(self.chain.rpc_url),
                "fallback_rpc_url": (
                    self._redact_url(self.chain.fallback_rpc_url)
                    if self.chain.fallback_rpc_url
                    else "(not set)"
                ),
                "ws_url": self._redact_url(self.chain.ws_url),
                "call_timeout_seconds": str(self.chain.call_timeout_seconds),
            },
            "ingest": {
                "flush_interval_seconds": str(self.ingest.flush_interval_seconds),
                "batch_size": str(self.ingest.batch_size),
                "retry_attempts": str(self.ingest.retry_attempts),
                "dead_letter_path": str(self.ingest.dead_letter_path or "(not set)"),
            },
            "balance": {
                "flush_interval_seconds": str(self.balance.flush_interval_seconds),
                "freshness_ttl_seconds": str(self.balance.freshness_ttl_seconds),
                "max_concurrency": str(self.balance.max_concurrency),
            },
            "trend": {
                "interval_seconds": str(self.trend.interval_seconds),
                "cooldown_seconds": str(self.trend.cooldown_seconds),
                "window_seconds": str(self.trend.window_seconds),
            },
            "log_level": self.log_level,
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
            # URL has credentials - redact the password
            protocol_end = url.index("://") + 3
            at_pos = url.index("@")
            creds_part = url[protocol_end:at_pos]
            if ":" in creds_part:
                username = creds_part.split(":")[0]
                return f"{url[:protocol_end]}{username}:***@{url[at_pos + 1 :]}"
        return url


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings singleton.

    Uses LRU cache to ensure settings are loaded only once and
    reused across the application.

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If required environment variables are missing
            or have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
