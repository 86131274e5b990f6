"""Configuration management service with Pydantic Settings.

This module provides centralized configuration management for the
offline ledger sync service, loading and validating environment
variables at startup.
"""

from __future__ import annotations

import logging
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from offline_ledger_sync.ingestor.fetcher import DEFAULT_LEDGER_CHAIN_ID
from offline_ledger_sync.ingestor.indexer_client import DEFAULT_BASE_URL as DEFAULT_INDEXER_URL

_ENV_FILE = ".env"
_ENV_FILE_ENCODING = "utf-8"


class DatabaseSettings(BaseSettings):
    """Local store settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    url: str = Field(
        default="sqlite+aiosqlite:///./offline_ledger.sqlite",
        alias="DATABASE_URL",
        description="SQLite connection string for the local store",
    )
    busy_timeout_seconds: float = Field(
        default=5.0,
        alias="DATABASE_BUSY_TIMEOUT_SECONDS",
        description="How long a write waits on another writer before failing",
        gt=0,
    )
    echo: bool = Field(
        default=False,
        alias="DATABASE_ECHO",
        description="Echo SQL statements",
    )

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate database URL format."""
        if v.startswith("sqlite:///"):
            return v.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
        if not v.startswith("sqlite+aiosqlite://"):
            raise ValueError("DATABASE_URL must be a SQLite connection string")
        return v


class IndexerSettings(BaseSettings):
    """Remote ledger indexer settings."""

    model_config = SettingsConfigDict(env_prefix="INDEXER_", extra="ignore")

    base_url: str = Field(
        default=DEFAULT_INDEXER_URL,
        alias="INDEXER_BASE_URL",
        description="Default indexer REST endpoint",
    )
    timeout_seconds: float = Field(
        default=10.0,
        alias="INDEXER_TIMEOUT_SECONDS",
        description="Per-request timeout",
        gt=0,
    )
    max_retries: int = Field(
        default=3,
        alias="INDEXER_MAX_RETRIES",
        description="Retries for transient failures",
        ge=0,
    )
    requests_per_second: float = Field(
        default=10.0,
        alias="INDEXER_REQUESTS_PER_SECOND",
        description="Client-side rate limit",
        gt=0,
    )
    page_limit: int = Field(
        default=100,
        alias="INDEXER_PAGE_LIMIT",
        description="Page size for list endpoints",
        ge=1,
        le=1000,
    )
    sub_fetch_timeout_seconds: float = Field(
        default=30.0,
        alias="INDEXER_SUB_FETCH_TIMEOUT_SECONDS",
        description="Upper bound for one category fetch, retries included",
        gt=0,
    )
    ledger_chain_id: str = Field(
        default=DEFAULT_LEDGER_CHAIN_ID,
        alias="INDEXER_LEDGER_CHAIN_ID",
        description="Chain id recorded on ledger balances and transfers",
    )

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError("INDEXER_BASE_URL must start with http:// or https://")
        return v.rstrip("/")


class CacheSettings(BaseSettings):
    """Read cache and staleness settings."""

    model_config = SettingsConfigDict(env_prefix="", extra="ignore")

    ttl_seconds: float = Field(
        default=60.0,
        alias="CACHE_TTL_SECONDS",
        description="Lifetime of a cached query result",
        gt=0,
    )
    max_entries: int = Field(
        default=1024,
        alias="CACHE_MAX_ENTRIES",
        description="Maximum cached query results",
        ge=1,
    )
    stale_after_seconds: float = Field(
        default=300.0,
        alias="SYNC_STALE_AFTER_SECONDS",
        description="Default interval after which a category needs a new sync",
        gt=0,
    )


class SessionSettings(BaseSettings):
    """Session-state extraction settings."""

    model_config = SettingsConfigDict(env_prefix="SESSION_", extra="ignore")

    key_prefix: str = Field(
        default="blackbottle.",
        alias="SESSION_KEY_PREFIX",
        description="Namespace prefix of recognized flat session keys",
    )


class Settings(BaseSettings):
    """Main application settings.

    Loads configuration from environment variables with support for
    .env files via python-dotenv.

    Example:
        ```python
        from offline_ledger_sync.config import get_settings

        settings = get_settings()
        print(settings.database.url)
        print(settings.log_level)
        ```
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding=_ENV_FILE_ENCODING,
        extra="ignore",
    )

    # Nested configuration groups
    #
    # NOTE: Each nested BaseSettings must be given the same env_file, otherwise it
    # will only read from the process environment (and ignore `.env`).
    database: DatabaseSettings = Field(
        default_factory=lambda: DatabaseSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    indexer: IndexerSettings = Field(
        default_factory=lambda: IndexerSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    cache: CacheSettings = Field(
        default_factory=lambda: CacheSettings(
            _env_file=_ENV_FILE,
            _env_file_encoding=_ENV_FILE_ENCODING,
        )
    )
    session: SessionSettings = Field(
        default_factory=lambda: SessionSettings(
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
    api_host: str = Field(
        default="127.0.0.1",
        alias="API_HOST",
        description="Interface the HTTP API binds to",
    )
    api_port: int = Field(
        default=3001,
        alias="API_PORT",
        description="HTTP port for the local API",
        ge=1,
        le=65535,
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
            "indexer": {
                "base_url": self._redact_url(self.indexer.base_url),
                "timeout_seconds": str(self.indexer.timeout_seconds),
                "max_retries": str(self.indexer.max_retries),
                "ledger_chain_id": self.indexer.ledger_chain_id,
            },
            "cache": {
                "ttl_seconds": str(self.cache.ttl_seconds),
                "max_entries": str(self.cache.max_entries),
                "stale_after_seconds": str(self.cache.stale_after_seconds),
            },
            "session_key_prefix": self.session.key_prefix,
            "log_level": self.log_level,
            "api": f"{self.api_host}:{self.api_port}",
        }

    @staticmethod
    def _redact_url(url: str) -> str:
        """Redact password from URL if present."""
        if "@" in url and "://" in url:
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

    Returns:
        The Settings instance.

    Raises:
        ValidationError: If environment variables have invalid values.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache.

    Useful for testing when you need to reload settings with
    different environment variables.
    """
    get_settings.cache_clear()
