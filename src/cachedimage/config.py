"""
Configuration management using pydantic-settings.

Loads configuration from environment variables and .env files.
Validates fields and provides typed access to settings.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from cachedimage import __version__
from cachedimage.exceptions import ConfigurationError


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Optional:
        CACHE_DIR: Reserved directory holding one file per cache key
        LOG_LEVEL: Logging level
        LOG_FILE: JSON Lines log file
        REQUEST_TIMEOUT: HTTP timeout in seconds
        DOWNLOAD_CHUNK_SIZE: Streaming chunk size (unset passes chunks through)
        USER_AGENT: User-Agent header sent with every request
        FETCH_MAX_ATTEMPTS: Fetch attempts per cache miss
        MAX_CONCURRENT_RESOLVES: Concurrent resolves for the CLI
        PURGE_COMPLETED_ON_TEARDOWN: Whether teardown also purges completed blobs
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Directories
    CACHE_DIR: Path = Field(
        default=Path(".cache/images"), description="Reserved cache directory"
    )

    # Logging
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    LOG_FILE: Path | None = Field(default=None, description="JSON Lines log file")

    # Transfer
    REQUEST_TIMEOUT: float = Field(
        default=30.0, gt=0.0, description="HTTP timeout in seconds"
    )
    DOWNLOAD_CHUNK_SIZE: int | None = Field(
        default=None, gt=0, description="Streaming chunk size in bytes"
    )
    USER_AGENT: str = Field(
        default=f"cachedimage/{__version__}",
        description="User-Agent header for remote requests",
    )

    # Coordination
    FETCH_MAX_ATTEMPTS: int = Field(
        default=1, ge=1, le=10, description="Fetch attempts per cache miss"
    )
    MAX_CONCURRENT_RESOLVES: int = Field(
        default=4, ge=1, le=32, description="Maximum concurrent resolves (CLI)"
    )
    PURGE_COMPLETED_ON_TEARDOWN: bool = Field(
        default=True,
        description="Delete the destination on teardown even if the fetch completed",
    )

    @field_validator("USER_AGENT")
    @classmethod
    def validate_user_agent(cls, v: str) -> str:
        """Reject a blank User-Agent."""
        if not v.strip():
            raise ValueError("USER_AGENT must not be blank")
        return v.strip()

    def ensure_directories(self) -> None:
        """Create the cache directory if it doesn't exist.

        Raises:
            ConfigurationError: If CACHE_DIR cannot be created.
        """
        try:
            self.CACHE_DIR.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(
                "Cache directory cannot be created",
                context={"CACHE_DIR": str(self.CACHE_DIR), "error": str(e)},
            ) from e

    def display(self) -> dict[str, str | int | float | bool | None]:
        """Return settings as plain values for display."""
        return {
            "CACHE_DIR": str(self.CACHE_DIR),
            "LOG_LEVEL": self.LOG_LEVEL,
            "LOG_FILE": str(self.LOG_FILE) if self.LOG_FILE else None,
            "REQUEST_TIMEOUT": self.REQUEST_TIMEOUT,
            "DOWNLOAD_CHUNK_SIZE": self.DOWNLOAD_CHUNK_SIZE,
            "USER_AGENT": self.USER_AGENT,
            "FETCH_MAX_ATTEMPTS": self.FETCH_MAX_ATTEMPTS,
            "MAX_CONCURRENT_RESOLVES": self.MAX_CONCURRENT_RESOLVES,
            "PURGE_COMPLETED_ON_TEARDOWN": self.PURGE_COMPLETED_ON_TEARDOWN,
        }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton.

    Returns:
        Settings instance loaded from environment.

    Raises:
        ValidationError: If settings are invalid.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache (useful for testing)."""
    get_settings.cache_clear()
