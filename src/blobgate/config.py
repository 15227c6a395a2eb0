"""
Configuration management using pydantic-settings.

Loads configuration from environment variables and .env files.
Validates required fields and provides typed access to settings.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Storage network:
        IPFS_API_URL: Base URL of the node's RPC API (address and port)
        PIN_ON_PUSH: Ask the node to pin blocks we push

    Addressing:
        HASH_ALGORITHM: Multihash algorithm used for new BlobIds

    Local cache:
        CACHE_BACKEND: "memory" or "file"
        CACHE_DIR: Directory for the file backend
        CACHE_MAX_BYTES: Upper bound on cached bytes

    Resilience:
        REQUEST_TIMEOUT: Timeout for one HTTP attempt, in seconds
        LOOKUP_TIMEOUT: How long the node itself searches for a block
        OPERATION_DEADLINE: Bound on one push/fetch including all retries
        MAX_ATTEMPTS: Attempts per operation before giving up
        BACKOFF_INITIAL / BACKOFF_MAX: Exponential backoff bounds, in seconds
        PUSH_CONCURRENCY: Background pushes allowed in flight at once

    Logging:
        LOG_LEVEL: Logging level
        LOG_FILE: Optional JSON-lines log file
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    IPFS_API_URL: str = Field(
        default="http://127.0.0.1:5001",
        description="Base URL of the storage node RPC API",
    )
    PIN_ON_PUSH: bool = Field(default=True, description="Pin pushed blocks on the node")

    HASH_ALGORITHM: Literal["sha2-256", "sha2-512", "sha3-256", "blake2b-256"] = Field(
        default="sha2-256", description="Multihash algorithm for new BlobIds"
    )

    CACHE_BACKEND: Literal["memory", "file"] = Field(
        default="memory", description="Local cache backend"
    )
    CACHE_DIR: Path = Field(default=Path(".cache/blobs"), description="File cache directory")
    CACHE_MAX_BYTES: int = Field(
        default=256 * 1024 * 1024, gt=0, description="Maximum bytes held by the local cache"
    )

    REQUEST_TIMEOUT: float = Field(
        default=30.0, gt=0.0, description="Timeout per HTTP attempt in seconds"
    )
    LOOKUP_TIMEOUT: float = Field(
        default=20.0, gt=0.0, description="Node-side block lookup timeout in seconds"
    )
    OPERATION_DEADLINE: float = Field(
        default=120.0, gt=0.0, description="Deadline for one operation including retries"
    )
    MAX_ATTEMPTS: int = Field(default=5, ge=1, le=20, description="Attempts per operation")
    BACKOFF_INITIAL: float = Field(default=0.5, ge=0.0, description="First backoff delay")
    BACKOFF_MAX: float = Field(default=8.0, ge=0.0, description="Largest backoff delay")
    PUSH_CONCURRENCY: int = Field(
        default=4, ge=1, le=64, description="Concurrent background pushes"
    )

    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    LOG_FILE: Path | None = Field(default=None, description="JSON-lines log file")

    @field_validator("IPFS_API_URL")
    @classmethod
    def validate_api_url(cls, v: str) -> str:
        """Validate that the node URL is http(s) and normalize trailing slashes."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("IPFS_API_URL must start with http:// or https://")
        return v.rstrip("/")

    @model_validator(mode="after")
    def validate_timeouts(self) -> Settings:
        """Ensure the timeout settings nest: lookup < request <= deadline."""
        if self.LOOKUP_TIMEOUT >= self.REQUEST_TIMEOUT:
            raise ValueError("LOOKUP_TIMEOUT must be smaller than REQUEST_TIMEOUT")
        if self.OPERATION_DEADLINE < self.REQUEST_TIMEOUT:
            raise ValueError("OPERATION_DEADLINE must be at least REQUEST_TIMEOUT")
        if self.BACKOFF_MAX < self.BACKOFF_INITIAL:
            raise ValueError("BACKOFF_MAX must be at least BACKOFF_INITIAL")
        return self

    def ensure_directories(self) -> None:
        """Create the cache directory if the file backend is selected."""
        if self.CACHE_BACKEND == "file":
            self.CACHE_DIR.mkdir(parents=True, exist_ok=True)

    def display(self) -> dict[str, str | int | float | bool | None]:
        """Return settings for display."""
        return {
            "IPFS_API_URL": self.IPFS_API_URL,
            "PIN_ON_PUSH": self.PIN_ON_PUSH,
            "HASH_ALGORITHM": self.HASH_ALGORITHM,
            "CACHE_BACKEND": self.CACHE_BACKEND,
            "CACHE_DIR": str(self.CACHE_DIR),
            "CACHE_MAX_BYTES": self.CACHE_MAX_BYTES,
            "REQUEST_TIMEOUT": self.REQUEST_TIMEOUT,
            "LOOKUP_TIMEOUT": self.LOOKUP_TIMEOUT,
            "OPERATION_DEADLINE": self.OPERATION_DEADLINE,
            "MAX_ATTEMPTS": self.MAX_ATTEMPTS,
            "BACKOFF_INITIAL": self.BACKOFF_INITIAL,
            "BACKOFF_MAX": self.BACKOFF_MAX,
            "PUSH_CONCURRENCY": self.PUSH_CONCURRENCY,
            "LOG_LEVEL": self.LOG_LEVEL,
            "LOG_FILE": str(self.LOG_FILE) if self.LOG_FILE else None,
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
