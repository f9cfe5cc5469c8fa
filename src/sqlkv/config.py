"""
Configuration management using pydantic-settings.

Loads configuration from SQLKV_* environment variables and .env files.
Validates values and provides typed access to settings.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MEMORY_PATH = ":memory:"


class Settings(BaseSettings):
    """Store settings loaded from environment variables.

    Optional:
        SQLKV_DB_PATH: Database file, or ":memory:" for an in-memory store
        SQLKV_JOURNAL_MODE: SQLite journal mode for file databases
        SQLKV_SYNCHRONOUS: SQLite synchronous level for file databases
        SQLKV_BUSY_TIMEOUT_MS: How long SQLite waits on a locked database
        SQLKV_CLEANUP_ON_CLOSE: Purge expired entries when the store closes
        SQLKV_LOG_LEVEL: Logging level
        SQLKV_LOG_FILE: Optional JSON-lines log file
    """

    model_config = SettingsConfigDict(
        env_prefix="SQLKV_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    DB_PATH: str = Field(
        default=MEMORY_PATH,
        description="Database file path, or ':memory:'",
    )

    # SQLite tuning (file databases only)
    JOURNAL_MODE: Literal["WAL", "DELETE", "TRUNCATE", "PERSIST", "MEMORY", "OFF"] = Field(
        default="WAL", description="SQLite journal mode"
    )
    SYNCHRONOUS: Literal["OFF", "NORMAL", "FULL", "EXTRA"] = Field(
        default="NORMAL", description="SQLite synchronous level"
    )
    BUSY_TIMEOUT_MS: int = Field(
        default=5000, ge=0, le=600_000, description="SQLite busy timeout in milliseconds"
    )

    CLEANUP_ON_CLOSE: bool = Field(
        default=True, description="Remove expired entries when the store is closed"
    )

    # Logging
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    LOG_FILE: Path | None = Field(default=None, description="JSON-lines log file")

    @field_validator("JOURNAL_MODE", "SYNCHRONOUS", "LOG_LEVEL", mode="before")
    @classmethod
    def normalize_upper(cls, v: object) -> object:
        """Accept lower-case spellings of enumerated settings."""
        if isinstance(v, str):
            return v.strip().upper()
        return v

    @field_validator("DB_PATH")
    @classmethod
    def validate_db_path(cls, v: str) -> str:
        """Reject an empty database path."""
        if not v.strip():
            raise ValueError("DB_PATH must not be empty (use ':memory:' for RAM)")
        return v.strip()

    @property
    def is_memory(self) -> bool:
        """Whether the configured database lives in memory."""
        return self.DB_PATH == MEMORY_PATH

    @property
    def db_path(self) -> Path | None:
        """Database file path, or None for an in-memory store."""
        return None if self.is_memory else Path(self.DB_PATH)

    def redacted_display(self) -> dict[str, str | int | bool | None]:
        """Return settings for display."""
        return {
            "DB_PATH": self.DB_PATH,
            "JOURNAL_MODE": self.JOURNAL_MODE,
            "SYNCHRONOUS": self.SYNCHRONOUS,
            "BUSY_TIMEOUT_MS": self.BUSY_TIMEOUT_MS,
            "CLEANUP_ON_CLOSE": self.CLEANUP_ON_CLOSE,
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
