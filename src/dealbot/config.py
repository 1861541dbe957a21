"""
Configuration management using pydantic-settings.

Loads configuration from environment variables and .env files.
"""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    Every field has a default, so a bare environment runs against local
    storage with the in-process defaults. HTTP providers need their base URLs.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Storage
    DATA_DIR: Path = Field(default=Path("data"), description="Root for deal directories")
    INDEX_ENABLED: bool = Field(
        default=True, description="Maintain the SQLite projection alongside the log"
    )
    INDEX_PATH: Path | None = Field(
        default=None, description="SQLite index file (defaults to DATA_DIR/index.db)"
    )

    # Logging
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    LOG_FILE: Path | None = Field(default=None, description="Optional JSON Lines log file")

    # Timeouts and concurrency
    SHORT_TIMEOUT_S: float = Field(
        default=12.0, gt=0, description="Timeout for evidence lookups"
    )
    LONG_TIMEOUT_S: float = Field(
        default=40.0, gt=0, description="Timeout for reasoning calls"
    )
    PROVIDER_CONCURRENCY: int = Field(
        default=2, ge=1, le=16, description="Concurrent evidence-provider calls per pipeline"
    )
    VALIDATION_MAX_RETRIES: int = Field(
        default=1, ge=0, le=5, description="Repair attempts after a failed validation"
    )

    # Pipeline shape
    DEFAULT_ANALYSTS: list[str] = Field(
        default=["market", "competition", "traction"],
        description="Analyst specializations when a deal configures none",
    )
    MAX_EVIDENCE_SEED: int = Field(
        default=15, ge=1, description="Search results kept from the seed query"
    )
    MAX_UNKNOWNS_TO_RESOLVE: int = Field(
        default=5, ge=0, description="Analyst unknowns searched during the associate stage"
    )
    INTEL_CATEGORIES: list[str] = Field(
        default=["funding", "team", "competitors", "news"],
        description="Company intel categories scanned during evidence gathering",
    )
    STALL_AFTER_SECONDS: float = Field(
        default=0.0,
        ge=0,
        description="Minimum quiet time before an unattended run is advanced",
    )

    # External collaborators
    REASONING_BASE_URL: str | None = Field(default=None, description="Reasoning service URL")
    REASONING_API_KEY: str | None = Field(default=None, description="Reasoning service key")
    SEARCH_BASE_URL: str | None = Field(default=None, description="Evidence search URL")
    SEARCH_API_KEY: str | None = Field(default=None, description="Evidence search key")
    WEBHOOK_URL: str | None = Field(default=None, description="Run completion webhook")

    @field_validator("DEFAULT_ANALYSTS")
    @classmethod
    def validate_default_analysts(cls, v: list[str]) -> list[str]:
        """Require at least one analyst specialization."""
        cleaned = [s.strip() for s in v if s and s.strip()]
        if not cleaned:
            raise ValueError("DEFAULT_ANALYSTS must name at least one specialization")
        return cleaned

    @property
    def index_path(self) -> Path:
        """Resolved SQLite index location."""
        return self.INDEX_PATH or self.DATA_DIR / "index.db"

    def ensure_directories(self) -> None:
        """Create the data directory if it doesn't exist."""
        self.DATA_DIR.mkdir(parents=True, exist_ok=True)

    def redacted_display(self) -> dict[str, str | int | float | bool | list[str] | None]:
        """Return settings with API keys redacted for display."""
        def redact(value: str | None) -> str | None:
            if value is None:
                return None
            return f"{value[:8]}...{value[-4:]}" if len(value) > 12 else "***"

        return {
            "DATA_DIR": str(self.DATA_DIR),
            "INDEX_ENABLED": self.INDEX_ENABLED,
            "INDEX_PATH": str(self.index_path),
            "LOG_LEVEL": self.LOG_LEVEL,
            "LOG_FILE": str(self.LOG_FILE) if self.LOG_FILE else None,
            "SHORT_TIMEOUT_S": self.SHORT_TIMEOUT_S,
            "LONG_TIMEOUT_S": self.LONG_TIMEOUT_S,
            "PROVIDER_CONCURRENCY": self.PROVIDER_CONCURRENCY,
            "VALIDATION_MAX_RETRIES": self.VALIDATION_MAX_RETRIES,
            "DEFAULT_ANALYSTS": self.DEFAULT_ANALYSTS,
            "MAX_EVIDENCE_SEED": self.MAX_EVIDENCE_SEED,
            "MAX_UNKNOWNS_TO_RESOLVE": self.MAX_UNKNOWNS_TO_RESOLVE,
            "INTEL_CATEGORIES": self.INTEL_CATEGORIES,
            "STALL_AFTER_SECONDS": self.STALL_AFTER_SECONDS,
            "REASONING_BASE_URL": self.REASONING_BASE_URL,
            "REASONING_API_KEY": redact(self.REASONING_API_KEY),
            "SEARCH_BASE_URL": self.SEARCH_BASE_URL,
            "SEARCH_API_KEY": redact(self.SEARCH_API_KEY),
            "WEBHOOK_URL": self.WEBHOOK_URL,
        }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache (useful for testing)."""
    get_settings.cache_clear()
