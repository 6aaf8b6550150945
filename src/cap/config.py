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

    Required (unless DRY_RUN is set):
        OPENROUTER_API_KEY: API key for the reasoning service

    Optional:
        REASONING_BASE_URL: OpenAI-compatible endpoint
        REASONING_MODEL: Model used for every stage
        STAGE_TIMEOUT_SECONDS: Upper bound for one stage call
        LEDGER_PATH: SQLite file holding the run ledger
        RUN_STALE_AFTER_SECONDS: Age after which a silent running run is resumable
        MAX_RESUME_ATTEMPTS: Attempts before a failed run is abandoned
        LOG_LEVEL / LOG_FILE: Logging configuration
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Reasoning service
    OPENROUTER_API_KEY: str | None = Field(
        default=None, description="API key for the reasoning service"
    )
    REASONING_BASE_URL: str = Field(
        default="https://openrouter.ai/api/v1",
        description="OpenAI-compatible chat completions endpoint",
    )
    REASONING_MODEL: str = Field(
        default="openai/gpt-4o", description="Model used for every stage"
    )
    REASONING_TEMPERATURE: float = Field(
        default=0.3, ge=0.0, le=2.0, description="Sampling temperature"
    )
    REASONING_MAX_TOKENS: int | None = Field(
        default=None, ge=1, description="Optional completion token cap"
    )
    STAGE_TIMEOUT_SECONDS: float = Field(
        default=120.0, gt=0.0, description="Timeout for one stage call"
    )
    DRY_RUN: bool = Field(
        default=False, description="Use canned stage outputs instead of the service"
    )

    # Run ledger
    LEDGER_PATH: Path = Field(
        default=Path(".cache/ledger.db"), description="SQLite run ledger file"
    )
    RUN_STALE_AFTER_SECONDS: float = Field(
        default=900.0,
        gt=0.0,
        description="A running run silent for longer is treated as failed",
    )
    MAX_RESUME_ATTEMPTS: int = Field(
        default=5, ge=1, le=50, description="Attempts before a failed run is abandoned"
    )

    # HTTP surface
    CORS_ORIGINS: list[str] = Field(
        default_factory=lambda: ["http://localhost:3000", "http://127.0.0.1:3000"],
        description="Origins allowed to open event streams",
    )

    # Logging
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )
    LOG_FILE: Path | None = Field(default=None, description="JSON Lines log file")

    @property
    def api_key(self) -> str | None:
        """Get the reasoning service API key (lowercase alias)."""
        return self.OPENROUTER_API_KEY

    @property
    def model(self) -> str:
        """Get the reasoning model (lowercase alias)."""
        return self.REASONING_MODEL

    @field_validator("REASONING_BASE_URL")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Require an http(s) endpoint and drop any trailing slash."""
        if not v.startswith(("http://", "https://")):
            raise ValueError("REASONING_BASE_URL must be an http(s) URL")
        return v.rstrip("/")

    @model_validator(mode="after")
    def validate_api_key_unless_dry_run(self) -> Settings:
        """Ensure the reasoning service is reachable unless running dry."""
        if not self.DRY_RUN and not self.OPENROUTER_API_KEY:
            raise ValueError(
                "OPENROUTER_API_KEY must be configured (or set DRY_RUN=true)"
            )
        return self

    def ensure_directories(self) -> None:
        """Create the ledger directory if it doesn't exist."""
        self.LEDGER_PATH.parent.mkdir(parents=True, exist_ok=True)

    def redacted_display(self) -> dict[str, str | int | float | bool | None]:
        """Return settings with API keys redacted for display."""
        def redact(value: str | None) -> str | None:
            if value is None:
                return None
            return f"{value[:8]}...{value[-4:]}" if len(value) > 12 else "***"

        return {
            "OPENROUTER_API_KEY": redact(self.OPENROUTER_API_KEY),
            "REASONING_BASE_URL": self.REASONING_BASE_URL,
            "REASONING_MODEL": self.REASONING_MODEL,
            "REASONING_TEMPERATURE": self.REASONING_TEMPERATURE,
            "STAGE_TIMEOUT_SECONDS": self.STAGE_TIMEOUT_SECONDS,
            "DRY_RUN": self.DRY_RUN,
            "LEDGER_PATH": str(self.LEDGER_PATH),
            "RUN_STALE_AFTER_SECONDS": self.RUN_STALE_AFTER_SECONDS,
            "MAX_RESUME_ATTEMPTS": self.MAX_RESUME_ATTEMPTS,
            "LOG_LEVEL": self.LOG_LEVEL,
            "LOG_FILE": str(self.LOG_FILE) if self.LOG_FILE else None,
        }


@lru_cache
def get_settings() -> Settings:
    """Get cached settings singleton.

    Returns:
        Settings instance loaded from environment.

    Raises:
        pydantic.ValidationError: If required settings are missing or invalid.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache (useful for testing)."""
    get_settings.cache_clear()
