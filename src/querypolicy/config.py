"""Runtime configuration for the query policy engine."""

from __future__ import annotations

from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_prefix="QUERYPOLICY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Generic retry policy
    RETRY_MAX_ATTEMPTS: int = Field(default=2, ge=0, description="Retries after the first failure")
    RETRY_BASE_DELAY_MS: int = Field(default=1000, ge=0, description="Backoff base delay in ms")
    RETRY_MAX_DELAY_MS: int = Field(default=30000, ge=0, description="Backoff ceiling in ms")

    # Prefetch
    PREFETCH_STALE_TIME: float = Field(
        default=600, ge=0, description="Stale window in seconds applied to prefetched data"
    )

    # Per-prefix overrides
    OVERRIDES_PATH: str | None = Field(
        default=None, description="YAML file with per-key-prefix policy overrides (optional)"
    )

    LOG_LEVEL: str = Field(default="WARNING", description="Log level for the CLI")

    @model_validator(mode="after")
    def validate_backoff_window(self) -> "Settings":
        """Validate that the backoff ceiling is not below the base delay."""
        if self.RETRY_MAX_DELAY_MS < self.RETRY_BASE_DELAY_MS:
            raise ValueError(
                "RETRY_MAX_DELAY_MS must be greater than or equal to RETRY_BASE_DELAY_MS."
            )
        return self


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
