"""Router configuration via Pydantic BaseSettings."""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    development = "development"
    staging = "staging"
    production = "production"


class Settings(BaseSettings):
    """Router settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Environment
    ENVIRONMENT: Environment = Environment.development

    # Logging
    LOG_LEVEL: str = "INFO"

    # Retry policy
    RETRY_MAX_ATTEMPTS: int = Field(default=3, ge=1)
    RETRY_BASE_DELAY_MS: int = Field(default=200, ge=0)
    RETRY_MAX_DELAY_MS: int = Field(default=10_000, ge=0)

    # Retry budget (process-wide)
    RETRY_BUDGET_FRACTION: float = Field(default=0.2, ge=0.0, le=1.0)
    RETRY_BUDGET_MIN_CONCURRENCY: int = Field(default=3, ge=0)

    # Circuit breaker
    CIRCUIT_FAILURE_THRESHOLD: float = Field(default=0.5, ge=0.0, le=1.0)
    CIRCUIT_WINDOW_SIZE: int = Field(default=20, ge=1)
    CIRCUIT_MIN_SAMPLES: int = Field(default=10, ge=1)
    CIRCUIT_COOLDOWN_MS: int = Field(default=30_000, ge=0)
    CIRCUIT_MAX_COOLDOWN_MS: int = Field(default=300_000, ge=0)

    # Routing
    LOW_COMPLEXITY_THRESHOLD: float = Field(default=0.3, ge=0.0, le=1.0)
    ROUTER_FORCE_PROBE_WHEN_ALL_OPEN: bool = False
    REGISTRY_ALLOW_EQUAL_COST_OVERLAP: bool = True

    # Dispatch / message bus
    DISPATCH_TIMEOUT_MS: int = Field(default=30_000, ge=1)
    BUS_HIGH_WATERMARK: int = Field(default=1_000, ge=1)

    # Health stream (optional Redis Streams sink)
    REDIS_URL: str = ""
    HEALTH_STREAM: str = "squadron:health"

    @model_validator(mode="after")
    def _check_bounds(self) -> Settings:
        if self.CIRCUIT_MIN_SAMPLES > self.CIRCUIT_WINDOW_SIZE:
            msg = "CIRCUIT_MIN_SAMPLES must not exceed CIRCUIT_WINDOW_SIZE"
            raise ValueError(msg)
        if self.RETRY_BASE_DELAY_MS > self.RETRY_MAX_DELAY_MS:
            msg = "RETRY_BASE_DELAY_MS must not exceed RETRY_MAX_DELAY_MS"
            raise ValueError(msg)
        if self.CIRCUIT_COOLDOWN_MS > self.CIRCUIT_MAX_COOLDOWN_MS:
            msg = "CIRCUIT_COOLDOWN_MS must not exceed CIRCUIT_MAX_COOLDOWN_MS"
            raise ValueError(msg)
        return self


@lru_cache
def get_settings() -> Settings:
    """Singleton settings instance."""
    return Settings()
