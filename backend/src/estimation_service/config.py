"""Centralized configuration using pydantic-settings."""

from __future__ import annotations

from functools import lru_cache
from typing import Any

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Engine settings from environment variables.

    All fields are optional with sensible defaults.
    Validation occurs on first get_settings() call.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="ESTIMATION_",
        case_sensitive=False,
        extra="ignore",
    )

    log_level: str = "INFO"

    # Rank defaults
    default_top_k: int = 8
    rank_deadline_ms: float = 1000.0
    strategy_version: str = "v1"
    weights_version: str = "w1"
    max_alternates: int = 3

    # Exploration
    explore_epsilon: float = 0.10
    explore_epsilon_min: float = 0.05
    explore_epsilon_max: float = 0.20
    explore_quality_floor: float = 0.60
    explore_rejection_ceiling: float = 0.20

    # Circuit breaker and last-known-good cache
    circuit_breaker_duration_s: float = 600.0
    circuit_breaker_severe_duration_s: float = 1800.0
    lkg_ttl_s: float = 1800.0
    failure_threshold: int = 3
    deactivate_after_trips: int = 3

    # Shared health state
    health_backend: str = "memory"
    redis_url: str = "redis://localhost:6379/0"
    redis_key_prefix: str = "estimation"

    # Segment metrics rollups
    metrics_window_hours: float = 24.0
    metrics_refresh_interval_s: float = 60.0
    metrics_max_staleness_s: float = 300.0

    # Feature normalization bounds (USD per 1k tokens)
    price_min: float = 0.001
    price_max: float = 0.1

    max_traces: int = 1000

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper = v.upper()
        if upper not in valid_levels:
            raise ValueError(f"Invalid log_level '{v}'. Must be one of: {', '.join(sorted(valid_levels))}")
        return upper

    @field_validator("health_backend")
    @classmethod
    def validate_health_backend(cls, v: str) -> str:
        lower = v.lower()
        if lower not in {"memory", "redis"}:
            raise ValueError(f"Invalid health_backend '{v}'. Must be one of: memory, redis")
        return lower

    @model_validator(mode="after")
    def validate_epsilon_bounds(self) -> "Settings":
        if not 0.0 <= self.explore_epsilon_min <= self.explore_epsilon_max <= 1.0:
            raise ValueError("explore epsilon bounds must satisfy 0 <= min <= max <= 1")
        if self.price_max <= self.price_min:
            raise ValueError("price_max must be greater than price_min")
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert settings to dictionary for logging and snapshots."""
        return self.model_dump()


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached Settings singleton.

    Use this function for dependency injection and testing overrides.
    The cache ensures only one Settings instance exists per process.

    For testing: override with get_settings.cache_clear() then set env vars.
    """
    return Settings()
