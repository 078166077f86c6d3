"""
Shared configuration management for the SWR cache.
"""

from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CacheConfig(BaseSettings):
    """Cache configuration with defaults for every entry variant.

    Values can be overridden through ``SWR_*`` environment variables or a
    ``.env`` file. All durations are expressed in seconds.
    """

    model_config = SettingsConfigDict(
        env_prefix="SWR_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # Query defaults
    stale_time: float = Field(default=0.0, ge=0)
    gc_time: float = Field(default=300.0, ge=0)
    dedupe_window: float = Field(default=0.0, ge=0)
    prefetch_window: Optional[float] = Field(default=1.0, ge=0)

    # Signal reactions
    revalidate_on_reconnect: bool = Field(default=True)
    revalidate_on_focus: bool = Field(default=True)
    reconnect_delay: float = Field(default=0.0, ge=0)

    # Retry
    retry_max_attempts: int = Field(default=3, ge=1)
    retry_base_delay: float = Field(default=0.5, ge=0)
    retry_max_delay: float = Field(default=30.0, ge=0)
    retry_multiplier: float = Field(default=1.5, ge=1)
    retry_jitter: float = Field(default=0.5, ge=0, le=1)

    # Mutations
    mutation_retry_max_attempts: int = Field(default=1, ge=1)
    mutation_gc_time: float = Field(default=5.0, ge=0)

    # Observability
    enable_metrics: bool = Field(default=True)


def get_config(**overrides) -> CacheConfig:
    """Get cache configuration, applying explicit overrides over the environment."""
    return CacheConfig(**overrides)
