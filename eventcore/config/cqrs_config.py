# =============================================================================
# File: eventcore/config/cqrs_config.py
# Description: Command bus and async dispatcher configuration
# =============================================================================

from functools import lru_cache

from pydantic import Field
from pydantic_settings import SettingsConfigDict

from eventcore.common.base.base_config import BaseConfig


class CommandBusConfig(BaseConfig):
    """Command bus settings."""

    model_config = SettingsConfigDict(
        {**BaseConfig.model_config, 'env_prefix': 'COMMAND_BUS_'},
    )

    default_timeout_seconds: float = Field(default=30.0, description="Per-attempt timeout")
    default_max_attempts: int = Field(default=3)
    retry_initial_delay_ms: int = Field(default=100)
    retry_max_delay_ms: int = Field(default=5000)
    retry_backoff_factor: float = Field(default=2.0)
    retry_jitter_type: str = Field(default="full")

    # Async dispatch worker pool
    worker_count: int = Field(default=4)
    queue_max_size: int = Field(default=1000)
    completed_handle_retention: int = Field(default=10000, description="Finished handles kept for status lookups")

    enable_dead_letter: bool = Field(default=True)


@lru_cache(maxsize=1)
def get_command_bus_config() -> CommandBusConfig:
    return CommandBusConfig()


def reset_command_bus_config() -> None:
    get_command_bus_config.cache_clear()
