# =============================================================================
# File: eventcore/config/cache_config.py
# Description: Query cache configuration (L1 memory, L2 Redis, L3 read models)
# =============================================================================

from functools import lru_cache

from pydantic import Field
from pydantic_settings import SettingsConfigDict

from eventcore.common.base.base_config import BaseConfig


class CacheConfig(BaseConfig):
    """
    Multi-tier query cache settings.
    """

    model_config = SettingsConfigDict(
        {**BaseConfig.model_config, 'env_prefix': 'CACHE_'},
    )

    enabled: bool = Field(default=True)
    key_prefix: str = Field(default="eventcore")
    default_ttl_seconds: int = Field(default=300)

    l1_enabled: bool = Field(default=True)
    l1_capacity: int = Field(default=1000, description="Hard cap on L1 entries")

    l2_enabled: bool = Field(default=True)
    l3_enabled: bool = Field(default=True)

    invalidation_coalesce_window_ms: int = Field(
        default=50,
        description="Repeated invalidations of a tag inside this window collapse into one"
    )
    batch_concurrency: int = Field(default=10, description="Concurrent queries in execute_batch")
    log_cache_hits: bool = Field(default=False)


@lru_cache(maxsize=1)
def get_cache_config() -> CacheConfig:
    return CacheConfig()


def reset_cache_config() -> None:
    get_cache_config.cache_clear()
