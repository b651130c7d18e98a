# =============================================================================
# File: eventcore/config/redis_config.py
# Description: Redis connection configuration
# =============================================================================

from functools import lru_cache

from pydantic import Field, SecretStr
from pydantic_settings import SettingsConfigDict

from eventcore.common.base.base_config import BaseConfig


class RedisConfig(BaseConfig):
    """redis.asyncio client settings."""

    model_config = SettingsConfigDict(
        {**BaseConfig.model_config, 'env_prefix': 'REDIS_'},
    )

    url: SecretStr = Field(default=SecretStr("redis://localhost:6379/0"))
    max_connections: int = Field(default=50)
    socket_timeout: float = Field(default=5.0)
    socket_connect_timeout: float = Field(default=3.0)
    health_check_interval: int = Field(default=30)


@lru_cache(maxsize=1)
def get_redis_config() -> RedisConfig:
    return RedisConfig()


def reset_redis_config() -> None:
    get_redis_config.cache_clear()
