# =============================================================================
# File: eventcore/config/dlq_config.py
# Description: Dead letter queue configuration
# =============================================================================

from functools import lru_cache

from pydantic import Field
from pydantic_settings import SettingsConfigDict

from eventcore.common.base.base_config import BaseConfig


class DLQConfig(BaseConfig):
    """
    Dead letter queue settings for commands that exhausted their retries.
    """

    model_config = SettingsConfigDict(
        {**BaseConfig.model_config, 'env_prefix': 'DLQ_'},
    )

    enabled: bool = Field(default=True)
    backend: str = Field(default="memory", description="memory or postgres")
    retention_days: int = Field(default=30, description="purge_older_than default")
    list_limit: int = Field(default=100, description="Default page size for list()")
    max_payload_bytes: int = Field(default=1_000_000)


@lru_cache(maxsize=1)
def get_dlq_config() -> DLQConfig:
    return DLQConfig()


def reset_dlq_config() -> None:
    get_dlq_config.cache_clear()
