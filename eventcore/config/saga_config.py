# eventcore/config/saga_config.py
"""
Saga coordinator settings.
"""

from functools import lru_cache

from pydantic import Field
from pydantic_settings import SettingsConfigDict

from eventcore.common.base.base_config import BaseConfig


class SagaConfig(BaseConfig):
    """
    Saga configuration with sensible defaults.
    """

    model_config = SettingsConfigDict(
        {**BaseConfig.model_config, 'env_prefix': 'SAGA_'},
    )

    default_timeout_seconds: float = Field(
        default=300,
        description="Default timeout for a whole saga in seconds"
    )
    default_step_timeout_seconds: float = Field(
        default=30,
        description="Default timeout for a single step"
    )
    compensation_timeout_seconds: float = Field(
        default=30,
        description="Timeout for each compensation"
    )
    state_backend: str = Field(default="memory", description="memory or postgres")


@lru_cache(maxsize=1)
def get_saga_config() -> SagaConfig:
    return SagaConfig()


def reset_saga_config() -> None:
    get_saga_config.cache_clear()
