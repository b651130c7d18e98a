# =============================================================================
# File: eventcore/config/event_store_config.py
# Description: Event store configuration
# =============================================================================

from functools import lru_cache

from pydantic import Field
from pydantic_settings import SettingsConfigDict

from eventcore.common.base.base_config import BaseConfig


class EventStoreConfig(BaseConfig):
    """Event log store settings."""

    model_config = SettingsConfigDict(
        {**BaseConfig.model_config, 'env_prefix': 'EVENT_STORE_'},
    )

    backend: str = Field(default="memory", description="memory or postgres")
    page_size: int = Field(default=500, description="Events fetched per page on load")
    max_batch_size: int = Field(default=1000, description="Maximum events per append")
    schema_on_startup: bool = Field(default=False, description="Apply schema.sql when the store starts")
    log_appends: bool = Field(default=True)

    # Archival
    archive_after_days: float = Field(default=90.0, description="Streams idle this long are archived")
    archive_batch_size: int = Field(default=100, description="Streams archived per archive_inactive() run")


@lru_cache(maxsize=1)
def get_event_store_config() -> EventStoreConfig:
    return EventStoreConfig()


def reset_event_store_config() -> None:
    get_event_store_config.cache_clear()
