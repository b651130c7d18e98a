# =============================================================================
# File: eventcore/common/base/base_config.py
# Description: Settings base class shared by every eventcore config section
# =============================================================================

from enum import Enum
from typing import Any, Dict

from pydantic import SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

SECRET_MASK = "**********"


class BaseConfig(BaseSettings):
    """
    Base for the eventcore config sections (EVENT_STORE_, SNAPSHOT_, CACHE_,
    COMMAND_BUS_, DLQ_, SAGA_, PG_, REDIS_, RELIABILITY_).

    Subclasses extend `model_config` with their env prefix and are exposed
    through an `@lru_cache(maxsize=1)` getter with a matching `reset_*`.
    Connection strings are SecretStr and stay masked in repr and in
    `effective_settings()`.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
    )

    def effective_settings(self) -> Dict[str, Any]:
        """Flat field -> value view logged at startup."""
        settings: Dict[str, Any] = {}
        for name, value in self:
            if isinstance(value, SecretStr):
                value = SECRET_MASK
            elif isinstance(value, Enum):
                value = value.value
            settings[name] = value
        return settings
