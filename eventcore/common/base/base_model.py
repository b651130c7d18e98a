# =============================================================================
# File: eventcore/common/base/base_model.py
# Description: Base Pydantic model for all domain events
# =============================================================================

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Final

from pydantic import BaseModel, ConfigDict, Field

# Schema version for events that do not override it
_DEFAULT_DOMAIN_EVENT_VERSION: Final[int] = 1


class BaseEvent(BaseModel):
    """
    Base Pydantic model for all domain events.

    `event_type` is overridden by a Literal in each concrete event and
    `version` is the schema version used by upcasters. `timestamp` is the
    moment the fact happened; aggregates read it from the event instead of
    the clock so that replay is deterministic.
    """
    event_id: uuid.UUID = Field(default_factory=uuid.uuid4)
    event_type: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    version: int = Field(default=_DEFAULT_DOMAIN_EVENT_VERSION, description="Version of this event model's schema")

    model_config = ConfigDict(
        frozen=True,
        from_attributes=True,
        populate_by_name=True,
        extra='allow',
    )

    @classmethod
    def schema_version(cls) -> int:
        """Current schema version declared on the model class."""
        return cls.model_fields["version"].default
