# =============================================================================
# File: eventcore/infra/event_store/event_envelope.py
# Description: Event envelope data structures for the event store
# =============================================================================

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from eventcore.common.base.base_model import BaseEvent
from eventcore.utils.datetime_utils import ensure_utc

# Envelope fields that are stored in their own columns, not in the payload
_ENVELOPE_FIELDS = {"event_type", "version"}


@dataclass
class NewEvent:
    """An event accepted for append but not yet committed."""
    event_type: str
    payload: Dict[str, Any]
    occurred_at: datetime
    event_version: int = 1
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_domain_event(cls, event: BaseEvent, metadata: Optional[Dict[str, Any]] = None) -> NewEvent:
        return cls(
            event_type=event.event_type,
            payload=event.model_dump(mode="json", exclude=_ENVELOPE_FIELDS),
            occurred_at=ensure_utc(event.timestamp),
            event_version=event.version,
            event_id=str(event.event_id),
            metadata=dict(metadata or {}),
        )


@dataclass(frozen=True)
class StoredEvent:
    """Committed event with its global and per-aggregate position"""
    sequence_number: int
    aggregate_id: str
    aggregate_type: str
    aggregate_version: int
    event_id: str
    event_type: str
    event_version: int
    payload: Dict[str, Any]
    metadata: Dict[str, Any]
    occurred_at: datetime

    @property
    def causation_id(self) -> Optional[str]:
        return self.metadata.get("causation_id")

    @property
    def correlation_id(self) -> Optional[str]:
        return self.metadata.get("correlation_id")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence_number": self.sequence_number,
            "aggregate_id": self.aggregate_id,
            "aggregate_type": self.aggregate_type,
            "aggregate_version": self.aggregate_version,
            "event_id": self.event_id,
            "event_type": self.event_type,
            "event_version": self.event_version,
            "payload": self.payload,
            "metadata": self.metadata,
            "occurred_at": self.occurred_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> StoredEvent:
        return cls(
            sequence_number=int(data["sequence_number"]),
            aggregate_id=str(data["aggregate_id"]),
            aggregate_type=data["aggregate_type"],
            aggregate_version=int(data["aggregate_version"]),
            event_id=str(data["event_id"]),
            event_type=data["event_type"],
            event_version=int(data.get("event_version", 1)),
            payload=dict(data.get("payload") or {}),
            metadata=dict(data.get("metadata") or {}),
            occurred_at=ensure_utc(data["occurred_at"]),
        )
