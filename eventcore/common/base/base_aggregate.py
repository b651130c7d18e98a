# =============================================================================
# File: eventcore/common/base/base_aggregate.py
# Description: Base class for event-sourced aggregates
# =============================================================================

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, ClassVar, Dict, List, Optional, Sequence, Type

from pydantic import BaseModel

from eventcore.common.base.base_model import BaseEvent

log = logging.getLogger("eventcore.aggregate")


class AggregateRoot(ABC):
    """
    Event-sourced aggregate.

    Subclasses declare `aggregate_type`, a pydantic `state_model`, and an
    `_event_handlers()` routing table {EventClass: self._on_x}. Command
    methods validate business rules and call `_apply_and_record(event)`.
    Event handlers must only read from the event and the current state so
    that replaying the same stream yields the same state.
    """

    aggregate_type: ClassVar[str] = ""
    state_model: ClassVar[Type[BaseModel]]

    def __init__(self, aggregate_id: str):
        self.id = str(aggregate_id)
        self.version: int = 0
        self.state = self.state_model()
        self._uncommitted_events: List[BaseEvent] = []

    # =========================================================================
    # Uncommitted events
    # =========================================================================

    def get_uncommitted_events(self) -> List[BaseEvent]:
        """Events recorded since the last commit"""
        return list(self._uncommitted_events)

    def mark_events_committed(self, events: Optional[Sequence[BaseEvent]] = None) -> None:
        if events is None:
            self._uncommitted_events.clear()
            return
        committed = {e.event_id for e in events}
        self._uncommitted_events = [e for e in self._uncommitted_events if e.event_id not in committed]

    @property
    def committed_version(self) -> int:
        """Version of the stream this instance was loaded at (before pending events)"""
        return self.version - len(self._uncommitted_events)

    def _apply_and_record(self, event: BaseEvent) -> None:
        self._apply(event)
        self._uncommitted_events.append(event)
        self.version += 1

    # =========================================================================
    # Event application
    # =========================================================================

    @abstractmethod
    def _event_handlers(self) -> Dict[Type[BaseEvent], Callable[[Any], None]]:
        """Map event classes to state mutators"""

    def _apply(self, event: BaseEvent) -> None:
        """Route event to appropriate handler"""
        handler = self._event_handlers().get(type(event))
        if handler:
            handler(event)
        else:
            log.warning(f"{self.aggregate_type} has no handler for {type(event).__name__}; event ignored")

    def apply_committed(self, event: BaseEvent, aggregate_version: int) -> None:
        """Apply an event loaded from the store during replay."""
        self._apply(event)
        self.version = aggregate_version

    # =========================================================================
    # Snapshots
    # =========================================================================

    def create_snapshot(self) -> Dict[str, Any]:
        """Create a JSON-compatible snapshot of current state"""
        return self.state.model_dump(mode="json")

    def restore_from_snapshot(self, snapshot_state: Dict[str, Any], version: int) -> None:
        self.state = self.state_model.model_validate(snapshot_state)
        self.version = version

    @classmethod
    def replay_from_events(
            cls,
            aggregate_id: str,
            events: Sequence[BaseEvent],
            snapshot_state: Optional[Dict[str, Any]] = None,
            snapshot_version: int = 0,
    ) -> "AggregateRoot":
        """Rebuild an aggregate from an optional snapshot and the events after it."""
        agg = cls(aggregate_id)
        if snapshot_state is not None:
            agg.restore_from_snapshot(snapshot_state, snapshot_version)
        version = agg.version
        for event in events:
            version += 1
            agg.apply_committed(event, version)
        return agg
