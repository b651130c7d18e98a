# =============================================================================
# File: eventcore/infra/event_store/event_store.py
# Description: Append-only event log interface and in-memory implementation
# =============================================================================

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from eventcore.common.exceptions.exceptions import ConcurrencyConflictError
from eventcore.infra.event_store.event_envelope import NewEvent, StoredEvent
from eventcore.infra.metrics.snapshot_metrics import concurrency_conflicts, events_appended

log = logging.getLogger("eventcore.event_store")


@dataclass
class AppendRequest:
    """Events for one aggregate, appended at `expected_version`"""
    aggregate_id: str
    aggregate_type: str
    expected_version: int
    events: List[NewEvent]
    metadata: Dict[str, Any] = field(default_factory=dict)


class EventStore(ABC):
    """
    Append-only event log.

    Per aggregate, versions are contiguous starting at 1. Every committed
    event also gets the next global sequence number, which orders events
    across aggregates for catch-up readers.
    """

    async def append(
            self,
            aggregate_id: str,
            aggregate_type: str,
            expected_version: int,
            events: Sequence[NewEvent],
            metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        """
        Atomically append events if the stream is at `expected_version`.

        Returns the new stream version. Raises ConcurrencyConflictError when
        the stream moved; nothing is written in that case.
        """
        versions = await self.append_batch([
            AppendRequest(
                aggregate_id=str(aggregate_id),
                aggregate_type=aggregate_type,
                expected_version=expected_version,
                events=list(events),
                metadata=dict(metadata or {}),
            )
        ])
        return versions[0]

    @abstractmethod
    async def append_batch(self, requests: Sequence[AppendRequest]) -> List[int]:
        """Commit several appends in one transaction; any conflict aborts all of them."""

    @abstractmethod
    def load(
            self,
            aggregate_id: str,
            from_version: int = 0,
            to_version: Optional[int] = None,
    ) -> AsyncIterator[StoredEvent]:
        """Events with from_version < aggregate_version <= to_version, in order."""

    @abstractmethod
    def global_sequence(
            self,
            after_sequence_number: int = 0,
            limit: Optional[int] = None,
    ) -> AsyncIterator[StoredEvent]:
        """All events after the given sequence number in commit order."""

    @abstractmethod
    async def get_version(self, aggregate_id: str) -> int:
        """Current stream version (0 when there are no events)."""

    @abstractmethod
    def load_by_aggregate_type(
            self,
            aggregate_type: str,
            since: Optional[datetime] = None,
    ) -> AsyncIterator[StoredEvent]:
        """Audit read by (aggregate_type, occurred_at)."""

    @abstractmethod
    def load_by_event_type(
            self,
            event_type: str,
            since: Optional[datetime] = None,
    ) -> AsyncIterator[StoredEvent]:
        """Audit read by (event_type, occurred_at)."""

    async def load_all(self, aggregate_id: str, from_version: int = 0) -> List[StoredEvent]:
        """Materialize load() into a list."""
        return [event async for event in self.load(aggregate_id, from_version)]

    # =========================================================================
    # Archival
    # =========================================================================

    @abstractmethod
    async def archive(self, aggregate_id: str, through_version: int) -> int:
        """
        Move events up to `through_version` out of the hot log.

        The latest event of a stream is never moved. Archived events are
        still returned by every read, so archiving changes where events
        live, not what readers see. Returns the number of events moved.
        """

    @abstractmethod
    async def archived_version(self, aggregate_id: str) -> int:
        """Highest archived version of a stream (0 when nothing is archived)."""

    @abstractmethod
    async def find_inactive_streams(self, before: datetime, limit: int) -> List[str]:
        """Streams whose latest event is older than `before` and that still have events to archive."""


def validate_request(request: AppendRequest, max_batch_size: Optional[int] = None) -> None:
    if request.expected_version < 0:
        raise ValueError(f"expected_version must be >= 0, got {request.expected_version}")
    if max_batch_size is not None and len(request.events) > max_batch_size:
        raise ValueError(
            f"Append of {len(request.events)} events exceeds max batch size {max_batch_size}"
        )


class InMemoryEventStore(EventStore):
    """
    Event store kept in process memory.

    The commit critical section is guarded by an asyncio.Lock, which plays
    the part of the database's uniqueness constraint. Reads do not lock:
    committed lists are only ever appended to, and archiving replaces a
    stream's hot list rather than mutating it.
    """

    def __init__(self, page_size: int = 500, max_batch_size: Optional[int] = 1000):
        self._page_size = page_size
        self._max_batch_size = max_batch_size
        self._log: List[StoredEvent] = []
        self._streams: Dict[str, List[StoredEvent]] = {}
        self._archive: Dict[str, List[StoredEvent]] = {}
        self._lock = asyncio.Lock()

    async def append_batch(self, requests: Sequence[AppendRequest]) -> List[int]:
        for request in requests:
            validate_request(request, self._max_batch_size)

        async with self._lock:
            pending_versions: Dict[str, int] = {}
            staged: List[StoredEvent] = []
            new_versions: List[int] = []
            sequence = len(self._log)

            for request in requests:
                current = pending_versions.get(
                    request.aggregate_id,
                    self._stream_length(request.aggregate_id),
                )
                if current != request.expected_version:
                    concurrency_conflicts.labels(aggregate_type=request.aggregate_type).inc()
                    raise ConcurrencyConflictError(
                        request.aggregate_id, request.expected_version, current
                    )

                version = current
                for new_event in request.events:
                    version += 1
                    sequence += 1
                    staged.append(StoredEvent(
                        sequence_number=sequence,
                        aggregate_id=request.aggregate_id,
                        aggregate_type=request.aggregate_type,
                        aggregate_version=version,
                        event_id=new_event.event_id,
                        event_type=new_event.event_type,
                        event_version=new_event.event_version,
                        payload=dict(new_event.payload),
                        metadata={**request.metadata, **new_event.metadata},
                        occurred_at=new_event.occurred_at,
                    ))
                pending_versions[request.aggregate_id] = version
                new_versions.append(version)

            # Nothing is visible until every request has passed its version check
            for stored in staged:
                self._log.append(stored)
                self._streams.setdefault(stored.aggregate_id, []).append(stored)

        for request, version in zip(requests, new_versions):
            if request.events:
                events_appended.labels(aggregate_type=request.aggregate_type).inc(len(request.events))
                log.debug(
                    f"Appended {len(request.events)} events to {request.aggregate_type}-{request.aggregate_id} "
                    f"(version: {request.expected_version} -> {version})"
                )
        return new_versions

    async def load(
            self,
            aggregate_id: str,
            from_version: int = 0,
            to_version: Optional[int] = None,
    ) -> AsyncIterator[StoredEvent]:
        aggregate_id = str(aggregate_id)
        stream = self._archive.get(aggregate_id, []) + self._streams.get(aggregate_id, [])
        # Versions start at 1, so version v lives at index v - 1
        position = max(from_version, 0)
        while True:
            end = position + self._page_size
            if to_version is not None:
                end = min(end, to_version)
            page = stream[position:end]
            if not page:
                return
            for event in page:
                yield event
            position += len(page)
            await asyncio.sleep(0)

    async def global_sequence(
            self,
            after_sequence_number: int = 0,
            limit: Optional[int] = None,
    ) -> AsyncIterator[StoredEvent]:
        position = max(after_sequence_number, 0)
        emitted = 0
        while limit is None or emitted < limit:
            page_size = self._page_size if limit is None else min(self._page_size, limit - emitted)
            page = self._log[position:position + page_size]
            if not page:
                return
            for event in page:
                yield event
            emitted += len(page)
            position += len(page)
            await asyncio.sleep(0)

    async def get_version(self, aggregate_id: str) -> int:
        return self._stream_length(str(aggregate_id))

    def _stream_length(self, aggregate_id: str) -> int:
        return len(self._archive.get(aggregate_id, ())) + len(self._streams.get(aggregate_id, ()))

    async def load_by_aggregate_type(
            self,
            aggregate_type: str,
            since: Optional[datetime] = None,
    ) -> AsyncIterator[StoredEvent]:
        for event in list(self._log):
            if event.aggregate_type == aggregate_type and (since is None or event.occurred_at >= since):
                yield event

    async def load_by_event_type(
            self,
            event_type: str,
            since: Optional[datetime] = None,
    ) -> AsyncIterator[StoredEvent]:
        for event in list(self._log):
            if event.event_type == event_type and (since is None or event.occurred_at >= since):
                yield event

    @property
    def last_sequence_number(self) -> int:
        return len(self._log)

    async def archive(self, aggregate_id: str, through_version: int) -> int:
        aggregate_id = str(aggregate_id)
        async with self._lock:
            hot = self._streams.get(aggregate_id, [])
            cutoff = min(through_version, self._stream_length(aggregate_id) - 1)
            moving = [event for event in hot if event.aggregate_version <= cutoff]
            if not moving:
                return 0
            self._archive[aggregate_id] = self._archive.get(aggregate_id, []) + moving
            self._streams[aggregate_id] = hot[len(moving):]
        return len(moving)

    async def archived_version(self, aggregate_id: str) -> int:
        return len(self._archive.get(str(aggregate_id), ()))

    async def find_inactive_streams(self, before: datetime, limit: int) -> List[str]:
        idle = [
            (stream[-1].occurred_at, aggregate_id)
            for aggregate_id, stream in self._streams.items()
            if len(stream) > 1 and stream[-1].occurred_at < before
        ]
        return [aggregate_id for _, aggregate_id in sorted(idle)[:limit]]
