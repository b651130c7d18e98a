# =============================================================================
# File: eventcore/infra/event_store/pg_event_store.py
# Description: PostgreSQL event log store (asyncpg)
# =============================================================================

from __future__ import annotations

import logging
from datetime import datetime
from importlib import resources
from typing import AsyncIterator, List, Optional, Sequence

import asyncpg
from asyncpg.exceptions import UniqueViolationError

from eventcore.common.exceptions.exceptions import ConcurrencyConflictError
from eventcore.config.event_store_config import EventStoreConfig
from eventcore.infra.event_store.event_envelope import StoredEvent
from eventcore.infra.event_store.event_store import AppendRequest, EventStore, validate_request
from eventcore.infra.metrics.snapshot_metrics import concurrency_conflicts, events_appended
from eventcore.infra.persistence.pg_client import PostgresClient

log = logging.getLogger("eventcore.event_store.pg")

_EVENT_COLUMNS = (
    "sequence_number, event_id, aggregate_id, aggregate_type, aggregate_version, "
    "event_type, event_version, payload, metadata, occurred_at"
)

# Archived and hot rows together; every read goes through this so archiving is invisible to readers
_ALL_EVENTS = (
    f"(SELECT {_EVENT_COLUMNS} FROM event_archive "
    f"UNION ALL SELECT {_EVENT_COLUMNS} FROM event_store) AS events"
)


def load_schema_sql() -> str:
    return resources.files("eventcore.infra.event_store").joinpath("schema.sql").read_text(encoding="utf-8")


def _row_to_event(row: asyncpg.Record) -> StoredEvent:
    return StoredEvent(
        sequence_number=row["sequence_number"],
        aggregate_id=row["aggregate_id"],
        aggregate_type=row["aggregate_type"],
        aggregate_version=row["aggregate_version"],
        event_id=str(row["event_id"]),
        event_type=row["event_type"],
        event_version=row["event_version"],
        payload=row["payload"],
        metadata=row["metadata"] or {},
        occurred_at=row["occurred_at"],
    )


class PostgresEventStore(EventStore):
    """
    Event store on the `event_store` table, with `event_archive` holding
    events moved out of the hot log.

    Version checks rely on the (aggregate_id, aggregate_version) unique
    constraint; the global sequence comes from the single-row
    `event_sequence` counter updated in the same transaction.
    """

    def __init__(self, client: PostgresClient, config: Optional[EventStoreConfig] = None):
        self._client = client
        self._config = config or EventStoreConfig()

    async def initialize(self) -> None:
        if self._config.schema_on_startup:
            await self._client.run_schema(load_schema_sql())

    async def append_batch(self, requests: Sequence[AppendRequest]) -> List[int]:
        for request in requests:
            validate_request(request, self._config.max_batch_size)

        total_events = sum(len(r.events) for r in requests)
        new_versions: List[int] = []

        try:
            async with self._client.transaction() as conn:
                last_sequence = 0
                if total_events:
                    # Row lock on the counter also orders concurrent appenders
                    last_sequence = await conn.fetchval(
                        "UPDATE event_sequence SET last_value = last_value + $1 "
                        "WHERE id = 1 RETURNING last_value",
                        total_events,
                    )
                sequence = last_sequence - total_events
                pending_versions = {}

                for request in requests:
                    current = pending_versions.get(request.aggregate_id)
                    if current is None:
                        current = await conn.fetchval(
                            "SELECT COALESCE(MAX(aggregate_version), 0) FROM event_store WHERE aggregate_id = $1",
                            request.aggregate_id,
                        )
                    if current != request.expected_version:
                        raise ConcurrencyConflictError(
                            request.aggregate_id, request.expected_version, current
                        )

                    version = current
                    rows = []
                    for new_event in request.events:
                        version += 1
                        sequence += 1
                        rows.append((
                            sequence,
                            new_event.event_id,
                            request.aggregate_id,
                            request.aggregate_type,
                            version,
                            new_event.event_type,
                            new_event.event_version,
                            new_event.payload,
                            {**request.metadata, **new_event.metadata},
                            new_event.occurred_at,
                        ))
                    if rows:
                        await conn.executemany(
                            f"INSERT INTO event_store ({_EVENT_COLUMNS}) "
                            f"VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)",
                            rows,
                        )
                    pending_versions[request.aggregate_id] = version
                    new_versions.append(version)

        except ConcurrencyConflictError as conflict:
            concurrency_conflicts.labels(aggregate_type=_type_for(requests, conflict.aggregate_id)).inc()
            raise
        except UniqueViolationError as err:
            # A concurrent writer committed the same version between our read and insert
            request = requests[0] if len(requests) == 1 else None
            aggregate_id = request.aggregate_id if request else "batch"
            concurrency_conflicts.labels(aggregate_type=request.aggregate_type if request else "batch").inc()
            actual = await self.get_version(aggregate_id) if request else -1
            raise ConcurrencyConflictError(
                aggregate_id, request.expected_version if request else -1, actual
            ) from err

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
        position = from_version
        upper = to_version if to_version is not None else 2 ** 31 - 1
        while True:
            rows = await self._client.fetch(
                f"SELECT {_EVENT_COLUMNS} FROM {_ALL_EVENTS} "
                f"WHERE aggregate_id = $1 AND aggregate_version > $2 AND aggregate_version <= $3 "
                f"ORDER BY aggregate_version LIMIT $4",
                str(aggregate_id), position, upper, self._config.page_size,
            )
            if not rows:
                return
            for row in rows:
                event = _row_to_event(row)
                position = event.aggregate_version
                yield event
            if len(rows) < self._config.page_size:
                return

    async def global_sequence(
            self,
            after_sequence_number: int = 0,
            limit: Optional[int] = None,
    ) -> AsyncIterator[StoredEvent]:
        position = after_sequence_number
        emitted = 0
        while limit is None or emitted < limit:
            page_size = self._config.page_size if limit is None else min(self._config.page_size, limit - emitted)
            rows = await self._client.fetch(
                f"SELECT {_EVENT_COLUMNS} FROM {_ALL_EVENTS} WHERE sequence_number > $1 "
                f"ORDER BY sequence_number LIMIT $2",
                position, page_size,
            )
            if not rows:
                return
            for row in rows:
                event = _row_to_event(row)
                position = event.sequence_number
                emitted += 1
                yield event
            if len(rows) < page_size:
                return

    async def get_version(self, aggregate_id: str) -> int:
        return await self._client.fetchval(
            "SELECT COALESCE(MAX(aggregate_version), 0) FROM event_store WHERE aggregate_id = $1",
            str(aggregate_id),
        )

    async def archive(self, aggregate_id: str, through_version: int) -> int:
        # The head row stays in event_store, so MAX(aggregate_version) there is still the stream version
        result = await self._client.execute(
            f"WITH moved AS ("
            f"DELETE FROM event_store WHERE aggregate_id = $1 AND aggregate_version <= $2 "
            f"AND aggregate_version < (SELECT MAX(aggregate_version) FROM event_store WHERE aggregate_id = $1) "
            f"RETURNING {_EVENT_COLUMNS}) "
            f"INSERT INTO event_archive ({_EVENT_COLUMNS}) SELECT {_EVENT_COLUMNS} FROM moved",
            str(aggregate_id), through_version,
        )
        # asyncpg returns the command tag, e.g. "INSERT 0 12"
        return int(result.split()[-1])

    async def archived_version(self, aggregate_id: str) -> int:
        return await self._client.fetchval(
            "SELECT COALESCE(MAX(aggregate_version), 0) FROM event_archive WHERE aggregate_id = $1",
            str(aggregate_id),
        )

    async def find_inactive_streams(self, before: datetime, limit: int) -> List[str]:
        rows = await self._client.fetch(
            "SELECT aggregate_id FROM event_store GROUP BY aggregate_id "
            "HAVING MAX(occurred_at) < $1 AND COUNT(*) > 1 "
            "ORDER BY MAX(occurred_at) LIMIT $2",
            before, limit,
        )
        return [row["aggregate_id"] for row in rows]

    async def load_by_aggregate_type(
            self,
            aggregate_type: str,
            since: Optional[datetime] = None,
    ) -> AsyncIterator[StoredEvent]:
        async for event in self._load_by("aggregate_type", aggregate_type, since):
            yield event

    async def load_by_event_type(
            self,
            event_type: str,
            since: Optional[datetime] = None,
    ) -> AsyncIterator[StoredEvent]:
        async for event in self._load_by("event_type", event_type, since):
            yield event

    async def _load_by(self, column: str, value: str, since: Optional[datetime]) -> AsyncIterator[StoredEvent]:
        position = 0
        while True:
            rows = await self._client.fetch(
                f"SELECT {_EVENT_COLUMNS} FROM {_ALL_EVENTS} "
                f"WHERE {column} = $1 AND ($2::timestamptz IS NULL OR occurred_at >= $2) "
                f"AND sequence_number > $3 ORDER BY sequence_number LIMIT $4",
                value, since, position, self._config.page_size,
            )
            if not rows:
                return
            for row in rows:
                event = _row_to_event(row)
                position = event.sequence_number
                yield event


def _type_for(requests: Sequence[AppendRequest], aggregate_id: str) -> str:
    for request in requests:
        if request.aggregate_id == aggregate_id:
            return request.aggregate_type
    return "unknown"
