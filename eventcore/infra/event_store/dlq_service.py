# eventcore/infra/event_store/dlq_service.py
"""
Dead Letter Queue for commands.

A command lands here once the bus has exhausted its retry policy. Each
entry keeps the command type, full payload, final error kind and message,
and the number of attempts made, so an operator can inspect it and either
re-dispatch it (`retry`) or drop it (`discard`).

Recording is synchronous: `add` returns only after the entry is stored,
so a dead-lettered command is never silently lost.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from eventcore.common.exceptions.exceptions import error_kind_of
from eventcore.config.dlq_config import DLQConfig
from eventcore.infra.metrics.dlq_metrics import (
    dlq_entries_added,
    dlq_entries_discarded,
    dlq_entries_retried,
    dlq_pending,
)
from eventcore.infra.persistence.pg_client import PostgresClient
from eventcore.utils.datetime_utils import SYSTEM_CLOCK, Clock
from eventcore.utils.serialization import canonical_json

if TYPE_CHECKING:
    from eventcore.infra.cqrs.command_bus import CommandBus, CommandResult

log = logging.getLogger("eventcore.event_store.dlq")


class DLQStatus(str, Enum):
    PENDING = "pending"
    RETRYING = "retrying"
    RETRIED = "retried"
    DISCARDED = "discarded"


@dataclass
class DeadLetterEntry:
    entry_id: str
    command_id: str
    command_type: str
    payload: Dict[str, Any]
    error_kind: str
    error_message: str
    attempts: int
    created_at: datetime
    updated_at: datetime
    status: DLQStatus = DLQStatus.PENDING
    retry_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "command_id": self.command_id,
            "command_type": self.command_type,
            "payload": self.payload,
            "error_kind": self.error_kind,
            "error_message": self.error_message,
            "attempts": self.attempts,
            "status": self.status.value,
            "retry_count": self.retry_count,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


# =============================================================================
# Storage
# =============================================================================

class DeadLetterStore(ABC):
    """Persistence for dead letter entries"""

    @abstractmethod
    async def insert(self, entry: DeadLetterEntry) -> None:
        ...

    @abstractmethod
    async def update(self, entry: DeadLetterEntry) -> None:
        ...

    @abstractmethod
    async def claim(
            self,
            entry_id: str,
            expected: DLQStatus,
            status: DLQStatus,
            updated_at: datetime,
    ) -> Optional[DeadLetterEntry]:
        """Move the entry to `status` only if it is still `expected`; None otherwise."""

    @abstractmethod
    async def get(self, entry_id: str) -> Optional[DeadLetterEntry]:
        ...

    @abstractmethod
    async def list(self, status: Optional[DLQStatus], limit: int) -> List[DeadLetterEntry]:
        """Entries oldest first."""

    @abstractmethod
    async def delete_older_than(self, cutoff: datetime) -> List[DLQStatus]:
        """Delete entries created before `cutoff`, except those being retried. Returns their statuses."""

    @abstractmethod
    async def all(self) -> List[DeadLetterEntry]:
        ...


class InMemoryDeadLetterStore(DeadLetterStore):

    def __init__(self):
        self._entries: Dict[str, DeadLetterEntry] = {}
        self._lock = asyncio.Lock()

    async def insert(self, entry: DeadLetterEntry) -> None:
        async with self._lock:
            self._entries[entry.entry_id] = replace(entry)

    async def update(self, entry: DeadLetterEntry) -> None:
        async with self._lock:
            self._entries[entry.entry_id] = replace(entry)

    async def claim(
            self,
            entry_id: str,
            expected: DLQStatus,
            status: DLQStatus,
            updated_at: datetime,
    ) -> Optional[DeadLetterEntry]:
        async with self._lock:
            entry = self._entries.get(str(entry_id))
            if entry is None or entry.status != expected:
                return None
            entry.status = status
            entry.updated_at = updated_at
            return replace(entry)

    async def get(self, entry_id: str) -> Optional[DeadLetterEntry]:
        entry = self._entries.get(str(entry_id))
        return replace(entry) if entry is not None else None

    async def list(self, status: Optional[DLQStatus], limit: int) -> List[DeadLetterEntry]:
        entries = sorted(self._entries.values(), key=lambda e: e.created_at)
        if status is not None:
            entries = [e for e in entries if e.status == status]
        return [replace(e) for e in entries[:limit]]

    async def delete_older_than(self, cutoff: datetime) -> List[DLQStatus]:
        async with self._lock:
            doomed = [
                k for k, e in self._entries.items()
                if e.created_at < cutoff and e.status != DLQStatus.RETRYING
            ]
            return [self._entries.pop(key).status for key in doomed]

    async def all(self) -> List[DeadLetterEntry]:
        return [replace(e) for e in self._entries.values()]


_ENTRY_COLUMNS = (
    "entry_id, command_id, command_type, payload, error_kind, error_message, "
    "attempts, status, retry_count, created_at, updated_at"
)


def _row_to_entry(row: Any) -> DeadLetterEntry:
    return DeadLetterEntry(
        entry_id=str(row["entry_id"]),
        command_id=row["command_id"],
        command_type=row["command_type"],
        payload=row["payload"],
        error_kind=row["error_kind"],
        error_message=row["error_message"],
        attempts=row["attempts"],
        status=DLQStatus(row["status"]),
        retry_count=row["retry_count"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class PostgresDeadLetterStore(DeadLetterStore):
    """Entries in the `dead_letter_queue` table"""

    def __init__(self, client: PostgresClient):
        self._client = client

    async def insert(self, entry: DeadLetterEntry) -> None:
        await self._client.execute(
            f"INSERT INTO dead_letter_queue ({_ENTRY_COLUMNS}) "
            "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)",
            uuid.UUID(entry.entry_id), entry.command_id, entry.command_type, entry.payload,
            entry.error_kind, entry.error_message, entry.attempts, entry.status.value,
            entry.retry_count, entry.created_at, entry.updated_at,
        )

    async def update(self, entry: DeadLetterEntry) -> None:
        await self._client.execute(
            "UPDATE dead_letter_queue SET error_kind = $2, error_message = $3, status = $4, "
            "retry_count = $5, updated_at = $6 WHERE entry_id = $1",
            uuid.UUID(entry.entry_id), entry.error_kind, entry.error_message,
            entry.status.value, entry.retry_count, entry.updated_at,
        )

    async def claim(
            self,
            entry_id: str,
            expected: DLQStatus,
            status: DLQStatus,
            updated_at: datetime,
    ) -> Optional[DeadLetterEntry]:
        row = await self._client.fetchrow(
            f"UPDATE dead_letter_queue SET status = $3, updated_at = $4 "
            f"WHERE entry_id = $1 AND status = $2 RETURNING {_ENTRY_COLUMNS}",
            uuid.UUID(str(entry_id)), expected.value, status.value, updated_at,
        )
        return _row_to_entry(row) if row is not None else None

    async def get(self, entry_id: str) -> Optional[DeadLetterEntry]:
        row = await self._client.fetchrow(
            f"SELECT {_ENTRY_COLUMNS} FROM dead_letter_queue WHERE entry_id = $1",
            uuid.UUID(str(entry_id)),
        )
        return _row_to_entry(row) if row is not None else None

    async def list(self, status: Optional[DLQStatus], limit: int) -> List[DeadLetterEntry]:
        rows = await self._client.fetch(
            f"SELECT {_ENTRY_COLUMNS} FROM dead_letter_queue "
            "WHERE ($1::text IS NULL OR status = $1) ORDER BY created_at LIMIT $2",
            status.value if status is not None else None, limit,
        )
        return [_row_to_entry(r) for r in rows]

    async def delete_older_than(self, cutoff: datetime) -> List[DLQStatus]:
        rows = await self._client.fetch(
            "DELETE FROM dead_letter_queue WHERE created_at < $1 AND status <> $2 RETURNING status",
            cutoff, DLQStatus.RETRYING.value,
        )
        return [DLQStatus(r["status"]) for r in rows]

    async def all(self) -> List[DeadLetterEntry]:
        rows = await self._client.fetch(f"SELECT {_ENTRY_COLUMNS} FROM dead_letter_queue")
        return [_row_to_entry(r) for r in rows]


# =============================================================================
# Service
# =============================================================================

class DLQService:
    """Operator-facing dead letter queue interface."""

    def __init__(
            self,
            store: Optional[DeadLetterStore] = None,
            config: Optional[DLQConfig] = None,
            clock: Clock = SYSTEM_CLOCK,
    ):
        self.config = config or DLQConfig()
        self.store = store or InMemoryDeadLetterStore()
        self._clock = clock

    async def add(
            self,
            command_id: str,
            command_type: str,
            payload: Dict[str, Any],
            error: BaseException,
            attempts: int,
    ) -> DeadLetterEntry:
        size = len(canonical_json(payload))
        if size > self.config.max_payload_bytes:
            log.warning(f"DLQ payload for {command_type} {command_id} is {size} bytes")

        now = self._clock.now()
        kind = error_kind_of(error).value
        entry = DeadLetterEntry(
            entry_id=str(uuid.uuid4()),
            command_id=str(command_id),
            command_type=command_type,
            payload=payload,
            error_kind=kind,
            error_message=str(error),
            attempts=attempts,
            created_at=now,
            updated_at=now,
        )
        await self.store.insert(entry)
        dlq_entries_added.labels(command_type=command_type, error_kind=kind).inc()
        dlq_pending.inc()
        log.error(
            f"Command {command_type} {command_id} dead-lettered after {attempts} attempts "
            f"({kind}): {error}",
            extra={"command_id": str(command_id), "error_kind": kind},
        )
        return entry

    async def list(self, status: Optional[DLQStatus] = None, limit: Optional[int] = None) -> List[DeadLetterEntry]:
        return await self.store.list(status, limit or self.config.list_limit)

    async def get(self, entry_id: str) -> Optional[DeadLetterEntry]:
        return await self.store.get(entry_id)

    async def _claim(self, entry_id: str, status: DLQStatus) -> DeadLetterEntry:
        """Atomically take a PENDING entry; a concurrent retry or discard loses."""
        entry = await self.store.claim(entry_id, DLQStatus.PENDING, status, self._clock.now())
        if entry is not None:
            return entry
        current = await self.store.get(entry_id)
        if current is None:
            raise KeyError(f"No dead letter entry {entry_id}")
        raise ValueError(f"Dead letter entry {entry_id} is {current.status.value}, not pending")

    async def retry(self, entry_id: str, bus: "CommandBus") -> "CommandResult":
        """
        Re-dispatch the stored command through `bus`.

        The entry is RETRYING while the command runs, so a second retry of
        the same entry is refused. On success it becomes RETRIED. On failure
        it goes back to PENDING with `retry_count` incremented and the new
        error recorded, and the error is re-raised. A failed retry never
        creates a second entry.
        """
        entry = await self._claim(entry_id, DLQStatus.RETRYING)
        try:
            command_cls = bus.registry.command_type(entry.command_type)
            command = command_cls.model_validate(entry.payload)
            result = await bus.dispatch(command, dead_letter=False)
        except asyncio.CancelledError:
            entry.status = DLQStatus.PENDING
            entry.updated_at = self._clock.now()
            await self.store.update(entry)
            raise
        except Exception as e:
            entry.status = DLQStatus.PENDING
            entry.retry_count += 1
            entry.error_kind = error_kind_of(e).value
            entry.error_message = str(e)
            entry.updated_at = self._clock.now()
            await self.store.update(entry)
            dlq_entries_retried.labels(outcome="failed").inc()
            log.warning(f"Retry of dead letter {entry_id} failed (retry #{entry.retry_count}): {e}")
            raise

        entry.status = DLQStatus.RETRIED
        entry.retry_count += 1
        entry.updated_at = self._clock.now()
        await self.store.update(entry)
        dlq_entries_retried.labels(outcome="succeeded").inc()
        dlq_pending.dec()
        log.info(f"Dead letter {entry_id} ({entry.command_type}) retried successfully")
        return result

    async def discard(self, entry_id: str) -> DeadLetterEntry:
        entry = await self._claim(entry_id, DLQStatus.DISCARDED)
        dlq_entries_discarded.inc()
        dlq_pending.dec()
        log.info(f"Dead letter {entry_id} ({entry.command_type}) discarded")
        return entry

    async def purge_older_than(self, days: Optional[int] = None) -> int:
        """Delete entries older than `days`; entries mid-retry are kept."""
        days = self.config.retention_days if days is None else days
        cutoff = self._clock.now() - timedelta(days=days)
        statuses = await self.store.delete_older_than(cutoff)
        pending = sum(1 for s in statuses if s == DLQStatus.PENDING)
        if pending:
            dlq_pending.dec(pending)
        if statuses:
            log.info(f"Purged {len(statuses)} dead letter entries older than {days} days ({pending} pending)")
        return len(statuses)

    async def get_statistics(self) -> Dict[str, Any]:
        entries = await self.store.all()
        by_status: Dict[str, int] = {s.value: 0 for s in DLQStatus}
        by_command_type: Dict[str, int] = {}
        by_error_kind: Dict[str, int] = {}
        oldest_pending: Optional[datetime] = None

        for entry in entries:
            by_status[entry.status.value] += 1
            by_command_type[entry.command_type] = by_command_type.get(entry.command_type, 0) + 1
            by_error_kind[entry.error_kind] = by_error_kind.get(entry.error_kind, 0) + 1
            if entry.status == DLQStatus.PENDING and (oldest_pending is None or entry.created_at < oldest_pending):
                oldest_pending = entry.created_at

        return {
            "total": len(entries),
            "by_status": by_status,
            "by_command_type": by_command_type,
            "by_error_kind": by_error_kind,
            "oldest_pending_age_seconds": (
                (self._clock.now() - oldest_pending).total_seconds() if oldest_pending else None
            ),
        }
