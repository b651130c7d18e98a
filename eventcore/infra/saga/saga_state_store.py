# eventcore/infra/saga/saga_state_store.py
"""Persistence for SagaState (in-memory and PostgreSQL)."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional

from eventcore.infra.persistence.pg_client import PostgresClient
from eventcore.infra.saga.saga_state import TERMINAL_SAGA_STATUSES, SagaState, SagaStatus

log = logging.getLogger("eventcore.saga.state_store")


class SagaStateStore(ABC):

    @abstractmethod
    async def save(self, state: SagaState) -> None:
        ...

    @abstractmethod
    async def load(self, saga_id: str) -> Optional[SagaState]:
        ...

    @abstractmethod
    async def list_by_status(self, statuses: Iterable[SagaStatus]) -> List[SagaState]:
        ...

    @abstractmethod
    async def delete(self, saga_id: str) -> bool:
        ...

    async def list_incomplete(self) -> List[SagaState]:
        return await self.list_by_status(s for s in SagaStatus if s not in TERMINAL_SAGA_STATUSES)


class InMemorySagaStateStore(SagaStateStore):
    """Keeps serialized JSON so every load goes through model_validate_json"""

    def __init__(self):
        self._states: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def save(self, state: SagaState) -> None:
        async with self._lock:
            self._states[state.saga_id] = state.model_dump_json()

    async def load(self, saga_id: str) -> Optional[SagaState]:
        raw = self._states.get(str(saga_id))
        return SagaState.model_validate_json(raw) if raw is not None else None

    async def list_by_status(self, statuses: Iterable[SagaStatus]) -> List[SagaState]:
        wanted = set(statuses)
        states = [SagaState.model_validate_json(raw) for raw in self._states.values()]
        return sorted((s for s in states if s.status in wanted), key=lambda s: s.started_at)

    async def delete(self, saga_id: str) -> bool:
        async with self._lock:
            return self._states.pop(str(saga_id), None) is not None

    def raw(self, saga_id: str) -> Optional[str]:
        return self._states.get(str(saga_id))


class PostgresSagaStateStore(SagaStateStore):
    """States in the `saga_state` table"""

    def __init__(self, client: PostgresClient):
        self._client = client

    async def save(self, state: SagaState) -> None:
        await self._client.execute(
            "INSERT INTO saga_state (saga_id, saga_type, status, schema_version, state, updated_at) "
            "VALUES ($1, $2, $3, $4, $5::text::jsonb, $6) "
            "ON CONFLICT (saga_id) DO UPDATE SET status = EXCLUDED.status, "
            "schema_version = EXCLUDED.schema_version, state = EXCLUDED.state, updated_at = EXCLUDED.updated_at",
            state.saga_id, state.saga_type, state.status.value,
            state.schema_version, state.model_dump_json(), state.updated_at,
        )

    async def load(self, saga_id: str) -> Optional[SagaState]:
        raw = await self._client.fetchval(
            "SELECT state::text FROM saga_state WHERE saga_id = $1",
            str(saga_id),
        )
        return SagaState.model_validate_json(raw) if raw is not None else None

    async def list_by_status(self, statuses: Iterable[SagaStatus]) -> List[SagaState]:
        rows = await self._client.fetch(
            "SELECT state::text AS state FROM saga_state WHERE status = ANY($1::text[]) ORDER BY updated_at",
            [s.value for s in statuses],
        )
        return [SagaState.model_validate_json(row["state"]) for row in rows]

    async def delete(self, saga_id: str) -> bool:
        result = await self._client.execute("DELETE FROM saga_state WHERE saga_id = $1", str(saga_id))
        return result.split()[-1] != "0"
