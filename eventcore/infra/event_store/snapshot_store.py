# =============================================================================
# File: eventcore/infra/event_store/snapshot_store.py
# Description: Snapshot persistence with compression and integrity hashing
# =============================================================================

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import zlib
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from eventcore.common.exceptions.exceptions import SnapshotCorruptedError
from eventcore.config.snapshot_config import SnapshotConfig
from eventcore.infra.metrics.snapshot_metrics import snapshot_size_bytes
from eventcore.infra.persistence.pg_client import PostgresClient
from eventcore.utils.datetime_utils import SYSTEM_CLOCK, Clock
from eventcore.utils.serialization import canonical_json

log = logging.getLogger("eventcore.snapshot_store")

COMPRESSION_NONE = "none"
COMPRESSION_ZLIB = "zlib"


@dataclass(frozen=True)
class Snapshot:
    """Verified, decoded snapshot"""
    aggregate_id: str
    aggregate_type: str
    version: int
    state: Dict[str, Any]
    hash: str
    created_at: datetime
    compression: str = COMPRESSION_NONE


@dataclass(frozen=True)
class StoredSnapshot:
    """Snapshot as persisted (possibly compressed bytes)"""
    aggregate_id: str
    aggregate_type: str
    version: int
    data: bytes
    compression: str
    hash: str
    created_at: datetime


class SnapshotCodec:
    """
    Encodes state as canonical JSON, compressing with zlib once the encoded
    size reaches `compression_min_bytes`. The hash is always taken over the
    uncompressed canonical JSON.
    """

    def __init__(self, config: Optional[SnapshotConfig] = None):
        self._config = config or SnapshotConfig()

    def encode(self, state: Dict[str, Any]) -> Tuple[bytes, str, str]:
        raw = canonical_json(state).encode("utf-8")
        digest = hashlib.sha256(raw).hexdigest()
        if self._config.compression_enabled and len(raw) >= self._config.compression_min_bytes:
            return zlib.compress(raw, self._config.compression_level), COMPRESSION_ZLIB, digest
        return raw, COMPRESSION_NONE, digest

    def decode(self, stored: StoredSnapshot) -> Snapshot:
        try:
            if stored.compression == COMPRESSION_ZLIB:
                raw = zlib.decompress(stored.data)
            elif stored.compression == COMPRESSION_NONE:
                raw = stored.data
            else:
                raise SnapshotCorruptedError(
                    stored.aggregate_id, stored.version, f"unknown compression {stored.compression!r}"
                )
        except zlib.error as e:
            raise SnapshotCorruptedError(stored.aggregate_id, stored.version, f"decompression failed: {e}") from e

        if hashlib.sha256(raw).hexdigest() != stored.hash:
            raise SnapshotCorruptedError(stored.aggregate_id, stored.version, "hash mismatch")

        try:
            state = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise SnapshotCorruptedError(stored.aggregate_id, stored.version, f"decode failed: {e}") from e

        return Snapshot(
            aggregate_id=stored.aggregate_id,
            aggregate_type=stored.aggregate_type,
            version=stored.version,
            state=state,
            hash=stored.hash,
            created_at=stored.created_at,
            compression=stored.compression,
        )


def validate_snapshot_state(aggregate_id: str, state: Any) -> None:
    if not isinstance(state, dict):
        raise ValueError(f"Snapshot state for {aggregate_id} must be a dict, got {type(state).__name__}")
    if not state:
        raise ValueError(f"Snapshot state for {aggregate_id} is empty")


class SnapshotStore(ABC):
    """
    Snapshot storage keyed by (aggregate_id, version).

    `save` is an idempotent upsert. `load_latest_at_or_before` verifies the
    hash and raises SnapshotCorruptedError when it does not match.
    """

    def __init__(self, config: Optional[SnapshotConfig] = None, clock: Clock = SYSTEM_CLOCK):
        self._config = config or SnapshotConfig()
        self._codec = SnapshotCodec(self._config)
        self._clock = clock

    async def save(
            self,
            aggregate_id: str,
            aggregate_type: str,
            version: int,
            state: Dict[str, Any],
    ) -> Snapshot:
        validate_snapshot_state(aggregate_id, state)
        data, compression, digest = self._codec.encode(state)
        stored = StoredSnapshot(
            aggregate_id=str(aggregate_id),
            aggregate_type=aggregate_type,
            version=version,
            data=data,
            compression=compression,
            hash=digest,
            created_at=self._clock.now(),
        )
        await self._put(stored)
        await self._prune(stored.aggregate_id, self._config.keep_snapshots_count)
        snapshot_size_bytes.labels(aggregate_type=aggregate_type).observe(len(data))
        log.debug(
            f"Saved snapshot {aggregate_type}-{aggregate_id}@{version} "
            f"({len(data)} bytes, {compression})"
        )
        return Snapshot(
            aggregate_id=stored.aggregate_id,
            aggregate_type=aggregate_type,
            version=version,
            state=state,
            hash=digest,
            created_at=stored.created_at,
            compression=compression,
        )

    async def load_latest_at_or_before(self, aggregate_id: str, version: Optional[int] = None) -> Optional[Snapshot]:
        stored = await self._get_latest(str(aggregate_id), version)
        if stored is None:
            return None
        return self._codec.decode(stored)

    @abstractmethod
    async def _put(self, stored: StoredSnapshot) -> None:
        ...

    @abstractmethod
    async def _get_latest(self, aggregate_id: str, version: Optional[int]) -> Optional[StoredSnapshot]:
        ...

    @abstractmethod
    async def _prune(self, aggregate_id: str, keep: int) -> None:
        ...

    @abstractmethod
    async def list_versions(self, aggregate_id: str) -> List[int]:
        ...

    @abstractmethod
    async def delete_for_aggregate(self, aggregate_id: str) -> int:
        ...


class InMemorySnapshotStore(SnapshotStore):
    """Snapshots kept in process memory"""

    def __init__(self, config: Optional[SnapshotConfig] = None, clock: Clock = SYSTEM_CLOCK):
        super().__init__(config, clock)
        self._snapshots: Dict[str, Dict[int, StoredSnapshot]] = {}
        self._lock = asyncio.Lock()

    async def _put(self, stored: StoredSnapshot) -> None:
        async with self._lock:
            self._snapshots.setdefault(stored.aggregate_id, {})[stored.version] = stored

    async def _get_latest(self, aggregate_id: str, version: Optional[int]) -> Optional[StoredSnapshot]:
        by_version = self._snapshots.get(aggregate_id)
        if not by_version:
            return None
        candidates = [v for v in by_version if version is None or v <= version]
        if not candidates:
            return None
        return by_version[max(candidates)]

    async def _prune(self, aggregate_id: str, keep: int) -> None:
        async with self._lock:
            by_version = self._snapshots.get(aggregate_id, {})
            for old in sorted(by_version)[:-keep]:
                del by_version[old]

    async def list_versions(self, aggregate_id: str) -> List[int]:
        return sorted(self._snapshots.get(str(aggregate_id), {}))

    async def delete_for_aggregate(self, aggregate_id: str) -> int:
        async with self._lock:
            removed = self._snapshots.pop(str(aggregate_id), {})
        return len(removed)

    def replace_raw(self, stored: StoredSnapshot) -> None:
        """Overwrite a persisted snapshot as is (operator repair tooling)."""
        self._snapshots.setdefault(stored.aggregate_id, {})[stored.version] = stored

    def get_raw(self, aggregate_id: str, version: int) -> Optional[StoredSnapshot]:
        return self._snapshots.get(str(aggregate_id), {}).get(version)


class PostgresSnapshotStore(SnapshotStore):
    """Snapshots in the `snapshots` table"""

    def __init__(
            self,
            client: PostgresClient,
            config: Optional[SnapshotConfig] = None,
            clock: Clock = SYSTEM_CLOCK,
    ):
        super().__init__(config, clock)
        self._client = client

    async def _put(self, stored: StoredSnapshot) -> None:
        await self._client.execute(
            "INSERT INTO snapshots (aggregate_id, aggregate_type, version, state, compression, hash, created_at) "
            "VALUES ($1, $2, $3, $4, $5, $6, $7) "
            "ON CONFLICT (aggregate_id, version) DO UPDATE SET "
            "state = EXCLUDED.state, compression = EXCLUDED.compression, "
            "hash = EXCLUDED.hash, created_at = EXCLUDED.created_at",
            stored.aggregate_id, stored.aggregate_type, stored.version,
            stored.data, stored.compression, stored.hash, stored.created_at,
        )

    async def _get_latest(self, aggregate_id: str, version: Optional[int]) -> Optional[StoredSnapshot]:
        row = await self._client.fetchrow(
            "SELECT aggregate_id, aggregate_type, version, state, compression, hash, created_at "
            "FROM snapshots WHERE aggregate_id = $1 AND ($2::int IS NULL OR version <= $2) "
            "ORDER BY version DESC LIMIT 1",
            aggregate_id, version,
        )
        if row is None:
            return None
        return StoredSnapshot(
            aggregate_id=row["aggregate_id"],
            aggregate_type=row["aggregate_type"],
            version=row["version"],
            data=bytes(row["state"]),
            compression=row["compression"],
            hash=row["hash"].strip(),
            created_at=row["created_at"],
        )

    async def _prune(self, aggregate_id: str, keep: int) -> None:
        await self._client.execute(
            "DELETE FROM snapshots WHERE aggregate_id = $1 AND version NOT IN ("
            "SELECT version FROM snapshots WHERE aggregate_id = $1 ORDER BY version DESC LIMIT $2)",
            aggregate_id, keep,
        )

    async def list_versions(self, aggregate_id: str) -> List[int]:
        rows = await self._client.fetch(
            "SELECT version FROM snapshots WHERE aggregate_id = $1 ORDER BY version",
            str(aggregate_id),
        )
        return [row["version"] for row in rows]

    async def delete_for_aggregate(self, aggregate_id: str) -> int:
        result = await self._client.execute("DELETE FROM snapshots WHERE aggregate_id = $1", str(aggregate_id))
        # asyncpg returns the command tag, e.g. "DELETE 3"
        return int(result.split()[-1])
