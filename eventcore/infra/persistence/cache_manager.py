# eventcore/infra/persistence/cache_manager.py

"""
Multi-tier query cache.

    L1  in-process strict LRU (MemoryCacheTier)
    L2  Redis with TTL (RedisCacheTier)
    L3  durable read-model store (InMemoryReadModelStore / PostgresReadModelStore)

Lookups go top-down and a hit back-fills the tiers above it. Every entry
carries tags; `invalidate_tags` removes tagged entries from all tiers
before it returns. Invalidations for the same tags that arrive while one
is still pending are merged into it.
"""

from __future__ import annotations

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence, Set

from redis.exceptions import RedisError

from eventcore.common.exceptions.exceptions import StorageUnavailableError
from eventcore.config.cache_config import CacheConfig
from eventcore.infra.metrics.cqrs_metrics import cache_hits, cache_invalidations, cache_misses
from eventcore.infra.persistence.lru_cache import LRUCache
from eventcore.infra.persistence.pg_client import PostgresClient
from eventcore.infra.persistence.redis_client import safe_get, safe_set
from eventcore.utils.datetime_utils import SYSTEM_CLOCK, Clock
from eventcore.utils.serialization import canonical_json

log = logging.getLogger("eventcore.cache")


@dataclass
class TierEntry:
    value: Any
    tags: FrozenSet[str] = field(default_factory=frozenset)
    ttl_seconds: Optional[float] = None  # remaining lifetime, None = no expiry


@dataclass
class CacheLookup:
    value: Any
    tier: str


class CacheMetrics:
    """Track cache performance metrics"""

    def __init__(self):
        self.hits: Dict[str, int] = {}
        self.misses = 0
        self.writes = 0
        self.invalidations = 0
        self.coalesced_invalidations = 0
        self.keys_invalidated = 0
        self.stale_writes_discarded = 0

    @property
    def total_hits(self) -> int:
        return sum(self.hits.values())

    @property
    def hit_rate(self) -> float:
        total = self.total_hits + self.misses
        return (self.total_hits / total * 100) if total > 0 else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            'hits': dict(self.hits),
            'misses': self.misses,
            'hit_rate': round(self.hit_rate, 2),
            'writes': self.writes,
            'invalidations': self.invalidations,
            'coalesced_invalidations': self.coalesced_invalidations,
            'keys_invalidated': self.keys_invalidated,
            'stale_writes_discarded': self.stale_writes_discarded,
        }


# =============================================================================
# Tiers
# =============================================================================

class CacheTier(ABC):
    """One level of the cache. Values must be JSON-compatible."""

    name: str = "tier"

    @abstractmethod
    async def get(self, key: str) -> Optional[TierEntry]:
        ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl_seconds: Optional[float], tags: FrozenSet[str]) -> None:
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        ...

    @abstractmethod
    async def invalidate_tags(self, tags: Set[str]) -> int:
        """Remove every entry carrying any of `tags`. Returns the number removed."""

    @abstractmethod
    async def clear(self) -> int:
        ...


class MemoryCacheTier(CacheTier):
    """L1: process-local LRU"""

    name = "l1"

    def __init__(self, capacity: int, clock: Clock = SYSTEM_CLOCK):
        self._clock = clock
        self.lru = LRUCache(capacity, clock)

    async def get(self, key: str) -> Optional[TierEntry]:
        entry = self.lru.get_entry(key)
        if entry is None:
            return None
        return TierEntry(entry.value, entry.tags, entry.remaining_ttl(self._clock.monotonic()))

    async def set(self, key: str, value: Any, ttl_seconds: Optional[float], tags: FrozenSet[str]) -> None:
        self.lru.set(key, value, ttl_seconds, tags)

    async def delete(self, key: str) -> bool:
        return self.lru.delete(key)

    async def invalidate_tags(self, tags: Set[str]) -> int:
        return self.lru.invalidate_tags(tags)

    async def clear(self) -> int:
        return self.lru.clear()


class RedisCacheTier(CacheTier):
    """
    L2: Redis.

    Key patterns:
        {prefix}:query:{cache_key}  JSON envelope {"v": value, "tags": [...], "exp": epoch|null}
        {prefix}:tag:{tag}          set of cache keys carrying the tag

    Reads and writes are best-effort (a Redis failure is a miss). Tag
    invalidation is not: if Redis cannot be reached the error propagates,
    since stale entries would otherwise outlive the write that made them stale.
    """

    name = "l2"

    def __init__(self, redis_client: Any, key_prefix: str = "eventcore", clock: Clock = SYSTEM_CLOCK):
        self.redis = redis_client
        self.key_prefix = key_prefix
        self._clock = clock

    def _key(self, key: str) -> str:
        return f"{self.key_prefix}:query:{key}"

    def _tag_key(self, tag: str) -> str:
        return f"{self.key_prefix}:tag:{tag}"

    async def get(self, key: str) -> Optional[TierEntry]:
        raw = await safe_get(self.redis, self._key(key))
        if raw is None:
            return None
        try:
            envelope = json.loads(raw)
        except (TypeError, ValueError) as e:
            log.warning(f"Discarding undecodable L2 entry {key}: {e}")
            return None
        ttl = None
        if envelope.get("exp") is not None:
            ttl = envelope["exp"] - self._clock.now().timestamp()
            if ttl <= 0:
                return None
        return TierEntry(envelope.get("v"), frozenset(envelope.get("tags") or ()), ttl)

    async def set(self, key: str, value: Any, ttl_seconds: Optional[float], tags: FrozenSet[str]) -> None:
        exp = self._clock.now().timestamp() + ttl_seconds if ttl_seconds else None
        envelope = canonical_json({"v": value, "tags": sorted(tags), "exp": exp})
        redis_ttl = max(int(ttl_seconds), 1) if ttl_seconds else None
        if not await safe_set(self.redis, self._key(key), envelope, redis_ttl):
            return
        try:
            for tag in tags:
                tag_key = self._tag_key(tag)
                await self.redis.sadd(tag_key, key)
                if redis_ttl:
                    # The tag set must outlive every member it indexes
                    await self.redis.expire(tag_key, redis_ttl, nx=True)
                    await self.redis.expire(tag_key, redis_ttl, gt=True)
        except RedisError as e:
            # An untagged entry could never be invalidated
            log.warning(f"Redis tag indexing failed for {key}, dropping entry: {e}")
            await self.delete(key)

    async def delete(self, key: str) -> bool:
        try:
            return bool(await self.redis.delete(self._key(key)))
        except RedisError as e:
            log.warning(f"Redis DELETE failed for '{key}': {e}")
            return False

    async def invalidate_tags(self, tags: Set[str]) -> int:
        removed = 0
        try:
            for tag in tags:
                tag_key = self._tag_key(tag)
                members = await self.redis.smembers(tag_key)
                if members:
                    removed += int(await self.redis.delete(*[self._key(m) for m in members]))
                await self.redis.delete(tag_key)
        except RedisError as e:
            raise StorageUnavailableError(f"Redis unavailable during tag invalidation: {e}") from e
        return removed

    async def clear(self) -> int:
        removed = 0
        try:
            async for key in self.redis.scan_iter(match=f"{self.key_prefix}:*"):
                removed += int(await self.redis.delete(key))
        except RedisError as e:
            raise StorageUnavailableError(f"Redis unavailable during clear: {e}") from e
        return removed


class InMemoryReadModelStore(CacheTier):
    """L3 kept in process memory (tests, single-node deployments)"""

    name = "l3"

    def __init__(self, clock: Clock = SYSTEM_CLOCK):
        self._clock = clock
        self._rows: Dict[str, TierEntry] = {}
        self._expires_at: Dict[str, Optional[datetime]] = {}

    async def get(self, key: str) -> Optional[TierEntry]:
        entry = self._rows.get(key)
        if entry is None:
            return None
        expires_at = self._expires_at.get(key)
        if expires_at is None:
            return entry
        remaining = (expires_at - self._clock.now()).total_seconds()
        if remaining <= 0:
            await self.delete(key)
            return None
        return TierEntry(entry.value, entry.tags, remaining)

    async def set(self, key: str, value: Any, ttl_seconds: Optional[float], tags: FrozenSet[str]) -> None:
        self._rows[key] = TierEntry(value, frozenset(tags), ttl_seconds)
        self._expires_at[key] = self._clock.now() + timedelta(seconds=ttl_seconds) if ttl_seconds else None

    async def delete(self, key: str) -> bool:
        self._expires_at.pop(key, None)
        return self._rows.pop(key, None) is not None

    async def invalidate_tags(self, tags: Set[str]) -> int:
        doomed = [k for k, entry in self._rows.items() if entry.tags & tags]
        for key in doomed:
            await self.delete(key)
        return len(doomed)

    async def clear(self) -> int:
        count = len(self._rows)
        self._rows.clear()
        self._expires_at.clear()
        return count


class PostgresReadModelStore(CacheTier):
    """L3 in the `read_models` table"""

    name = "l3"

    def __init__(self, client: PostgresClient, clock: Clock = SYSTEM_CLOCK):
        self._client = client
        self._clock = clock

    async def get(self, key: str) -> Optional[TierEntry]:
        now = self._clock.now()
        try:
            row = await self._client.fetchrow(
                "SELECT value, tags, expires_at FROM read_models "
                "WHERE cache_key = $1 AND (expires_at IS NULL OR expires_at > $2)",
                key, now,
            )
        except StorageUnavailableError as e:
            log.warning(f"Read model lookup failed for {key}: {e}")
            return None
        if row is None:
            return None
        ttl = (row["expires_at"] - now).total_seconds() if row["expires_at"] is not None else None
        return TierEntry(row["value"], frozenset(row["tags"] or ()), ttl)

    async def set(self, key: str, value: Any, ttl_seconds: Optional[float], tags: FrozenSet[str]) -> None:
        now = self._clock.now()
        expires_at = now + timedelta(seconds=ttl_seconds) if ttl_seconds else None
        try:
            await self._client.execute(
                "INSERT INTO read_models (cache_key, value, tags, expires_at, updated_at) "
                "VALUES ($1, $2, $3, $4, $5) "
                "ON CONFLICT (cache_key) DO UPDATE SET value = EXCLUDED.value, tags = EXCLUDED.tags, "
                "expires_at = EXCLUDED.expires_at, updated_at = EXCLUDED.updated_at",
                key, value, sorted(tags), expires_at, now,
            )
        except StorageUnavailableError as e:
            log.warning(f"Read model write failed for {key}: {e}")

    async def delete(self, key: str) -> bool:
        result = await self._client.execute("DELETE FROM read_models WHERE cache_key = $1", key)
        return result.split()[-1] != "0"

    async def invalidate_tags(self, tags: Set[str]) -> int:
        result = await self._client.execute(
            "DELETE FROM read_models WHERE tags && $1::text[]",
            sorted(tags),
        )
        return int(result.split()[-1])

    async def clear(self) -> int:
        result = await self._client.execute("DELETE FROM read_models")
        return int(result.split()[-1])


# =============================================================================
# Multi-tier cache
# =============================================================================

@dataclass
class _InvalidationBatch:
    tags: Set[str]
    future: "asyncio.Future[int]"
    callers: int = 1


class MultiTierCache:
    """
    Cache-aside over an ordered list of tiers (fastest first).

    Writes that race with an invalidation are discarded: every read-through
    captures `epoch` first, and a write is undone if an invalidation started
    or finished while it was in flight.
    """

    def __init__(
            self,
            tiers: Sequence[CacheTier],
            config: Optional[CacheConfig] = None,
            clock: Clock = SYSTEM_CLOCK,
    ):
        self.config = config or CacheConfig()
        self.tiers: List[CacheTier] = list(tiers)
        self._clock = clock
        self.metrics = CacheMetrics()
        self._epoch = 0
        self._batch: Optional[_InvalidationBatch] = None

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def enabled(self) -> bool:
        return self.config.enabled and bool(self.tiers)

    async def get(self, key: str) -> Optional[CacheLookup]:
        if not self.enabled:
            return None
        epoch = self._epoch
        for depth, tier in enumerate(self.tiers):
            entry = await tier.get(key)
            if entry is None:
                cache_misses.labels(tier=tier.name).inc()
                continue

            cache_hits.labels(tier=tier.name).inc()
            self.metrics.hits[tier.name] = self.metrics.hits.get(tier.name, 0) + 1
            if self.config.log_cache_hits:
                log.debug(f"Cache hit {key} ({tier.name})")
            if depth > 0:
                await self._write(self.tiers[:depth], key, entry.value, entry.ttl_seconds, entry.tags, epoch)
            return CacheLookup(entry.value, tier.name)

        self.metrics.misses += 1
        return None

    async def set(
            self,
            key: str,
            value: Any,
            ttl_seconds: Optional[float] = None,
            tags: Iterable[str] = (),
            epoch: Optional[int] = None,
    ) -> bool:
        """
        Store `value` in every tier. Pass the `epoch` read before computing
        the value so that a concurrent invalidation wins. Returns False when
        the write was discarded.
        """
        if not self.enabled:
            return False
        if ttl_seconds is None:
            ttl_seconds = self.config.default_ttl_seconds
        captured = self._epoch if epoch is None else epoch
        stored = await self._write(self.tiers, key, value, ttl_seconds, frozenset(tags), captured)
        if stored:
            self.metrics.writes += 1
        return stored

    async def _write(
            self,
            tiers: Sequence[CacheTier],
            key: str,
            value: Any,
            ttl_seconds: Optional[float],
            tags: FrozenSet[str],
            epoch: int,
    ) -> bool:
        written: List[CacheTier] = []
        # Deepest tier first so a faster tier never holds what a slower one lacks
        for tier in reversed(tiers):
            if self._epoch != epoch or self._batch is not None:
                break
            await tier.set(key, value, ttl_seconds, tags)
            written.append(tier)

        if self._epoch == epoch and self._batch is None and len(written) == len(tiers):
            return True

        for tier in written:
            await tier.delete(key)
        self.metrics.stale_writes_discarded += 1
        log.debug(f"Discarded cache write for {key} racing an invalidation")
        return False

    async def delete(self, key: str) -> None:
        for tier in self.tiers:
            await tier.delete(key)

    async def invalidate_tags(self, tags: Iterable[str]) -> int:
        """
        Remove every entry tagged with any of `tags` from all tiers.

        Callers arriving while an invalidation is waiting to run join it
        and return when it completes. Invalidating tags with no entries is
        a no-op, so repeated calls are harmless.
        """
        tags = set(tags)
        if not tags or not self.tiers:
            return 0

        batch = self._batch
        if batch is not None:
            batch.tags |= tags
            batch.callers += 1
            self.metrics.coalesced_invalidations += 1
            return await asyncio.shield(batch.future)

        batch = _InvalidationBatch(tags=tags, future=asyncio.get_running_loop().create_future())
        batch.future.add_done_callback(_consume_result)
        self._batch = batch
        self._epoch += 1
        try:
            await asyncio.sleep(self.config.invalidation_coalesce_window_ms / 1000)
            # Tags added after this point start a new batch
            self._batch = None
            removed = await self._invalidate_now(batch.tags)
        except BaseException as e:
            if self._batch is batch:
                self._batch = None
            if isinstance(e, asyncio.CancelledError):
                batch.future.cancel()
            else:
                batch.future.set_exception(e)
            raise
        finally:
            self._epoch += 1

        batch.future.set_result(removed)
        return removed

    async def _invalidate_now(self, tags: Set[str]) -> int:
        removed = 0
        # Deepest tier first so a read cannot back-fill from a tier not yet cleared
        for tier in reversed(self.tiers):
            removed += await tier.invalidate_tags(tags)
        self.metrics.invalidations += 1
        self.metrics.keys_invalidated += removed
        cache_invalidations.inc()
        log.debug(f"Invalidated {removed} cache entries for tags {sorted(tags)}")
        return removed

    async def clear(self) -> int:
        self._epoch += 1
        removed = 0
        for tier in reversed(self.tiers):
            removed += await tier.clear()
        self._epoch += 1
        return removed

    def get_metrics(self) -> Dict[str, Any]:
        metrics = self.metrics.to_dict()
        metrics['tiers'] = [tier.name for tier in self.tiers]
        for tier in self.tiers:
            if isinstance(tier, MemoryCacheTier):
                metrics['l1_size'] = len(tier.lru)
                metrics['l1_evictions'] = tier.lru.evictions
        return metrics


def _consume_result(future: "asyncio.Future[int]") -> None:
    # Joiners may not exist; mark the exception retrieved
    if not future.cancelled():
        future.exception()


def build_query_cache(
        config: Optional[CacheConfig] = None,
        redis_client: Any = None,
        read_model_store: Optional[CacheTier] = None,
        clock: Clock = SYSTEM_CLOCK,
) -> MultiTierCache:
    """Assemble the tiers enabled in CacheConfig from the backends supplied."""
    config = config or CacheConfig()
    tiers: List[CacheTier] = []
    if config.l1_enabled:
        tiers.append(MemoryCacheTier(config.l1_capacity, clock))
    if config.l2_enabled and redis_client is not None:
        tiers.append(RedisCacheTier(redis_client, config.key_prefix, clock))
    if config.l3_enabled and read_model_store is not None:
        tiers.append(read_model_store)
    log.info(f"Query cache initialized (enabled={config.enabled}, tiers={[t.name for t in tiers]})")
    return MultiTierCache(tiers, config, clock)
