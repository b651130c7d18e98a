# =============================================================================
# File: tests/fakes/fake_redis.py
# Description: In-memory stand-in for the redis.asyncio client (L2 tier tests)
# Pattern: Fake adapter with call tracking and injectable failures
# =============================================================================

from __future__ import annotations

import fnmatch
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Set

from redis.exceptions import ConnectionError as RedisConnectionError


@dataclass
class CallRecord:
    """Record of a method call for verification."""
    method: str
    args: tuple


class FakeRedis:
    """
    Implements the subset of redis.asyncio.Redis the cache tier uses
    (decode_responses=True semantics: strings in, strings out).

    Usage:
        fake = FakeRedis(clock)
        tier = RedisCacheTier(fake, key_prefix="test", clock=clock)

        fake.fail("smembers")     # next SMEMBERS raises ConnectionError
        assert fake.call_count("delete") == 1
    """

    def __init__(self, clock: Any = None):
        self._clock = clock
        self.strings: Dict[str, str] = {}
        self.sets: Dict[str, Set[str]] = {}
        self.expiry: Dict[str, float] = {}
        self._calls: List[CallRecord] = []
        self._failing: Set[str] = set()

    # =========================================================================
    # Test Setup Methods
    # =========================================================================

    def fail(self, *methods: str) -> None:
        """Make the given methods raise ConnectionError until recovered."""
        self._failing.update(methods)

    def recover(self) -> None:
        self._failing.clear()

    def call_count(self, method: str) -> int:
        return sum(1 for c in self._calls if c.method == method)

    # =========================================================================
    # Redis API
    # =========================================================================

    def _record(self, method: str, *args: Any) -> None:
        self._calls.append(CallRecord(method, args))
        if method in self._failing:
            raise RedisConnectionError(f"fake redis: {method} unavailable")

    def _now(self) -> float:
        return self._clock.monotonic() if self._clock is not None else 0.0

    def _expire_if_due(self, key: str) -> None:
        deadline = self.expiry.get(key)
        if deadline is not None and self._now() >= deadline:
            self.strings.pop(key, None)
            self.sets.pop(key, None)
            self.expiry.pop(key, None)

    async def ping(self) -> bool:
        self._record("ping")
        return True

    async def info(self) -> Dict[str, Any]:
        self._record("info")
        return {"redis_version": "7.2.0-fake", "connected_clients": 1, "used_memory_human": "1M"}

    async def get(self, key: str) -> Optional[str]:
        self._record("get", key)
        self._expire_if_due(key)
        return self.strings.get(key)

    async def set(self, key: str, value: Any, ex: Optional[int] = None) -> bool:
        self._record("set", key, value, ex)
        self.strings[key] = str(value)
        if ex:
            self.expiry[key] = self._now() + ex
        else:
            self.expiry.pop(key, None)
        return True

    async def delete(self, *keys: str) -> int:
        self._record("delete", *keys)
        removed = 0
        for key in keys:
            self._expire_if_due(key)
            if self.strings.pop(key, None) is not None or self.sets.pop(key, None) is not None:
                removed += 1
            self.expiry.pop(key, None)
        return removed

    async def sadd(self, key: str, *members: str) -> int:
        self._record("sadd", key, *members)
        self._expire_if_due(key)
        bucket = self.sets.setdefault(key, set())
        before = len(bucket)
        bucket.update(members)
        return len(bucket) - before

    async def smembers(self, key: str) -> Set[str]:
        self._record("smembers", key)
        self._expire_if_due(key)
        return set(self.sets.get(key, set()))

    async def expire(self, key: str, seconds: int, nx: bool = False, gt: bool = False) -> bool:
        self._record("expire", key, seconds)
        if key not in self.strings and key not in self.sets:
            return False
        current = self.expiry.get(key)
        deadline = self._now() + seconds
        if nx and current is not None:
            return False
        if gt and (current is None or deadline <= current):
            return False
        self.expiry[key] = deadline
        return True

    async def scan_iter(self, match: Optional[str] = None) -> AsyncIterator[str]:
        self._record("scan_iter", match)
        for key in list(self.strings) + list(self.sets):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key
