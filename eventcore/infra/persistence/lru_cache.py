# =============================================================================
# File: eventcore/infra/persistence/lru_cache.py
# Description: Bounded in-process LRU used as the L1 query cache tier
# =============================================================================

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Set

from eventcore.utils.datetime_utils import SYSTEM_CLOCK, Clock


@dataclass
class CacheEntry:
    value: Any
    tags: FrozenSet[str] = field(default_factory=frozenset)
    expires_at: Optional[float] = None  # clock.monotonic() deadline

    def is_expired(self, now: float) -> bool:
        return self.expires_at is not None and now >= self.expires_at

    def remaining_ttl(self, now: float) -> Optional[float]:
        if self.expires_at is None:
            return None
        return max(self.expires_at - now, 0.0)


class LRUCache:
    """
    Strict least-recently-used cache with a hard capacity.

    Backed by an OrderedDict: get/set/evict are O(1) and the size never
    exceeds `capacity`, even transiently. A tag index allows removing every
    entry carrying a tag without scanning.
    """

    def __init__(self, capacity: int, clock: Clock = SYSTEM_CLOCK):
        if capacity < 1:
            raise ValueError("LRU capacity must be at least 1")
        self.capacity = capacity
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._tag_index: Dict[str, Set[str]] = {}
        self.evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get_entry(key) is not None

    def keys(self) -> List[str]:
        """Keys from least to most recently used."""
        return list(self._entries.keys())

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock.monotonic()):
            self._remove(key)
            return None
        self._entries.move_to_end(key)
        return entry

    def get(self, key: str, default: Any = None) -> Any:
        entry = self.get_entry(key)
        return default if entry is None else entry.value

    def set(
            self,
            key: str,
            value: Any,
            ttl_seconds: Optional[float] = None,
            tags: Iterable[str] = (),
    ) -> None:
        if key in self._entries:
            self._remove(key)
        expires_at = self._clock.monotonic() + ttl_seconds if ttl_seconds else None
        entry = CacheEntry(value=value, tags=frozenset(tags), expires_at=expires_at)

        # Make room before inserting so the cap holds at every point
        while len(self._entries) >= self.capacity:
            oldest, evicted = self._entries.popitem(last=False)
            self._unindex(oldest, evicted)
            self.evictions += 1

        self._entries[key] = entry
        for tag in entry.tags:
            self._tag_index.setdefault(tag, set()).add(key)

    def delete(self, key: str) -> bool:
        if key not in self._entries:
            return False
        self._remove(key)
        return True

    def invalidate_tags(self, tags: Iterable[str]) -> int:
        keys: Set[str] = set()
        for tag in tags:
            keys |= self._tag_index.get(tag, set())
        for key in keys:
            self._remove(key)
        return len(keys)

    def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        self._tag_index.clear()
        return count

    def _remove(self, key: str) -> None:
        entry = self._entries.pop(key, None)
        if entry is not None:
            self._unindex(key, entry)

    def _unindex(self, key: str, entry: CacheEntry) -> None:
        for tag in entry.tags:
            keys = self._tag_index.get(tag)
            if keys is None:
                continue
            keys.discard(key)
            if not keys:
                del self._tag_index[tag]
