from __future__ import annotations

import pytest

from eventcore.infra.persistence.lru_cache import LRUCache


@pytest.fixture
def lru(clock) -> LRUCache:
    return LRUCache(capacity=3, clock=clock)


def test_capacity_is_a_hard_bound(lru):
    for i in range(10):
        lru.set(f"k{i}", i)
        assert len(lru) <= 3

    assert lru.keys() == ["k7", "k8", "k9"]
    assert lru.evictions == 7


def test_eviction_is_strict_lru(lru):
    lru.set("a", 1)
    lru.set("b", 2)
    lru.set("c", 3)
    assert lru.get("a") == 1

    lru.set("d", 4)

    assert "b" not in lru
    assert lru.keys() == ["c", "a", "d"]


def test_overwrite_does_not_evict(lru):
    lru.set("a", 1)
    lru.set("b", 2)
    lru.set("c", 3)
    lru.set("a", 10)

    assert len(lru) == 3
    assert lru.get("a") == 10
    assert lru.evictions == 0


def test_entries_expire_with_the_clock(lru, clock):
    lru.set("short", "x", ttl_seconds=5)
    lru.set("forever", "y")

    clock.advance(4)
    assert lru.get_entry("short").remaining_ttl(clock.monotonic()) == pytest.approx(1)
    clock.advance(2)

    assert lru.get("short") is None
    assert "short" not in lru
    assert lru.get("forever") == "y"


def test_tag_invalidation_removes_tagged_entries_only(lru):
    lru.set("a", 1, tags=["order:1"])
    lru.set("b", 2, tags=["order:1", "customer:7"])
    lru.set("c", 3, tags=["order:2"])

    assert lru.invalidate_tags(["order:1"]) == 2
    assert lru.keys() == ["c"]
    assert lru.invalidate_tags(["order:1"]) == 0


def test_evicted_entries_leave_the_tag_index(lru):
    lru.set("a", 1, tags=["t"])
    for key in ("b", "c", "d"):
        lru.set(key, key)

    assert lru.invalidate_tags(["t"]) == 0
    assert len(lru) == 3


def test_clear_and_delete(lru):
    lru.set("a", 1)
    lru.set("b", 2)

    assert lru.delete("a")
    assert not lru.delete("a")
    assert lru.clear() == 1
    assert len(lru) == 0


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        LRUCache(capacity=0)
