import pytest

from common.cache import TTLCache
from tools.relationship_cache import RelationshipCache


class Clock:
    def __init__(self):
        self.t = 1000.0

    def __call__(self):
        return self.t


def test_entries_expire_after_ttl():
    clock = Clock()
    cache = TTLCache(300, clock=clock)
    cache.set("a", 1)
    clock.t += 299
    assert cache.get("a") == 1
    clock.t += 1
    assert cache.get("a") is None
    assert cache.stats() == {"size": 0, "hits": 1, "misses": 1}


def test_last_write_wins_and_per_entry_ttl():
    clock = Clock()
    cache = TTLCache(300, clock=clock)
    cache.set("k", "old")
    cache.set("k", "new", ttl_seconds=10)
    assert cache.get("k") == "new"
    clock.t += 11
    assert cache.get("k") is None


def test_no_ttl_never_expires():
    clock = Clock()
    cache = TTLCache(None, clock=clock)
    cache.set("k", "v")
    clock.t += 10**9
    assert cache.get("k") == "v"


def test_cleanup_sweeps_past_threshold():
    clock = Clock()
    cache = TTLCache(5, clock=clock, cleanup_threshold=3)
    for i in range(3):
        cache.set(str(i), i)
    clock.t += 6
    cache.set("fresh", 1)
    assert len(cache) == 1
    assert cache.delete("fresh")
    assert not cache.delete("fresh")


class CountingProvider:
    def __init__(self, links):
        self.links = links
        self.calls = 0

    async def get_student_ids(self, district_id, user_id):
        self.calls += 1
        return self.links.get((district_id, user_id), [])


async def test_relationship_cache_hits_provider_once_per_ttl():
    clock = Clock()
    provider = CountingProvider({("d1", "parent-1"): ["s1", "s2"]})
    cache = RelationshipCache(provider, clock=clock)

    assert await cache.get_student_ids("d1", "parent-1") == ["s1", "s2"]
    assert await cache.has_access("d1", "parent-1", "s2")
    assert not await cache.has_access("d1", "parent-1", "s9")
    assert provider.calls == 1

    clock.t += 301
    await cache.get_student_ids("d1", "parent-1")
    assert provider.calls == 2

    cache.invalidate("d1", "parent-1")
    await cache.get_student_ids("d1", "parent-1")
    assert provider.calls == 3


async def test_relationship_cache_is_keyed_by_district():
    provider = CountingProvider({("d1", "u"): ["s1"]})
    cache = RelationshipCache(provider)
    assert await cache.has_access("d1", "u", "s1")
    assert not await cache.has_access("d2", "u", "s1")
