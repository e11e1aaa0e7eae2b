import asyncio
import threading

import numpy as np
import pytest

from face_attendance.cache import EmbeddingCache, purge_periodically

from conftest import ALICE, BOB


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return EmbeddingCache(ttl_seconds=1800, clock=clock)


def test_miss_on_empty(cache):
    assert cache.get("alice") is None


def test_hit_within_ttl(cache, clock):
    cache.put("alice", ALICE)
    clock.now += 1800
    np.testing.assert_array_equal(cache.get("alice"), ALICE)


def test_expired_entry_is_a_miss(cache, clock):
    cache.put("alice", ALICE)
    clock.now += 1800.5
    assert cache.get("alice") is None
    assert len(cache) == 0


def test_put_overwrites(cache):
    cache.put("alice", ALICE)
    cache.put("alice", BOB)
    np.testing.assert_array_equal(cache.get("alice"), BOB)


def test_put_refreshes_ttl(cache, clock):
    cache.put("alice", ALICE)
    clock.now += 1000
    cache.put("alice", ALICE)
    clock.now += 1000
    assert cache.get("alice") is not None


def test_invalidate(cache):
    cache.put("alice", ALICE)
    assert cache.invalidate("alice")
    assert cache.get("alice") is None
    assert not cache.invalidate("alice")


def test_purge_expired(cache, clock):
    cache.put("alice", ALICE)
    clock.now += 1000
    cache.put("bob", BOB)
    clock.now += 1000
    assert cache.purge_expired() == 1
    assert cache.get("alice") is None
    assert cache.get("bob") is not None
    assert len(cache) == 1


def test_concurrent_writers_on_distinct_ids(cache):
    def write(i):
        cache.put(f"user-{i}", np.full(8, i, dtype=np.float32))

    threads = [threading.Thread(target=write, args=(i,)) for i in range(50)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(cache) == 50
    assert cache.get("user-7")[0] == 7


def test_get_evicts_expired_entry(cache, clock):
    cache.put("alice", ALICE)
    clock.now += 1801
    assert cache.get("alice") is None
    assert "alice" not in cache._entries
    assert cache.purge_expired() == 0


def test_fill_after_invalidation_is_dropped(cache):
    generation = cache.generation("alice")
    cache.invalidate("alice")
    assert not cache.put("alice", ALICE, generation=generation)
    assert cache.get("alice") is None

    assert cache.put("alice", BOB, generation=cache.generation("alice"))
    np.testing.assert_array_equal(cache.get("alice"), BOB)


def test_lock_table_does_not_grow_with_identities(cache):
    stripes = len(cache._locks)
    for i in range(stripes * 4):
        cache.put(f"user-{i}", ALICE)
        cache.invalidate(f"user-{i}")
    assert len(cache._locks) == stripes
    assert len(cache._entries) == 0


async def test_periodic_purge_evicts_expired_entries(cache, clock):
    cache.put("alice", ALICE)
    clock.now += 1801
    task = asyncio.create_task(purge_periodically(cache, interval_seconds=0.01))
    try:
        for _ in range(100):
            if not cache._entries:
                break
            await asyncio.sleep(0.01)
    finally:
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
    assert cache._entries == {}
