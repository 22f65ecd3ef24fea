import threading

import pytest

from sqlusage.models import empty_result
from sqlusage.result_cache import CacheSweeper, ResultCache, TTLCache


def _result(name="Proc"):
    return empty_result("Shop", name, 1.0)


def test_entries_expire_after_ttl(clock):
    cache = ResultCache(ttl_seconds=300, clock=clock)
    cache.put("Shop", "Proc", _result())

    clock.now = 299.9
    assert cache.get("shop", "Proc") is not None

    clock.now = 300
    assert cache.get("Shop", "Proc") is None
    assert cache.expirations == 1
    assert len(cache) == 0


def test_database_names_are_case_insensitive_object_names_are_not(clock):
    cache = ResultCache(clock=clock)
    cache.put(" SHOP ", "Proc", _result())

    assert cache.get("shop", "Proc") is not None
    assert cache.get("shop", "PROC") is None


def test_oldest_entry_is_evicted_when_full(clock):
    cache = ResultCache(max_entries=2, clock=clock)
    for i, name in enumerate(["A", "B", "C"]):
        clock.now = float(i)
        cache.put("Shop", name, _result(name))

    assert cache.get("Shop", "A") is None
    assert cache.get("Shop", "B") is not None
    assert cache.get("Shop", "C") is not None
    assert cache.evictions == 1


def test_rewriting_an_entry_refreshes_its_timestamp(clock):
    cache = ResultCache(ttl_seconds=10, clock=clock)
    cache.put("Shop", "Proc", _result())
    clock.now = 8
    cache.put("Shop", "Proc", _result())
    clock.now = 15

    assert cache.get("Shop", "Proc") is not None


def test_invalidate_by_database(clock):
    cache = ResultCache(clock=clock)
    cache.put("Shop", "A", _result("A"))
    cache.put("shop", "B", _result("B"))
    cache.put("Warehouse", "C", _result("C"))

    assert cache.invalidate("SHOP") == 2
    assert cache.get("Warehouse", "C") is not None
    assert cache.invalidate() == 1
    assert len(cache) == 0


def test_purge_expired_and_stats(clock):
    cache = TTLCache(ttl_seconds=5, clock=clock)
    cache.put_item("old", 1)
    clock.now = 4
    cache.put_item("new", 2)
    clock.now = 6

    assert cache.purge_expired() == 1
    assert cache.get_item("new") == 2
    assert cache.get_item("old") is None

    stats = cache.stats()
    assert stats["size"] == 1
    assert stats["hits"] == 1
    assert stats["misses"] == 1
    assert stats["hit_rate"] == 0.5
    assert stats["expirations"] == 1
    assert stats["oldest_age_seconds"] == 2.0


@pytest.mark.parametrize("kwargs", [{"ttl_seconds": 0}, {"max_entries": 0}])
def test_invalid_limits_are_rejected(kwargs):
    with pytest.raises(ValueError):
        TTLCache(**kwargs)


def test_sweeper_purges_in_background(clock):
    swept = threading.Event()

    class RecordingCache(TTLCache):
        def purge_expired(self):
            removed = super().purge_expired()
            swept.set()
            return removed

    cache = RecordingCache(ttl_seconds=1, clock=clock)
    cache.put_item("k", "v")
    clock.now = 5
    sweeper = CacheSweeper(cache, interval_seconds=0.01)
    sweeper.start()
    try:
        assert swept.wait(2)
    finally:
        sweeper.stop(timeout=2)

    assert not sweeper.is_alive()
    assert cache.stats()["size"] == 0
