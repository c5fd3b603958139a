import pytest

from climate_insight.cache import ResultCache

TTL = 300.0


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_get_within_ttl_is_idempotent():
    clock = FakeClock()
    cache = ResultCache(TTL, clock=clock)
    value = {"points": [1, 2, 3]}
    cache.set("forecast|indicator=co2", value)
    clock.now += 10
    first = cache.get("forecast|indicator=co2")
    second = cache.get("forecast|indicator=co2")
    assert first is value
    assert second is first


def test_expiry_boundary():
    clock = FakeClock()
    cache = ResultCache(TTL, clock=clock)
    cache.set("k", "v")
    clock.now += TTL - 1
    assert cache.get("k") == "v"
    clock.now += 2
    assert cache.get("k") is None
    assert len(cache) == 0


def test_entry_absent_exactly_at_ttl():
    clock = FakeClock()
    cache = ResultCache(TTL, clock=clock)
    cache.set("k", "v")
    clock.now += TTL
    assert "k" not in cache
    assert cache.get("k", "missing") == "missing"


def test_set_replaces_entry_and_restarts_ttl():
    clock = FakeClock()
    cache = ResultCache(TTL, clock=clock)
    cache.set("k", "old")
    clock.now += TTL - 1
    cache.set("k", "new")
    clock.now += TTL - 1
    assert cache.get("k") == "new"


def test_invalidate_and_clear():
    cache = ResultCache(TTL, clock=FakeClock())
    cache.set("a", 1)
    cache.set("b", 2)
    cache.invalidate("a")
    cache.invalidate("missing")
    assert cache.get("a") is None
    assert cache.get("b") == 2
    cache.clear()
    assert len(cache) == 0


def test_purge_expired_and_stats():
    clock = FakeClock()
    cache = ResultCache(TTL, clock=clock, name="forecast")
    cache.set("a", 1)
    clock.now += TTL + 1
    cache.set("b", 2)
    assert cache.purge_expired() == 1
    cache.get("b")
    cache.get("a")
    stats = cache.stats()
    assert stats["name"] == "forecast"
    assert stats["size"] == 1
    assert stats["hits"] == 1
    assert stats["misses"] == 1


def test_negative_ttl_rejected():
    with pytest.raises(ValueError):
        ResultCache(-1)
