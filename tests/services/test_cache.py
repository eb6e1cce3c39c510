"""
Tests for the in-memory TTL cache.
"""
from backend.services.cache import TTLCache


class TestTTLCache:
    """Tests for expiry and eviction."""

    def test_get_fresh_value(self, clock):
        cache = TTLCache(ttl_seconds=30, clock=clock)
        cache.set("a", 1)

        assert cache.get("a") == 1
        assert "a" in cache
        assert len(cache) == 1

    def test_entry_expires(self, clock):
        cache = TTLCache(ttl_seconds=30, clock=clock)
        cache.set("a", 1)

        clock.advance(30)

        assert cache.get("a") is None
        assert len(cache) == 0

    def test_missing_key(self, clock):
        cache = TTLCache(ttl_seconds=30, clock=clock)
        assert cache.get("missing") is None
        assert cache.delete("missing") is False

    def test_evicts_oldest_when_full(self, clock):
        cache = TTLCache(ttl_seconds=300, max_entries=2, clock=clock)
        cache.set("a", 1)
        clock.advance(1)
        cache.set("b", 2)
        clock.advance(1)
        cache.set("c", 3)

        assert "a" not in cache
        assert cache.get("b") == 2
        assert cache.get("c") == 3

    def test_overwrite_does_not_evict(self, clock):
        cache = TTLCache(ttl_seconds=300, max_entries=2, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("a", 10)

        assert cache.get("a") == 10
        assert cache.get("b") == 2

    def test_delete_and_clear(self, clock):
        cache = TTLCache(ttl_seconds=30, clock=clock)
        cache.set("a", 1)
        cache.set("b", 2)

        assert cache.delete("a") is True
        assert cache.clear() == 1
        assert len(cache) == 0
