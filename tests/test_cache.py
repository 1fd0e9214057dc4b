"""Tests for the grounding cache."""

import pytest

from fincascade.facts.cache import GroundingCache, canonicalize_query, make_cache_key
from fincascade.models.cascade import IntentType


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestCacheKeys:
    """Tests for query canonicalization and key construction."""

    def test_canonicalize_ignores_case_and_punctuation(self):
        """Test that trivially different phrasings share a key."""
        assert canonicalize_query("  How much did I spend?! ") == "how much did i spend"
        assert canonicalize_query("how   much, did I spend") == "how much did i spend"

    def test_key_includes_intent_and_hash(self):
        """Test the INTENT:query:hash layout."""
        key = make_cache_key(IntentType.GET_BALANCE, "My balance?", "abc123")
        assert key == "GET_BALANCE:my balance:abc123"

    def test_different_fact_pack_different_key(self):
        """Test that changed facts never hit an old entry."""
        assert make_cache_key("GET_BALANCE", "balance", "h1") != make_cache_key("GET_BALANCE", "balance", "h2")


class TestGroundingCache:
    """Tests for GroundingCache."""

    def test_set_and_get(self):
        """Test a basic round trip and hit counting."""
        cache = GroundingCache(capacity=3)
        cache.set("k", "value")
        assert cache.get("k") == "value"
        assert cache.stats().hits == 1

    def test_expired_entry_is_a_miss(self):
        """Test that entries past their TTL read as misses and are removed."""
        clock = FakeClock()
        cache = GroundingCache(capacity=3, ttl_seconds=10, clock=clock)
        cache.set("k", "value")
        clock.now = 10.0
        assert cache.get("k") is None
        assert len(cache) == 0
        assert cache.stats().expirations == 1

    def test_evicts_oldest_insertion_at_capacity(self):
        """Test insertion-order eviction; reads do not refresh entries."""
        cache = GroundingCache(capacity=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)
        assert "a" not in cache
        assert "b" in cache
        assert "c" in cache
        assert cache.stats().evictions == 1

    def test_reset_key_counts_as_new_insertion(self):
        """Test that re-setting a key moves it to the back."""
        cache = GroundingCache(capacity=2)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("a", 10)
        cache.set("c", 3)
        assert cache.get("a") == 10
        assert "b" not in cache

    def test_purge_expired(self):
        """Test bulk removal of expired entries."""
        clock = FakeClock()
        cache = GroundingCache(capacity=5, ttl_seconds=10, clock=clock)
        cache.set("short", 1, ttl_seconds=1)
        cache.set("long", 2)
        clock.now = 5.0
        assert cache.purge_expired() == 1
        assert len(cache) == 1

    def test_rejects_bad_configuration(self):
        """Test that capacity and TTL must be positive."""
        with pytest.raises(ValueError):
            GroundingCache(capacity=0)
        with pytest.raises(ValueError):
            GroundingCache(ttl_seconds=0)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
