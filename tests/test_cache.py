"""
Tests for the two-tier cache: TTL handling, persisted-tier promotion and
request de-duplication.
"""

import threading
import pytest
from unittest.mock import Mock

from cache import MemoryCache, TieredCache, cache_key
from persistence import FileKeyValueStore, SupabaseKeyValueStore


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def file_store(tmp_path):
    """File-backed persisted tier in a temp directory."""
    return FileKeyValueStore(str(tmp_path / ".cache"))


@pytest.fixture
def cache(file_store, clock):
    return TieredCache(store=file_store, default_ttl_seconds=60, clock=clock)


class TestCacheKey:
    """Test namespaced cache key construction."""

    def test_parts_joined_with_colon(self):
        assert cache_key("yahoo", "quote", "AAPL") == "yahoo:quote:AAPL"

    def test_non_string_parts(self):
        assert cache_key("yahoo", "historical", "MSFT", 3) == "yahoo:historical:MSFT:3"

    def test_requires_a_part(self):
        with pytest.raises(ValueError):
            cache_key()


class TestMemoryCache:
    """Test the in-process tier."""

    def test_set_and_get(self, clock):
        memory = MemoryCache(clock=clock)
        memory.set("k", {"v": 1}, ttl_seconds=10)

        assert memory.get("k") == {"v": 1}

    def test_missing_key_returns_none(self, clock):
        assert MemoryCache(clock=clock).get("nope") is None

    def test_entry_valid_until_expiry_instant(self, clock):
        """An entry is stale only once the clock is past its expiry."""
        memory = MemoryCache(clock=clock)
        memory.set("k", "v", ttl_seconds=10)

        clock.advance(10)
        assert memory.get("k") == "v"

        clock.advance(0.001)
        assert memory.get("k") is None
        assert len(memory) == 0

    def test_clear_expired_counts_removed(self, clock):
        memory = MemoryCache(clock=clock)
        memory.set("short", 1, ttl_seconds=5)
        memory.set("long", 2, ttl_seconds=500)

        clock.advance(6)

        assert memory.clear_expired() == 1
        assert memory.get("long") == 2


class TestTieredCacheReadWrite:
    """Test get/set across both tiers."""

    def test_round_trip_within_ttl(self, cache, clock):
        cache.set("yahoo:quote:AAPL", {"ok": True, "data": {"price": 190.5}})
        clock.advance(30)

        assert cache.get("yahoo:quote:AAPL") == {"ok": True, "data": {"price": 190.5}}

    def test_expired_value_is_a_miss(self, cache, clock):
        cache.set("k", "v", ttl_seconds=10)
        clock.advance(11)

        assert cache.get("k") is None

    def test_default_ttl_used(self, file_store, clock):
        cache = TieredCache(store=file_store, clock=clock)

        assert cache.default_ttl_seconds == 15 * 60

    def test_persisted_hit_promoted_to_memory(self, file_store, clock):
        """A fresh process sees values written by an earlier one."""
        writer = TieredCache(store=file_store, default_ttl_seconds=60, clock=clock)
        writer.set("k", [1, 2, 3])

        reader = TieredCache(store=file_store, default_ttl_seconds=60, clock=clock)
        assert len(reader.memory) == 0

        assert reader.get("k") == [1, 2, 3]
        assert reader.memory.get("k") == [1, 2, 3]

    def test_promoted_entry_keeps_original_expiry(self, file_store, clock):
        TieredCache(store=file_store, default_ttl_seconds=60, clock=clock).set("k", "v")
        clock.advance(50)

        reader = TieredCache(store=file_store, default_ttl_seconds=60, clock=clock)
        assert reader.get("k") == "v"

        clock.advance(11)
        assert reader.get("k") is None

    def test_expired_persisted_entry_deleted(self, file_store, clock):
        TieredCache(store=file_store, default_ttl_seconds=10, clock=clock).set("k", "v")
        clock.advance(20)

        reader = TieredCache(store=file_store, default_ttl_seconds=10, clock=clock)
        assert reader.get("k") is None
        assert file_store.get("k") is None

    def test_memory_only_cache(self, clock):
        cache = TieredCache(default_ttl_seconds=5, clock=clock)
        cache.set("k", "v")

        assert cache.get("k") == "v"
        clock.advance(6)
        assert cache.get("k") is None

    def test_delete_removes_both_tiers(self, cache, file_store):
        cache.set("k", "v")
        cache.delete("k")

        assert cache.get("k") is None
        assert file_store.get("k") is None


class TestPersistedTierFailures:
    """Test that persisted-tier errors degrade to cache misses."""

    def test_read_error_is_a_miss(self, clock):
        store = Mock()
        store.get.side_effect = OSError("disk gone")
        cache = TieredCache(store=store, clock=clock)

        assert cache.get("k") is None

    def test_write_error_is_ignored(self, clock):
        store = Mock()
        store.upsert.side_effect = OSError("read-only")
        store.get.return_value = None
        cache = TieredCache(store=store, default_ttl_seconds=60, clock=clock)

        cache.set("k", "v")

        assert cache.get("k") == "v"

    def test_unserializable_value_stays_in_memory(self, cache):
        cache.set("k", {1, 2})

        assert cache.get("k") == {1, 2}

    def test_store_lookup_errors_are_misses(self, clock):
        store = Mock()
        store.get.side_effect = KeyError("expires_at")
        cache = TieredCache(store=store, clock=clock)

        assert cache.get_or_compute("k", lambda: "fresh") == "fresh"

    def test_malformed_supabase_row_falls_through_to_producer(self, clock):
        client = Mock()
        client.select.return_value = [{"cache_value": {"ok": True}, "expires_at": None}]
        cache = TieredCache(store=SupabaseKeyValueStore(client), default_ttl_seconds=60, clock=clock)

        value = cache.get_or_compute("k", lambda: {"ok": "fresh"})

        assert value == {"ok": "fresh"}
        client.upsert.assert_called_once()


class TestGetOrCompute:
    """Test compute-on-miss with de-duplication."""

    def test_producer_result_cached(self, cache):
        producer = Mock(return_value={"ok": True})

        first = cache.get_or_compute("k", producer)
        second = cache.get_or_compute("k", producer)

        assert first == second == {"ok": True}
        producer.assert_called_once()

    def test_none_is_not_cached(self, cache):
        producer = Mock(return_value=None)

        assert cache.get_or_compute("k", producer) is None
        assert cache.get_or_compute("k", producer) is None
        assert producer.call_count == 2

    def test_uncacheable_result_returned_but_not_stored(self, cache):
        producer = Mock(return_value={"ok": False})

        result = cache.get_or_compute("k", producer, cacheable=lambda v: v["ok"])

        assert result == {"ok": False}
        assert cache.get("k") is None

    def test_producer_exception_propagates_and_is_not_cached(self, cache):
        producer = Mock(side_effect=[RuntimeError("boom"), {"ok": True}])

        with pytest.raises(RuntimeError, match="boom"):
            cache.get_or_compute("k", producer)

        assert cache.pending_count() == 0
        assert cache.get_or_compute("k", producer) == {"ok": True}

    def test_concurrent_callers_share_one_producer_call(self, clock):
        """Concurrent misses for one key run the producer exactly once."""
        cache = TieredCache(default_ttl_seconds=60, clock=clock)
        release = threading.Event()
        started = threading.Event()
        calls = []

        def producer():
            calls.append(1)
            started.set()
            release.wait(timeout=5)
            return {"price": 42.0}

        results = []
        results_lock = threading.Lock()

        def worker():
            value = cache.get_or_compute("yahoo:quote:AAPL", producer)
            with results_lock:
                results.append(value)

        leader = threading.Thread(target=worker)
        leader.start()
        assert started.wait(timeout=5)

        followers = [threading.Thread(target=worker) for _ in range(5)]
        for thread in followers:
            thread.start()

        release.set()
        for thread in [leader] + followers:
            thread.join(timeout=5)

        assert len(calls) == 1
        assert results == [{"price": 42.0}] * 6
        assert cache.pending_count() == 0

    def test_waiters_receive_leader_exception(self, clock):
        cache = TieredCache(default_ttl_seconds=60, clock=clock)
        release = threading.Event()
        started = threading.Event()

        def producer():
            started.set()
            release.wait(timeout=5)
            raise ValueError("provider down")

        errors = []

        def worker():
            try:
                cache.get_or_compute("k", producer)
            except ValueError as e:
                errors.append(str(e))

        leader = threading.Thread(target=worker)
        leader.start()
        assert started.wait(timeout=5)
        follower = threading.Thread(target=worker)
        follower.start()

        release.set()
        leader.join(timeout=5)
        follower.join(timeout=5)

        assert "provider down" in errors
        assert cache.get("k") is None


class TestClearExpired:
    """Test expired-entry sweeps."""

    def test_sweeps_both_tiers(self, cache, clock):
        cache.set("old", "v", ttl_seconds=5)
        cache.set("new", "v", ttl_seconds=500)
        clock.advance(10)

        # One memory entry plus one persisted file
        assert cache.clear_expired() == 2
        assert cache.get("new") == "v"

    def test_store_sweep_failure_logged(self, clock):
        store = Mock()
        store.delete_expired.side_effect = OSError("nope")
        cache = TieredCache(store=store, clock=clock)

        assert cache.clear_expired() == 0
