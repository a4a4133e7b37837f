"""
Two-tier caching with TTL management and request de-duplication.
"""

import time
import logging
from concurrent.futures import Future
from threading import Lock
from typing import Any, Callable, Dict, Optional, Tuple

import requests

from constants import Defaults, TimeConstants
from persistence import KeyValueStore, PersistenceNotConfiguredError

logger = logging.getLogger(__name__)

# Failures of the persisted tier that are treated as a cache miss
PERSISTED_TIER_ERRORS = (
    OSError,
    ValueError,
    TypeError,
    KeyError,
    AttributeError,
    requests.RequestException,
    PersistenceNotConfiguredError,
)


def cache_key(*parts: Any) -> str:
    """
    Builds a namespaced cache key, e.g. cache_key("yahoo", "quote", "AAPL").

    Returns:
        str: The parts joined with ':'.
    """
    if not parts:
        raise ValueError("Cache key needs at least one part")
    return ":".join(str(part) for part in parts)


class MemoryCache:
    """In-process TTL map. Expired entries are evicted lazily on read."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._entries: Dict[str, Tuple[Any, float]] = {}
        self._clock = clock
        self._lock = Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._clock() > expires_at:
                del self._entries[key]
                logger.debug(f"Memory cache entry expired: {key}")
                return None
            return value

    def set(self, key: str, value: Any, ttl_seconds: float) -> None:
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl_seconds)

    def set_until(self, key: str, value: Any, expires_at: float) -> None:
        with self._lock:
            self._entries[key] = (value, expires_at)

    def delete(self, key: str) -> None:
        with self._lock:
            self._entries.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def clear_expired(self) -> int:
        """
        Removes every expired entry.

        Returns:
            int: The number of removed entries.
        """
        now = self._clock()
        with self._lock:
            expired = [key for key, (_, expires_at) in self._entries.items() if now > expires_at]
            for key in expired:
                del self._entries[key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class TieredCache:
    """
    Memory cache backed by an optional persisted key/value store.

    Reads check memory first, then the persisted tier (promoting hits to memory).
    `get_or_compute` collapses concurrent callers for one key into a single
    producer call: the first caller runs the producer, later callers wait on
    the same future.

    Values must be JSON-compatible when a persisted store is attached.
    """

    def __init__(
        self,
        store: Optional[KeyValueStore] = None,
        default_ttl_seconds: Optional[float] = None,
        memory: Optional[MemoryCache] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """
        Initializes the TieredCache.

        Args:
            store: Persisted tier; None keeps the cache memory-only.
            default_ttl_seconds: TTL used when a call does not pass one.
            memory: In-process tier; a new one is created when omitted.
            clock: Time source in epoch seconds (injectable for tests).
        """
        self.store = store
        self.default_ttl_seconds = (
            default_ttl_seconds
            if default_ttl_seconds is not None
            else Defaults.CACHE_TTL_MINUTES * TimeConstants.SECONDS_PER_MINUTE
        )
        self._clock = clock
        self.memory = memory if memory is not None else MemoryCache(clock=clock)
        self._pending: Dict[str, Future] = {}
        self._pending_lock = Lock()
        logger.debug(
            f"Cache initialized (TTL: {self.default_ttl_seconds}s, "
            f"persisted tier: {type(store).__name__ if store else 'none'})"
        )

    def get(self, key: str) -> Optional[Any]:
        """
        Retrieves a value if present and not expired in either tier.

        Returns:
            Optional[Any]: The cached value, or None on a miss.
        """
        value = self.memory.get(key)
        if value is not None:
            logger.debug(f"Cache hit (memory): {key}")
            return value

        if self.store is None:
            logger.debug(f"Cache miss: {key}")
            return None

        try:
            entry = self.store.get(key)
        except PERSISTED_TIER_ERRORS as e:
            logger.warning(f"Persisted cache read failed for {key}, treating as miss: {e}")
            return None

        if entry is None:
            logger.debug(f"Cache miss: {key}")
            return None

        value, expires_at = entry
        if self._clock() > expires_at:
            logger.debug(f"Cache expired (persisted): {key}")
            self._delete_persisted(key)
            return None

        logger.debug(f"Cache hit (persisted): {key}")
        self.memory.set_until(key, value, expires_at)
        return value

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        """
        Stores a value in both tiers. Persisted-tier write failures are logged and ignored.
        """
        ttl = ttl_seconds if ttl_seconds is not None else self.default_ttl_seconds
        expires_at = self._clock() + ttl
        self.memory.set_until(key, value, expires_at)

        if self.store is None:
            return
        try:
            self.store.upsert(key, value, expires_at)
        except PERSISTED_TIER_ERRORS as e:
            logger.warning(f"Persisted cache write failed for {key}: {e}")

    def delete(self, key: str) -> None:
        self.memory.delete(key)
        self._delete_persisted(key)

    def _delete_persisted(self, key: str) -> None:
        if self.store is None:
            return
        try:
            self.store.delete(key)
        except PERSISTED_TIER_ERRORS as e:
            logger.debug(f"Persisted cache delete failed for {key}: {e}")

    def get_or_compute(
        self,
        key: str,
        producer: Callable[[], Any],
        ttl_seconds: Optional[float] = None,
        cacheable: Optional[Callable[[Any], bool]] = None,
    ) -> Any:
        """
        Returns the cached value for key, running producer once on a miss.

        Args:
            key: Cache key.
            producer: Zero-argument callable computing the value.
            ttl_seconds: TTL for the stored value; defaults to the cache TTL.
            cacheable: Predicate deciding whether a produced value is stored.
                Values that fail it are returned to every waiter but not cached.

        Returns:
            Any: The cached or freshly produced value.

        Raises:
            Exception: Whatever the producer raised, delivered to every waiter.
        """
        value = self.get(key)
        if value is not None:
            return value

        with self._pending_lock:
            # A leader may have finished between the read above and taking the lock
            value = self.memory.get(key)
            if value is not None:
                return value
            future = self._pending.get(key)
            is_leader = future is None
            if is_leader:
                future = Future()
                self._pending[key] = future

        if not is_leader:
            logger.debug(f"Joining in-flight request: {key}")
            return future.result()

        try:
            value = self._run_producer(key, producer, ttl_seconds, cacheable)
        except BaseException as e:
            future.set_exception(e)
            raise
        else:
            future.set_result(value)
            return value
        finally:
            with self._pending_lock:
                self._pending.pop(key, None)

    def _run_producer(
        self,
        key: str,
        producer: Callable[[], Any],
        ttl_seconds: Optional[float],
        cacheable: Optional[Callable[[Any], bool]],
    ) -> Any:
        value = producer()
        if value is None:
            return value
        if cacheable is None or cacheable(value):
            self.set(key, value, ttl_seconds)
        else:
            logger.debug(f"Not caching result for {key}")
        return value

    def pending_count(self) -> int:
        """Number of keys with a producer currently running."""
        with self._pending_lock:
            return len(self._pending)

    def clear_expired(self) -> int:
        """
        Clears expired entries from both tiers.

        Returns:
            int: The number of cleared entries.
        """
        cleared = self.memory.clear_expired()
        if self.store is not None:
            try:
                cleared += self.store.delete_expired(self._clock())
            except PERSISTED_TIER_ERRORS as e:
                logger.warning(f"Persisted cache sweep failed: {e}")

        if cleared > 0:
            logger.debug(f"Cleared {cleared} expired cache entries")
        return cleared
