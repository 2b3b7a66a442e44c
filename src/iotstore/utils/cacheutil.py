"""In-memory time-to-live cache for query results.

Classes:
--------
- CacheRecord: A cached value and its expiry.
- ResultCache: A thread-safe key-value store of values that expire after a time to live.

Example usage:
--------------
    >>> cache = ResultCache(ttl=300)
    >>> cache.set("key", [1, 2, 3])
    >>> cache.get("key")
    [1, 2, 3]
    >>> cache.with_cache("other", lambda: expensive_query())

Notes:
------
- The clock is injectable to allow deterministic expiry in tests.
- Entries are evicted lazily on `get` and on `cleanup`. `set` runs `cleanup` once per
  cleanup interval.
"""

from __future__ import annotations

import hashlib
import json
import threading
from typing import Any, Callable, Dict, Optional, TypeVar, Union

from loguru import logger
from pendulum import DateTime, Duration
from pydantic import BaseModel, ConfigDict, Field

from iotstore.utils.datetimeutil import to_duration, utc_now

T = TypeVar("T")
TTL = Union[Duration, int, float, str]

DEFAULT_TTL_SEC = 5 * 60
DEFAULT_CLEANUP_INTERVAL_SEC = 10 * 60


class CacheRecord(BaseModel):
    model_config = ConfigDict(
        arbitrary_types_allowed=True,
        validate_assignment=True,
    )

    data: Any = Field(..., description="Cached value.")
    until_datetime: DateTime = Field(..., description="Datetime until the cached value is valid.")
    ttl_duration: Duration = Field(..., description="Duration the cached value is valid.")


def generate_cache_key(prefix: str, params: Dict[str, Any]) -> str:
    """Build a deterministic cache key from a prefix and call parameters.

    Parameters are serialized with sorted keys, so the key does not depend on argument order.

    Args:
        prefix (str): Key namespace, e.g. the query name.
        params (Dict[str, Any]): Call parameters.

    Returns:
        str: Cache key.
    """
    serialized = json.dumps(params, sort_keys=True, default=str)
    digest = hashlib.sha256(serialized.encode("utf-8")).hexdigest()
    return f"{prefix}:{digest}"


class ResultCache:
    """A thread-safe in-memory store of values that expire after a time to live.

    Attributes:
        ttl (Duration): Default time to live of new entries.
        clock (Callable[[], DateTime]): Provides the current time.
        cleanup_interval (Duration): Minimum time between expiry sweeps on `set`.
    """

    def __init__(
        self,
        ttl: TTL = DEFAULT_TTL_SEC,
        clock: Optional[Callable[[], DateTime]] = None,
        cleanup_interval: TTL = DEFAULT_CLEANUP_INTERVAL_SEC,
    ) -> None:
        self.ttl = to_duration(ttl)
        self.clock = clock or utc_now
        self.cleanup_interval = to_duration(cleanup_interval)
        self._next_cleanup = self.clock().add(seconds=self.cleanup_interval.total_seconds())
        self._store: Dict[str, CacheRecord] = {}
        self._store_lock = threading.RLock()
        self._hits = 0
        self._misses = 0

    def _until(self, ttl: Optional[TTL]) -> tuple[DateTime, Duration]:
        ttl_duration = self.ttl if ttl is None else to_duration(ttl)
        return self.clock().add(seconds=ttl_duration.total_seconds()), ttl_duration

    def set(self, key: str, data: Any, ttl: Optional[TTL] = None) -> None:
        """Store a value.

        Args:
            key (str): Cache key.
            data (Any): Value to store.
            ttl: Time to live, defaults to the cache time to live.
        """
        until_datetime, ttl_duration = self._until(ttl)
        with self._store_lock:
            self._store[key] = CacheRecord(
                data=data, until_datetime=until_datetime, ttl_duration=ttl_duration
            )
        self._cleanup_due()

    def get(self, key: str, default: Any = None) -> Any:
        """Get a value that did not yet expire.

        Expired entries are removed.

        Returns:
            Any: The cached value or `default`.
        """
        with self._store_lock:
            record = self._store.get(key)
            if record is None:
                self._misses += 1
                return default
            if record.until_datetime <= self.clock():
                del self._store[key]
                self._misses += 1
                return default
            self._hits += 1
            return record.data

    def delete(self, key: str) -> bool:
        """Remove an entry. Returns whether the entry existed."""
        with self._store_lock:
            return self._store.pop(key, None) is not None

    def clear(self) -> int:
        """Remove all entries. Returns the number of removed entries."""
        with self._store_lock:
            count = len(self._store)
            self._store.clear()
        if count:
            logger.debug(f"Result cache cleared, {count} entries removed.")
        return count

    def cleanup(self) -> int:
        """Remove expired entries. Returns the number of removed entries."""
        now = self.clock()
        with self._store_lock:
            expired = [key for key, record in self._store.items() if record.until_datetime <= now]
            for key in expired:
                del self._store[key]
        return len(expired)

    def _cleanup_due(self) -> None:
        now = self.clock()
        with self._store_lock:
            if now < self._next_cleanup:
                return
            self._next_cleanup = now.add(seconds=self.cleanup_interval.total_seconds())
        removed = self.cleanup()
        if removed:
            logger.debug(f"Result cache cleanup, {removed} expired entries removed.")

    def stats(self) -> Dict[str, Any]:
        """Cache statistics."""
        now = self.clock()
        with self._store_lock:
            valid = sum(1 for record in self._store.values() if record.until_datetime > now)
            return {
                "size": len(self._store),
                "valid": valid,
                "expired": len(self._store) - valid,
                "hits": self._hits,
                "misses": self._misses,
            }

    def with_cache(
        self,
        key: str,
        fetcher: Callable[[], T],
        ttl: Optional[TTL] = None,
    ) -> T:
        """Return the cached value of `key` or fetch, store and return it.

        Errors of `fetcher` propagate; nothing is stored then.
        """
        sentinel = object()
        cached = self.get(key, sentinel)
        if cached is not sentinel:
            return cached
        data = fetcher()
        self.set(key, data, ttl)
        return data
