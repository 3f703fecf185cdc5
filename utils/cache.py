"""Bounded in-memory result cache for analytics queries.

Provides ResultCache: an LRU store limited by entry count, by cumulative
byte size and by TTL, whichever is reached first.  Byte size is taken from
the serialized form of each value at insertion time.
"""

import json
import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITEMS = 10_000
DEFAULT_MAX_BYTES = 100 * 1024 * 1024
DEFAULT_TTL_SECONDS = 3600.0


def json_size(value: Any) -> int:
    """Return the UTF-8 byte length of *value* serialized as JSON."""
    if hasattr(value, "to_dict"):
        value = value.to_dict()
    return len(json.dumps(value, default=str, separators=(",", ":")).encode("utf-8"))


class ResultCache:
    """Thread-safe LRU cache with count, byte-size and TTL limits.

    Entries are kept in recency order; a hit moves the entry to the most
    recently used end.  Inserting evicts least-recently-used entries until
    both the item limit and the byte limit hold.  A single lock guards all
    bookkeeping.

    Only store successful results here: the cache has no notion of errors
    and will return whatever value was set.

    Usage::

        cache = ResultCache(max_items=1000, max_bytes=50_000_000, ttl_seconds=600)
        cache.set("analytics:uat:ab12", result)
        value = cache.get("analytics:uat:ab12")  # None if expired/missing
    """

    def __init__(
        self,
        max_items: int = DEFAULT_MAX_ITEMS,
        max_bytes: int = DEFAULT_MAX_BYTES,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        sizer: Callable[[Any], int] = json_size,
    ) -> None:
        """Initialise the cache.

        Args:
            max_items: Maximum number of entries to keep.
            max_bytes: Maximum cumulative size of stored values, in bytes.
            ttl_seconds: Seconds before an entry expires.
            sizer: Computes the byte size of a value when ``set`` is not
                given one explicitly.
        """
        if max_items < 1 or max_bytes < 1:
            raise ValueError("max_items and max_bytes must be positive")
        self._max_items = max_items
        self._max_bytes = max_bytes
        self._ttl = ttl_seconds
        self._sizer = sizer
        # Maps key -> (value, size_bytes, expires_at), oldest first
        self._store: OrderedDict[str, tuple[Any, int, float]] = OrderedDict()
        self._bytes = 0
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def _remove(self, key: str) -> None:
        _, size, _ = self._store.pop(key)
        self._bytes -= size

    def get(self, key: str) -> Any | None:
        """Return the cached value for *key*, or ``None`` if absent or expired."""
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                self._misses += 1
                return None
            value, _, expires_at = entry
            if time.monotonic() > expires_at:
                self._remove(key)
                self._misses += 1
                return None
            self._store.move_to_end(key)
            self._hits += 1
            return value

    def has(self, key: str) -> bool:
        """Return True if *key* holds a live entry (does not touch stats)."""
        with self._lock:
            entry = self._store.get(key)
            return entry is not None and time.monotonic() <= entry[2]

    def set(self, key: str, value: Any, size_bytes: int | None = None) -> bool:
        """Store *value* under *key*.

        Args:
            key: Cache key.
            value: Value to cache.
            size_bytes: Precomputed byte size; computed with the sizer if
                omitted.

        Returns:
            True if stored, False if the value alone exceeds ``max_bytes``.
        """
        size = self._sizer(value) if size_bytes is None else size_bytes
        if size > self._max_bytes:
            logger.warning("cache entry %s too large (%d bytes), not stored", key, size)
            return False
        expires_at = time.monotonic() + self._ttl
        with self._lock:
            if key in self._store:
                self._remove(key)
            while self._store and (
                len(self._store) >= self._max_items
                or self._bytes + size > self._max_bytes
            ):
                oldest_key = next(iter(self._store))
                self._remove(oldest_key)
                self._evictions += 1
            self._store[key] = (value, size, expires_at)
            self._bytes += size
        return True

    def delete(self, key: str) -> None:
        """Remove a single entry (no-op if not present)."""
        with self._lock:
            if key in self._store:
                self._remove(key)

    def clear_prefix(self, prefix: str) -> int:
        """Remove every entry whose key starts with *prefix*.

        Returns:
            Number of entries removed.
        """
        with self._lock:
            doomed = [k for k in self._store if k.startswith(prefix)]
            for k in doomed:
                self._remove(k)
            return len(doomed)

    def clear(self) -> None:
        """Remove all entries and reset statistics."""
        with self._lock:
            self._store.clear()
            self._bytes = 0
            self._hits = 0
            self._misses = 0
            self._evictions = 0

    def stats(self) -> dict[str, int]:
        """Return cache statistics.

        Returns:
            Dict with keys ``hits``, ``misses``, ``size``, ``bytes`` and
            ``evictions``.
        """
        with self._lock:
            # Purge expired entries before reporting size
            now = time.monotonic()
            expired = [k for k, (_, _, exp) in self._store.items() if now > exp]
            for k in expired:
                self._remove(k)
            return {
                "hits": self._hits,
                "misses": self._misses,
                "size": len(self._store),
                "bytes": self._bytes,
                "evictions": self._evictions,
            }
