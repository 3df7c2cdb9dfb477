"""Provider-agnostic response cache with TTL and LRU eviction.

Cache keys are derived only from the capability and the normalized request
payload, never from the provider that served it, so a response cached after a
fallback is still a hit for the next identical request.

Usage:
    cache = ResponseCache(max_entries=200, default_ttl_ms=300000)

    key = make_cache_key(Capability.TEXT, TextRequest(prompt="hello"))
    cached = cache.get(key)
    if cached is None:
        response = await router.route(...)
        cache.put(key, response)
"""

import dataclasses
import hashlib
import json
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .types import Capability

logger = logging.getLogger(__name__)


def _normalize(value: Any) -> Any:
    """Reduce a request payload to JSON-serializable, order-independent data.

    Bytes are replaced by their SHA-256 digest so large images and audio clips
    do not bloat the key material.
    """
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: _normalize(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, (bytes, bytearray, memoryview)):
        return {"sha256": hashlib.sha256(bytes(value)).hexdigest(), "len": len(value)}
    if isinstance(value, dict):
        return {str(k): _normalize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return sorted(_normalize(v) for v in value)
    if isinstance(value, Capability):
        return value.value
    return value


def make_cache_key(capability: Capability, request: Any) -> str:
    """Generate a deterministic cache key for a capability request.

    Args:
        capability: Capability the request is routed under
        request: Capability-specific request payload

    Returns:
        Hex SHA-256 digest of the canonical (capability, payload) pair
    """
    cache_input = {
        "capability": capability.value,
        "request": _normalize(request),
    }
    serialized = json.dumps(cache_input, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(serialized.encode()).hexdigest()


@dataclass
class CacheEntry:
    """A cached response with expiration metadata."""

    key: str
    value: Any
    stored_at: float  # clock() seconds
    ttl_ms: int
    hit_count: int = 0

    def is_expired(self, now: float) -> bool:
        return (now - self.stored_at) * 1000.0 > self.ttl_ms


class ResponseCache:
    """In-memory LRU cache with TTL expiration.

    Thread-safe. Expired entries are treated as misses on read (lazy expiry)
    and purged in bulk on the first write that pushes the cache above
    ``max_entries``; if it is still over capacity after that, least recently
    used entries are evicted.
    """

    def __init__(
        self,
        max_entries: int = 200,
        default_ttl_ms: int = 300000,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        if default_ttl_ms <= 0:
            raise ValueError("default_ttl_ms must be positive")

        self.max_entries = max_entries
        self.default_ttl_ms = default_ttl_ms
        self._clock = clock
        self._lock = threading.Lock()

        # LRU ordered dict: most recently used at the end
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()

        # Stats
        self._hits = 0
        self._misses = 0
        self._evictions = 0
        self._stores = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    @property
    def hit_rate(self) -> float:
        """Cache hit rate (0.0 to 1.0)."""
        with self._lock:
            total = self._hits + self._misses
            return self._hits / total if total > 0 else 0.0

    def get(self, key: str) -> Optional[Any]:
        """Look up a cached value.

        Returns:
            The cached value if present and within its TTL, otherwise None.
        """
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None

            if entry.is_expired(self._clock()):
                del self._entries[key]
                self._misses += 1
                self._evictions += 1
                return None

            self._entries.move_to_end(key)
            entry.hit_count += 1
            self._hits += 1
            hit_count = entry.hit_count

        logger.debug("Cache hit key=%s hits=%d", key[:16], hit_count)
        return entry.value

    def put(self, key: str, value: Any, ttl_ms: Optional[int] = None) -> None:
        """Store a value, replacing any existing entry for the key.

        Args:
            key: Cache key from make_cache_key()
            value: Value to cache; must not be None
            ttl_ms: Time-to-live; defaults to default_ttl_ms
        """
        if value is None:
            raise ValueError("cannot cache None")
        ttl = self.default_ttl_ms if ttl_ms is None else ttl_ms
        if ttl <= 0:
            raise ValueError("ttl_ms must be positive")

        with self._lock:
            now = self._clock()
            self._entries[key] = CacheEntry(key=key, value=value, stored_at=now, ttl_ms=ttl)
            self._entries.move_to_end(key)
            self._stores += 1

            if len(self._entries) > self.max_entries:
                self._purge_expired_locked(now)
            while len(self._entries) > self.max_entries:
                evicted_key, _ = self._entries.popitem(last=False)
                self._evictions += 1
                logger.debug("Cache LRU eviction key=%s", evicted_key[:16])

    def _purge_expired_locked(self, now: float) -> int:
        expired = [k for k, entry in self._entries.items() if entry.is_expired(now)]
        for k in expired:
            del self._entries[k]
        self._evictions += len(expired)
        return len(expired)

    def purge_expired(self) -> int:
        """Remove every expired entry.

        Returns:
            Number of entries removed
        """
        with self._lock:
            return self._purge_expired_locked(self._clock())

    def invalidate(self, key: str) -> bool:
        """Drop a single entry. Returns True if it existed."""
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> int:
        """Clear all cached entries.

        Returns:
            Number of cache entries deleted
        """
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            return count

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._lock:
            total = self._hits + self._misses
            return {
                "entries": len(self._entries),
                "max_entries": self.max_entries,
                "default_ttl_ms": self.default_ttl_ms,
                "hits": self._hits,
                "misses": self._misses,
                "stores": self._stores,
                "evictions": self._evictions,
                "hit_rate": self._hits / total if total > 0 else 0.0,
            }
