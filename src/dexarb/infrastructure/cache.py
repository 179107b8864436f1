"""In-memory LRU cache with expiry, backed by cachetools."""
import json
import time
import hashlib
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Dict, Hashable, Optional
from cachetools import TLRUCache
from loguru import logger


@dataclass(frozen=True)
class CacheEntry:
    """Cached value and the moment it was stored."""
    value: Any
    inserted_at: float


class _EntryStore(TLRUCache):
    """TLRUCache that reports capacity evictions."""

    def __init__(self, maxsize: int, ttu, timer, on_evict: Callable[[Hashable], None]):
        super().__init__(maxsize, ttu, timer=timer)
        self._on_evict = on_evict

    def popitem(self):
        key, entry = super().popitem()
        self._on_evict(key)
        return key, entry


class TTLCache:
    """
    Size-bounded LRU cache whose entries expire after a TTL.

    Entries are stored with their insertion time so the bound and the TTL can
    be changed without extending the life of what is already cached.
    """

    def __init__(
        self,
        max_size: int = 500,
        ttl: float = 15.0,
        name: str = "cache",
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize cache.

        Args:
            max_size: Maximum number of entries kept
            ttl: Time to live in seconds
            name: Cache name for logging
            clock: Monotonic time source
        """
        if max_size <= 0:
            raise ValueError("max_size must be positive")

        self.name = name
        self._clock = clock
        self._max_size = max_size
        self._ttl = ttl
        self._lock = Lock()
        self.hits = 0
        self.misses = 0
        self.evictions = 0
        self._entries = self._new_store()

    def _new_store(self) -> _EntryStore:
        ttl = self._ttl
        return _EntryStore(
            self._max_size,
            lambda _key, entry, _now: entry.inserted_at + ttl,
            self._clock,
            self._evicted,
        )

    def _evicted(self, key: Hashable):
        self.evictions += 1
        logger.debug(f"{self.name}: evicted {key}")

    @property
    def max_size(self) -> int:
        return self._max_size

    @property
    def ttl(self) -> float:
        return self._ttl

    def get(self, key: Hashable) -> Optional[Any]:
        """
        Get value from cache.

        A hit refreshes the entry's recency. Expired entries are reported as
        absent.
        """
        with self._lock:
            entry = self._entries.get(key)

            if entry is None:
                self.misses += 1
                return None

            self.hits += 1
            return entry.value

    def put(self, key: Hashable, value: Any):
        """Store a value, evicting the least recently used entry when full."""
        with self._lock:
            self._entries[key] = CacheEntry(value=value, inserted_at=self._clock())

    def delete(self, key: Hashable) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def reconfigure(self, max_size: Optional[int] = None, ttl: Optional[float] = None):
        """
        Change the size bound and/or the TTL.

        Live entries keep their original insertion time. When the bound
        shrinks, entries beyond it are evicted immediately.
        """
        max_size = self._max_size if max_size is None else max_size
        ttl = self._ttl if ttl is None else ttl
        if max_size <= 0:
            raise ValueError("max_size must be positive")

        with self._lock:
            if max_size == self._max_size and ttl == self._ttl:
                return

            old = self._entries
            self._max_size = max_size
            self._ttl = ttl
            self._entries = self._new_store()

            for key in list(old):
                entry = old.get(key)
                if entry is not None:
                    self._entries[key] = entry

        logger.debug(f"{self.name}: resized to {max_size} entries, ttl {ttl}s")

    def clear(self):
        with self._lock:
            self._entries = self._new_store()

    def __len__(self) -> int:
        with self._lock:
            self._entries.expire()
            return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        total = self.hits + self.misses
        return {
            'name': self.name,
            'size': len(self),
            'max_size': self._max_size,
            'ttl': self._ttl,
            'hits': self.hits,
            'misses': self.misses,
            'evictions': self.evictions,
            'hit_rate': self.hits / total if total else 0.0,
        }


def payload_hash(kind: str, payload: Any) -> str:
    """Deterministic hash of a request kind and its JSON-able payload."""
    payload_str = json.dumps(payload, sort_keys=True, default=str)
    digest = hashlib.md5(f"{kind}:{payload_str}".encode()).hexdigest()
    return f"{kind}:{digest}"


class CacheKeys:
    """Standard cache key patterns."""

    @staticmethod
    def quote(venue_id: str, pair_key: str) -> str:
        """Latest quote for a pair on one venue."""
        return f"quote:{venue_id}:{pair_key}"
