"""
Short-lived read-through cache for read paths.

Entries expire lazily: an expired entry is dropped when it is next read.
Nothing here is authoritative, so the whole cache may be cleared at any time.
"""

import re
import threading
import time
from typing import Any, Callable, NamedTuple, Optional


class CacheTTL:
    SHORT = 30.0
    MEDIUM = 60.0


class CacheKey(NamedTuple):
    resource: str
    filters: tuple = ()

    @classmethod
    def of(cls, resource: str, **filters: Any) -> "CacheKey":
        items = tuple(sorted((k, v) for k, v in filters.items() if v is not None))
        return cls(resource, items)

    def __str__(self) -> str:
        if not self.filters:
            return self.resource
        return self.resource + ":" + ",".join(f"{k}={v}" for k, v in self.filters)


class _Entry(NamedTuple):
    value: Any
    expires_at: float


class TTLCache:
    def __init__(self, default_ttl: float = CacheTTL.MEDIUM, clock: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[CacheKey, _Entry] = {}
        self._lock = threading.Lock()

    def get(self, key: CacheKey, default: Any = None) -> Any:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return default
            if self._clock() >= entry.expires_at:
                del self._entries[key]
                return default
            return entry.value

    def set(self, key: CacheKey, value: Any, ttl: Optional[float] = None) -> None:
        ttl = self.default_ttl if ttl is None else ttl
        with self._lock:
            self._entries[key] = _Entry(value, self._clock() + ttl)

    def get_or_set(self, key: CacheKey, loader: Callable[[], Any], ttl: Optional[float] = None) -> Any:
        """Return the cached value for ``key`` or load, store and return it."""
        missing = object()
        value = self.get(key, missing)
        if value is missing:
            value = loader()
            self.set(key, value, ttl)
        return value

    def invalidate(self, key: CacheKey) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def invalidate_pattern(self, pattern: str) -> int:
        regex = re.compile(pattern)
        with self._lock:
            doomed = [key for key in self._entries if regex.search(str(key))]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    def invalidate_tag(self, *resources: str) -> int:
        with self._lock:
            doomed = [key for key in self._entries if key.resource in resources]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def purge_expired(self) -> int:
        with self._lock:
            now = self._clock()
            doomed = [key for key, entry in self._entries.items() if now >= entry.expires_at]
            for key in doomed:
                del self._entries[key]
        return len(doomed)

    def size(self) -> int:
        """Number of live entries."""
        self.purge_expired()
        return len(self._entries)
