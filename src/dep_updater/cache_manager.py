"""
In-memory memoization caches for a single update run.

Nothing is persisted: every cache lives only as long as the process (or
until reset). Caches are registered by name so tests can clear them all
between cases.
"""

from collections import OrderedDict
from threading import Lock
from typing import Any, Callable, Dict, Hashable, Optional

_MISSING = object()


class MemoCache:
    """
    Keyed memo for deterministic computations.

    ``None`` is a legitimate cached value (e.g. "not a valid version"), so
    lookups use a private sentinel. When ``max_size`` is set the least
    recently used entry is evicted first.

    Concurrent misses on the same key may both compute the value; since the
    computations are deterministic the later insert is equivalent.
    """

    def __init__(self, name: str = "memo", max_size: Optional[int] = None):
        self.name = name
        self.max_size = max_size
        self._entries: "OrderedDict[Hashable, Any]" = OrderedDict()
        self._lock = Lock()

    def get(self, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            value = self._entries.get(key, _MISSING)
            if value is _MISSING:
                return default
            self._entries.move_to_end(key)
            return value

    def __contains__(self, key: Hashable) -> bool:
        with self._lock:
            return key in self._entries

    def put(self, key: Hashable, value: Any) -> None:
        with self._lock:
            self._entries[key] = value
            self._entries.move_to_end(key)
            if self.max_size is not None and len(self._entries) > self.max_size:
                self._entries.popitem(last=False)

    def get_or_compute(self, key: Hashable, compute: Callable[[], Any]) -> Any:
        """
        Return the cached value for ``key``, computing and storing it on a miss.

        Args:
            key: Cache key
            compute: Zero-argument callable producing the value

        Returns:
            The cached or freshly computed value
        """
        value = self.get(key, _MISSING)
        if value is _MISSING:
            value = compute()
            self.put(key, value)
        return value

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class CacheManager:
    """Named caches shared across the process."""

    def __init__(self):
        self._caches: Dict[str, MemoCache] = {}
        self._lock = Lock()

    def get_cache(self, name: str, max_size: Optional[int] = None) -> MemoCache:
        """Return the cache registered under ``name``, creating it on first use."""
        with self._lock:
            if name not in self._caches:
                self._caches[name] = MemoCache(name, max_size)
            return self._caches[name]

    def sizes(self) -> Dict[str, int]:
        with self._lock:
            return {name: len(cache) for name, cache in self._caches.items()}

    def clear_all(self) -> None:
        with self._lock:
            caches = list(self._caches.values())
        for cache in caches:
            cache.clear()


_cache_manager: Optional[CacheManager] = None


def get_cache_manager() -> CacheManager:
    global _cache_manager
    if _cache_manager is None:
        _cache_manager = CacheManager()
    return _cache_manager


def reset_caches() -> None:
    """Clear every registered cache, e.g. between test cases."""
    if _cache_manager is not None:
        _cache_manager.clear_all()
