"""In-process TTL cache used for read-mostly aggregates."""

import logging
import time
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Default TTLs (seconds)
TTL_SYSTEM_STATS = 300


class MemoryCache:
    """Dictionary-backed cache with per-entry expiry.

    There is no invalidation hook: an entry lives until its TTL passes or it
    is deleted explicitly.
    """

    def __init__(self, default_ttl: float = TTL_SYSTEM_STATS, clock: Callable[[], float] = time.monotonic):
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: dict[str, tuple[float, Any]] = {}

    def get(self, key: str) -> Any | None:
        """Get value from cache, or None when missing or expired."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        expires_at, value = entry
        if self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Set value in cache with TTL."""
        ttl = self.default_ttl if ttl is None else ttl
        self._entries[key] = (self._clock() + ttl, value)

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        """Clear all cached data."""
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


async def with_cache(
    cache: MemoryCache,
    key: str,
    producer: Callable[[], Awaitable[T]],
    ttl: float | None = None,
) -> T:
    """Return the cached value for ``key`` or compute, store and return it."""
    cached = cache.get(key)
    if cached is not None:
        logger.debug(f"Cache hit: {key}")
        return cached

    logger.debug(f"Cache miss: {key}")
    value = await producer()
    cache.set(key, value, ttl)
    return value
