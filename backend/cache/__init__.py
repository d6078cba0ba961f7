"""Response cache abstraction.

Provides a CacheBackend ABC and the in-process MemoryCacheBackend used by
the external service adapters to avoid repeating identical GET calls
within one reconciliation run.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable

logger = logging.getLogger(__name__)


class CacheBackend(ABC):
    """Abstract base class for cache backends.

    Tracks hit/miss statistics as instance attributes for monitoring.
    """

    def __init__(self):
        self._hits: int = 0
        self._misses: int = 0

    @abstractmethod
    def get(self, key: str) -> Any | None:
        """Get cached value by key.

        Returns:
            Cached value, or None if not found / expired.
        """

    @abstractmethod
    def set(self, key: str, value: Any, ttl_seconds: int = 0) -> None:
        """Set value with optional TTL.

        Args:
            key: Cache key.
            value: Value to cache (decoded JSON from an upstream response).
            ttl_seconds: Time-to-live in seconds. 0 means no expiry.
        """

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete a key.

        Returns:
            True if the key existed and was deleted.
        """

    @abstractmethod
    def clear(self, prefix: str = "") -> int:
        """Clear all keys, or keys matching prefix.

        Returns:
            Number of keys deleted.
        """

    @abstractmethod
    def get_stats(self) -> dict:
        """Return cache statistics.

        Returns:
            Dict with at least: backend (str), hits (int), misses (int), size (int).
        """


_response_cache: CacheBackend | None = None


def create_cache_backend(clock: Callable[[], float] | None = None) -> CacheBackend:
    """Create a fresh in-memory cache backend."""
    from cache.memory import MemoryCacheBackend

    return MemoryCacheBackend(clock=clock)


def get_response_cache() -> CacheBackend:
    """Get or create the process-wide response cache shared by all service clients."""
    global _response_cache
    if _response_cache is None:
        _response_cache = create_cache_backend()
    return _response_cache


def clear_response_cache() -> int:
    """Drop every cached upstream response. Returns the number of entries removed."""
    cleared = get_response_cache().clear()
    logger.info("Response cache cleared (%d entries)", cleared)
    return cleared
