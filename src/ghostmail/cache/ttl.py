"""Simple in-memory cache with TTL support."""

from __future__ import annotations

import hashlib
import logging
import threading
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from ..core.datetime_utils import utcnow

LOGGER = logging.getLogger(__name__)


class CacheEntry:
    """Cache entry with expiration time."""

    __slots__ = ("value", "expires_at")

    def __init__(self, value: Any, expires_at: datetime) -> None:
        self.value = value
        self.expires_at = expires_at

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class TTLCache:
    """Thread-safe in-memory cache with per-entry TTL and prefix invalidation."""

    def __init__(
        self,
        default_ttl_seconds: int = 300,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._default_ttl = default_ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._cache: dict[str, CacheEntry] = {}

    def get(self, key: str) -> Any | None:
        """Get cached value if not expired."""
        now = self._clock()
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                LOGGER.debug("Cache miss for key: %s", key)
                return None
            if entry.is_expired(now):
                LOGGER.debug("Cache expired for key: %s", key)
                del self._cache[key]
                return None
        LOGGER.debug("Cache hit for key: %s", key)
        return entry.value

    def set(self, key: str, value: Any, ttl_seconds: int | None = None) -> None:
        """Set cache value with TTL; a TTL of zero disables caching."""
        ttl = self._default_ttl if ttl_seconds is None else ttl_seconds
        if ttl <= 0:
            return
        expires_at = self._clock() + timedelta(seconds=ttl)
        with self._lock:
            self._cache[key] = CacheEntry(value, expires_at)

    def invalidate(self, prefix: str | None = None) -> int:
        """
        Invalidate cache entries.

        Args:
            prefix: If provided, only invalidate keys starting with it.
                If None, invalidate all entries.

        Returns:
            Number of entries invalidated
        """
        with self._lock:
            if prefix is None:
                count = len(self._cache)
                self._cache.clear()
                return count
            keys = [key for key in self._cache if key.startswith(prefix)]
            for key in keys:
                del self._cache[key]
        if keys:
            LOGGER.debug("Invalidated %d cache entries for %s", len(keys), prefix)
        return len(keys)

    def __len__(self) -> int:
        return len(self._cache)

    @staticmethod
    def make_key(namespace: str, *parts: str | int | None) -> str:
        """Build ``namespace:<digest>`` so secrets never appear in keys."""
        combined = "|".join(str(p) if p is not None else "None" for p in parts)
        digest = hashlib.sha256(combined.encode("utf-8")).hexdigest()[:32]
        return f"{namespace}:{digest}"


__all__ = ["TTLCache"]
