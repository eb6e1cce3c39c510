"""
In-memory TTL cache.

Provides a small bounded map of key -> (value, timestamp) used as a
per-process read-through cache in front of the coordination store (for
example kill-switch lookups). Entries expire after a fixed TTL; when the map
is full the oldest entry is evicted.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TTLCache:
    """
    Bounded cache with per-entry timestamps.

    Each instance owns its storage so components can be given their own cache
    (and tests a fresh one) instead of sharing module state.
    """

    def __init__(
        self,
        ttl_seconds: float,
        max_entries: int = 256,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.ttl = timedelta(seconds=ttl_seconds)
        self.max_entries = max_entries
        self._clock = clock
        self._entries: dict[str, tuple[Any, datetime]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def get(self, key: str) -> Optional[Any]:
        """
        Get a value if it exists and hasn't expired.

        Returns:
            Cached value if found and fresh, None otherwise
        """
        entry = self._entries.get(key)
        if entry is None:
            return None

        value, timestamp = entry
        if self._clock() - timestamp < self.ttl:
            return value

        # Expired, remove from cache
        del self._entries[key]
        logger.debug(f"Cache expired for key: {key}")
        return None

    def set(self, key: str, value: Any) -> None:
        """Store a value stamped with the current time."""
        if key not in self._entries and len(self._entries) >= self.max_entries:
            oldest = min(self._entries, key=lambda k: self._entries[k][1])
            del self._entries[oldest]
        self._entries[key] = (value, self._clock())

    def delete(self, key: str) -> bool:
        """
        Delete a specific key from the cache.

        Returns:
            True if key was deleted, False if key didn't exist
        """
        return self._entries.pop(key, None) is not None

    def clear(self) -> int:
        """
        Clear all entries from the cache.

        Returns:
            Number of entries cleared
        """
        count = len(self._entries)
        self._entries.clear()
        if count:
            logger.info(f"Cache cleared: {count} entries removed")
        return count


__all__ = ["TTLCache"]
