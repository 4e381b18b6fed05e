"""Process-local shard store."""

import logging
import threading
import time
from typing import Callable

from .base import DEFAULT_MAX_VALUE_SIZE, SizeLimitedTTLCache

logger = logging.getLogger(__name__)


class MemoryShardStore(SizeLimitedTTLCache):
    """In-memory TTL store shared by all threads of one process."""

    def __init__(
        self,
        max_value_size: int = DEFAULT_MAX_VALUE_SIZE,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the store.

        Args:
            max_value_size: Per-entry size limit in characters.
            clock: Returns the current time in seconds.
        """
        super().__init__(max_value_size)
        self._clock = clock
        self._lock = threading.Lock()
        # key -> (value, expires_at)
        self._items: dict[str, tuple[str, float]] = {}

    def get(self, key: str) -> str | None:
        with self._lock:
            item = self._items.get(key)
            if item is None:
                return None
            value, expires_at = item
            if expires_at <= self._clock():
                del self._items[key]
                return None
            return value

    def put(self, key: str, value: str, ttl_seconds: float) -> None:
        self.check_size(key, value)
        with self._lock:
            self._items[key] = (value, self._clock() + ttl_seconds)

    def remove(self, key: str) -> None:
        with self._lock:
            self._items.pop(key, None)

    def sweep_expired(self) -> int:
        """Delete expired entries.

        Returns:
            Number of entries removed.
        """
        now = self._clock()
        with self._lock:
            expired = [k for k, (_, exp) in self._items.items() if exp <= now]
            for key in expired:
                del self._items[key]

        if expired:
            logger.debug(f"Swept {len(expired)} expired entries")
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)
