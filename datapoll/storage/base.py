"""Base class for the size-limited key-value store backing the poll caches."""

from abc import ABC, abstractmethod

from ..errors import ValueTooLargeError

# Per-entry value limit of the hosted cache service the shard layout targets
DEFAULT_MAX_VALUE_SIZE = 100_000


class SizeLimitedTTLCache(ABC):
    """Key-value store with a hard per-entry size limit and per-entry TTL.

    No ordering or transactional guarantees are made across keys. Expired
    entries read as absent.
    """

    def __init__(self, max_value_size: int = DEFAULT_MAX_VALUE_SIZE):
        self._max_value_size = max_value_size

    @property
    def max_value_size(self) -> int:
        """Largest value, in characters, a single entry may hold."""
        return self._max_value_size

    def check_size(self, key: str, value: str) -> None:
        """Raise ValueTooLargeError if value does not fit in one entry."""
        if len(value) > self._max_value_size:
            raise ValueTooLargeError(key, len(value), self._max_value_size)

    @abstractmethod
    def get(self, key: str) -> str | None:
        """Get the value stored under key.

        Args:
            key: Entry key.

        Returns:
            The stored value, or None if absent or expired.
        """
        pass

    @abstractmethod
    def put(self, key: str, value: str, ttl_seconds: float) -> None:
        """Store value under key, replacing any previous value.

        Args:
            key: Entry key.
            value: Serialized value, at most max_value_size characters.
            ttl_seconds: Seconds until the entry expires.

        Raises:
            ValueTooLargeError: If value exceeds max_value_size.
        """
        pass

    @abstractmethod
    def remove(self, key: str) -> None:
        """Remove the entry under key. Missing keys are ignored."""
        pass
