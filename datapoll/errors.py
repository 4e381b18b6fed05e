"""Exception types raised by the data poll subsystem."""


class DataPollError(Exception):
    """Base class for all data poll errors."""


class LockTimeoutError(DataPollError):
    """The named mutex could not be acquired within the wait bound."""

    def __init__(self, name: str, timeout_ms: int):
        super().__init__(f"Timed out after {timeout_ms}ms waiting for lock '{name}'")
        self.name = name
        self.timeout_ms = timeout_ms


class CacheCorruptedError(DataPollError, ValueError):
    """The reassembled shards are not valid JSON."""


class CacheCapacityError(DataPollError):
    """The serialized cache needs more shards than a read can reassemble."""


class ValueTooLargeError(DataPollError, ValueError):
    """A value exceeds the shard store's per-entry size limit."""

    def __init__(self, key: str, size: int, limit: int):
        super().__init__(f"Value for '{key}' is {size} chars, limit is {limit}")
        self.key = key
        self.size = size
        self.limit = limit
