"""Shard stores: size-limited TTL key-value backends for the poll caches."""

from .base import DEFAULT_MAX_VALUE_SIZE, SizeLimitedTTLCache
from .memory import MemoryShardStore
from .sqlite_store import SQLiteShardStore

__all__ = [
    "DEFAULT_MAX_VALUE_SIZE",
    "SizeLimitedTTLCache",
    "MemoryShardStore",
    "SQLiteShardStore",
]
