"""Sharded change cache: recent record writes spread over size-capped entries.

The whole cache is one JSON document. Because the backing store caps the
size of a single entry, the document is cut into fixed-size slices stored
under consecutive keys and glued back together on read.

Layout of the document:

    {
        "Item": {
            "<record id><session id>": {"sess": ..., "rec": ..., "del": ..., "ts": ...},
        },
        "Project": {...},
    }
"""

import json
import logging
import math
from typing import Any, Callable, Iterable, Mapping

from ..errors import CacheCapacityError, CacheCorruptedError
from ..locks import KeyedMutex
from ..storage import SizeLimitedTTLCache
from .envelope import ChangeEnvelope, RecordChange, composite_key, now_ms

logger = logging.getLogger(__name__)

DEFAULT_SHARD_SIZE = 100_000
DEFAULT_MAX_SHARDS = 100
DEFAULT_LOCK_NAME = "data_poll_cache"

ChangeCacheData = dict[str, dict[str, dict[str, Any] | None]]


class ShardedChangeCache:
    """Change cache persisted as a contiguous run of shards.

    record_changes() is the only writer and runs under a named mutex.
    Readers take no lock; they may land between the removal of the old
    shards and the write of the new ones and see an empty or short cache.
    """

    def __init__(
        self,
        store: SizeLimitedTTLCache,
        mutex: KeyedMutex,
        prefix: str = "",
        retention_seconds: int = 60 * 6,
        shard_size: int = DEFAULT_SHARD_SIZE,
        max_shards: int = DEFAULT_MAX_SHARDS,
        lock_name: str = DEFAULT_LOCK_NAME,
        lock_timeout_seconds: float = 20,
        clock: Callable[[], int] = now_ms,
    ):
        """Initialize the change cache.

        Args:
            store: Backing shard store.
            mutex: Named mutex serializing writers.
            prefix: Key prefix, e.g. "_prod" or "_dev".
            retention_seconds: Age after which envelopes are evicted;
                also the TTL of every shard.
            shard_size: Characters per shard.
            max_shards: Most shards a read will reassemble.
            lock_name: Name of the writer lock.
            lock_timeout_seconds: Longest a writer waits for the lock.
            clock: Returns the current time in epoch milliseconds.
        """
        if shard_size > store.max_value_size:
            raise ValueError(
                f"shard_size {shard_size} exceeds store limit {store.max_value_size}"
            )

        self._store = store
        self._mutex = mutex
        self._clock = clock
        self.key = f"{prefix or ''}__data_poll_cache"
        self.retention_seconds = retention_seconds
        self.shard_size = shard_size
        self.max_shards = max_shards
        self.lock_name = lock_name
        self.lock_timeout_ms = int(lock_timeout_seconds * 1000)

        # In-memory mirror of the last load or write
        self.updates: ChangeCacheData = {}

    def shard_key(self, index: int) -> str:
        """Store key of the shard at index."""
        return f"{self.key}-{index}"

    def load(self) -> ChangeCacheData:
        """Reassemble the cache from its shards.

        Every call parses into a new mapping, so callers may use the result
        without coordinating with a concurrent writer.

        Returns:
            The cache mapping, also kept as the in-memory mirror.

        Raises:
            CacheCorruptedError: If the shards do not form a cache document.
        """
        data = self._read()
        self.updates = data
        return data

    def _read(self) -> ChangeCacheData:
        chunks = []
        index = 0
        while index < self.max_shards:
            chunk = self._store.get(self.shard_key(index))
            if not chunk:
                break
            chunks.append(chunk)
            index += 1

        raw = "".join(chunks)
        try:
            data = json.loads(raw) if raw else {}
        except json.JSONDecodeError as e:
            raise CacheCorruptedError(
                f"Change cache '{self.key}' is not valid JSON ({index} shards read)"
            ) from e

        if not isinstance(data, dict):
            raise CacheCorruptedError(
                f"Change cache '{self.key}' holds {type(data).__name__}, expected object"
            )

        for model, entries in data.items():
            if not isinstance(entries, dict) or any(
                u is not None and not isinstance(u, dict) for u in entries.values()
            ):
                raise CacheCorruptedError(
                    f"Change cache '{self.key}' has malformed entries for model '{model}'"
                )

        return data

    def serialize(self, data: Mapping[str, Mapping[str, Any]]) -> str:
        """Compact JSON for data. Evicted (None) entries are left out."""
        compact = {
            model: {key: u for key, u in entries.items() if u is not None}
            for model, entries in data.items()
        }
        return json.dumps(compact, separators=(",", ":"))

    def write(self, data: Mapping[str, Mapping[str, Any]]) -> int:
        """Replace all shards with the serialized data.

        Existing shards are removed first so a cache that shrank leaves no
        trailing shard from an earlier, larger write.

        Args:
            data: Cache mapping to store.

        Returns:
            Number of shards written.

        Raises:
            CacheCapacityError: If data needs more than max_shards shards.
                Nothing is removed or written in that case.
        """
        payload = self.serialize(data)
        count = math.ceil(len(payload) / self.shard_size)

        if count > self.max_shards:
            raise CacheCapacityError(
                f"Change cache needs {count} shards, limit is {self.max_shards}"
            )

        self.empty()

        for index in range(count):
            block = payload[index * self.shard_size:(index + 1) * self.shard_size]
            self._store.put(self.shard_key(index), block, self.retention_seconds)

        logger.debug(f"Wrote {len(payload)} chars across {count} shards")
        return count

    def empty(self) -> int:
        """Remove every shard from index 0 up to the first missing one.

        The in-memory mirror is left as is.

        Returns:
            Number of shards removed.
        """
        index = 0
        while self._store.get(self.shard_key(index)):
            self._store.remove(self.shard_key(index))
            index += 1
        return index

    def record_changes(
        self,
        session_id: str,
        records: Iterable[RecordChange | Mapping[str, Any]],
    ) -> None:
        """Record the writes of a session and evict expired envelopes.

        The load, update, eviction and rewrite all happen while holding the
        writer lock, on a mapping of its own. The mirror is replaced once
        the shards are written.

        Args:
            session_id: Session that performed the writes.
            records: RecordChange objects or {"model", "id", "record", "del"}
                mappings.

        Raises:
            LockTimeoutError: If the writer lock is not obtained in time.
            CacheCapacityError: If the result would not fit in max_shards.
        """
        changes = [
            r if isinstance(r, RecordChange) else RecordChange.from_dict(r)
            for r in records
        ]

        with self._mutex.hold(self.lock_name, self.lock_timeout_ms):
            try:
                data = self._read()
            except CacheCorruptedError as e:
                # Rewriting every shard is the only way out of a torn cache
                logger.error(f"{e}; discarding it and starting over")
                data = {}

            now = self._clock()
            for change in changes:
                envelope = ChangeEnvelope(
                    session_id=session_id,
                    timestamp=now,
                    model_name=change.model,
                    record=change.record,
                    is_delete=change.delete,
                )
                model_updates = data.setdefault(change.model, {})
                model_updates[composite_key(change.key, session_id)] = envelope.to_stored()

            evicted = self.evict(self._clock() - self.retention_seconds * 1000, data)
            self.write(data)
            self.updates = data

        logger.debug(
            f"Recorded {len(changes)} changes for session {session_id} "
            f"({evicted} evicted)"
        )

    def evict(self, cutoff: int, data: ChangeCacheData | None = None) -> int:
        """Null out entries older than cutoff.

        Args:
            cutoff: Epoch milliseconds; older envelopes are evicted.
            data: Cache mapping to evict from, defaults to the mirror.

        Returns:
            Number of envelopes evicted.
        """
        if data is None:
            data = self.updates

        evicted = 0
        for entries in data.values():
            for key, u in entries.items():
                if not u or u.get("ts", 0) < cutoff:
                    if u:
                        evicted += 1
                    entries[key] = None
        return evicted

    def clear(self) -> None:
        """Reset the mirror and remove all shards. Session cursors are kept."""
        self.updates = {}
        self.empty()
        logger.debug(f"Cleared change cache '{self.key}'")

    def envelopes(self, data: ChangeCacheData | None = None) -> list[ChangeEnvelope]:
        """Flatten a cache mapping, by default the in-memory mirror, into envelopes."""
        if data is None:
            data = self.updates
        return [
            ChangeEnvelope.from_stored(model, u)
            for model, entries in data.items()
            for u in entries.values()
            if u
        ]

    def get_stats(self) -> dict[str, Any]:
        """Get cache statistics from a fresh load.

        Returns:
            Dictionary with shard and envelope counts.
        """
        data = self.load()
        shards = 0
        while shards < self.max_shards and self._store.get(self.shard_key(shards)):
            shards += 1

        return {
            "key": self.key,
            "shards": shards,
            "size_chars": len(self.serialize(data)),
            "envelopes_by_model": {
                model: sum(1 for u in entries.values() if u)
                for model, entries in data.items()
            },
            "retention_seconds": self.retention_seconds,
        }
