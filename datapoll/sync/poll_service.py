"""Short-poll and long-poll answers built on the change cache and cursors."""

import logging
import time
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Iterable, Mapping

from ..locks import KeyedMutex, SQLiteKeyedMutex, ThreadKeyedMutex
from ..storage import MemoryShardStore, SizeLimitedTTLCache, SQLiteShardStore
from .change_cache import ShardedChangeCache
from .envelope import ChangeEnvelope, RecordChange, now_ms
from .session_cursor import SessionCursorStore

if TYPE_CHECKING:
    from ..config import Config

logger = logging.getLogger(__name__)

# Cursor the unscoped staleness check has always read: the short poll
# evaluated staleness without passing the requesting session along.
UNSCOPED_SESSION_ID = "undefined"


class StaleScope(Enum):
    """Which cursor the short poll's staleness check evaluates."""

    SESSION = "session"  # the requesting session's own cursor
    UNSCOPED = "unscoped"  # a cursor not tied to the caller


class PollService:
    """Answers "has anything changed" for polling sessions.

    Holds no state between calls; everything lives in the change cache and
    the session cursor store.
    """

    def __init__(
        self,
        cache: ShardedChangeCache,
        cursors: SessionCursorStore,
        long_poll_seconds: float = 60 * 4,
        sleep_seconds: float = 5,
        stale_scope: StaleScope = StaleScope.SESSION,
        clock: Callable[[], int] = now_ms,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the poll service.

        Args:
            cache: Change cache to read.
            cursors: Session cursor store.
            long_poll_seconds: How long a long poll waits for changes.
            sleep_seconds: Pause between long poll checks.
            stale_scope: Cursor evaluated by the short poll's staleness check.
            clock: Returns the current time in epoch milliseconds.
            sleep: Blocks for the given number of seconds.
        """
        self.cache = cache
        self.cursors = cursors
        self.long_poll_seconds = long_poll_seconds
        self.sleep_seconds = sleep_seconds
        self.stale_scope = stale_scope
        self._clock = clock
        self._sleep = sleep

        if stale_scope is StaleScope.UNSCOPED:
            logger.warning(
                "Short poll staleness is checked against an unscoped cursor; "
                "most polls will report changes"
            )

    @classmethod
    def from_config(
        cls,
        config: "Config",
        store: SizeLimitedTTLCache | None = None,
        mutex: KeyedMutex | None = None,
    ) -> "PollService":
        """Build a service and its stores from configuration.

        Args:
            config: Application configuration.
            store: Shard store to use instead of the configured backend.
            mutex: Mutex to use instead of the configured backend.

        Returns:
            Configured PollService.
        """
        backend = config.store.backend
        if backend not in ("memory", "sqlite"):
            raise ValueError(f"Unknown store backend: {backend}")

        if store is None:
            if backend == "sqlite":
                store = SQLiteShardStore(
                    config.store.db_path, max_value_size=config.store.max_value_size
                )
            else:
                store = MemoryShardStore(config.store.max_value_size)

        if mutex is None:
            if backend == "sqlite":
                mutex = SQLiteKeyedMutex(config.store.db_path)
            else:
                mutex = ThreadKeyedMutex()

        cache = ShardedChangeCache(
            store,
            mutex,
            prefix=config.cache_prefix,
            retention_seconds=config.cache.retention_seconds,
            shard_size=config.cache.shard_size,
            max_shards=config.cache.max_shards,
            lock_name=config.cache.lock_name,
            lock_timeout_seconds=config.cache.lock_timeout_seconds,
        )
        cursors = SessionCursorStore(
            store,
            retention_seconds=config.cache.retention_seconds,
            ttl_seconds=config.sessions.ttl_seconds,
        )
        return cls(
            cache,
            cursors,
            long_poll_seconds=config.poll.long_poll_seconds,
            sleep_seconds=config.poll.sleep_seconds,
            stale_scope=StaleScope(config.poll.stale_scope),
        )

    def new_updates(self, session_id: str, last_success: float) -> list[ChangeEnvelope]:
        """Envelopes written by other sessions at or after last_success.

        Args:
            session_id: Requesting session; its own writes are left out.
            last_success: Epoch ms of the session's last successful sync.

        Returns:
            Matching envelopes from a fresh cache load.
        """
        data = self.cache.load()
        return [
            u
            for u in self.cache.envelopes(data)
            if u.session_id != session_id and u.timestamp >= last_success
        ]

    def is_stale(self, session_id: str) -> bool:
        """Check whether a session has gone too long without a sync."""
        return self.cursors.is_stale(session_id, self.cache.retention_seconds)

    def poll(self, session_id: str) -> bool:
        """Short poll: does the session need to refresh?

        Every call counts as a sync attempt and moves the session's cursor
        to now, whether or not changes were found.

        Args:
            session_id: Requesting session.

        Returns:
            True if the session is stale or other sessions wrote since its
            last sync.
        """
        cursor = self.cursors.get(session_id)
        logger.debug(f"poll() session={session_id}")

        ts = self._clock()
        changes = self.new_updates(session_id, cursor.last_success)

        if self.stale_scope is StaleScope.SESSION:
            stale = self.is_stale(session_id)
        else:
            stale = self.is_stale(UNSCOPED_SESSION_ID)

        self.cursors.set(session_id, ts=ts)
        return stale or len(changes) > 0

    def long_poll(self, session_id: str) -> list[ChangeEnvelope]:
        """Long poll: wait for changes from other sessions.

        Blocks the calling thread, rechecking every sleep_seconds, until
        changes appear, long_poll_seconds pass, or cancel() is observed.

        Args:
            session_id: Requesting session.

        Returns:
            New envelopes, or an empty list on timeout or cancellation.
        """
        cursor = self.cursors.get(session_id)
        stop_waiting = self._clock() + 1000 * self.long_poll_seconds
        logger.debug(f"long_poll() session={session_id} start")

        ts = None
        while self._clock() <= stop_waiting and not self.cursors.get(session_id).cancel_requested:
            ts = self._clock()
            updates = self.new_updates(session_id, cursor.last_success)

            if updates:
                self.cursors.set(session_id, ts=ts)
                logger.debug(f"long_poll() session={session_id} found {len(updates)} updates")
                return updates

            self._sleep(self.sleep_seconds)

        # With no check made (cancel already pending) the cursor loses its
        # timestamp, so the next long poll delivers everything retained.
        self.cursors.set(session_id, ts=ts)
        logger.debug(f"long_poll() session={session_id} empty")
        return []

    def cancel(self, session_id: str) -> None:
        """Ask an in-flight long poll of the session to stop at its next check."""
        self.cursors.set(session_id, cancel=True)
        logger.debug(f"cancel() session={session_id}")

    def mark_synced(self, session_id: str) -> None:
        """Record a full data load by the session as a successful sync."""
        self.cursors.set(session_id, ts=self._clock())

    def record_changes(
        self,
        session_id: str,
        records: Iterable[RecordChange | Mapping[str, Any]],
    ) -> None:
        """Record that a session wrote the given records."""
        self.cache.record_changes(session_id, records)

    def inspect(self) -> dict[str, Any]:
        """Reload and return the raw change cache."""
        data = self.cache.load()
        logger.debug(f"inspect() {data}")
        return data

    def clear(self) -> None:
        """Drop all recorded changes."""
        self.cache.clear()
