"""SQLite-backed shard store shared by worker processes on one host."""

import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Callable

from .base import DEFAULT_MAX_VALUE_SIZE, SizeLimitedTTLCache

logger = logging.getLogger(__name__)

SHARD_SCHEMA = """
CREATE TABLE IF NOT EXISTS shard_store (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    expires_at REAL NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_shard_store_expires ON shard_store(expires_at);
"""


class SQLiteShardStore(SizeLimitedTTLCache):
    """TTL key-value store persisted in a SQLite table.

    Entries outlive the process but not their TTL. Every worker pointing at
    the same database file sees the same shards and session cursors.
    """

    def __init__(
        self,
        db_path: str | Path,
        max_value_size: int = DEFAULT_MAX_VALUE_SIZE,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize the store.

        Args:
            db_path: Path to SQLite database file (or ":memory:").
            max_value_size: Per-entry size limit in characters.
            clock: Returns the current time in seconds.
        """
        super().__init__(max_value_size)
        self.db_path = Path(db_path).expanduser()
        self._clock = clock
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def connect(self) -> None:
        """Initialize database connection and schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(
            str(self.db_path), check_same_thread=False, timeout=30.0
        )
        self._conn.executescript(SHARD_SCHEMA)
        self._conn.commit()

        logger.info(f"SQLiteShardStore connected to {self.db_path}")

    def close(self) -> None:
        """Close database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None

    def _ensure_connected(self) -> sqlite3.Connection:
        """Ensure database connection exists."""
        if self._conn is None:
            self.connect()
        return self._conn

    def get(self, key: str) -> str | None:
        with self._lock:
            conn = self._ensure_connected()
            row = conn.execute(
                "SELECT value, expires_at FROM shard_store WHERE key = ?", (key,)
            ).fetchone()

        if row is None or row[1] <= self._clock():
            return None
        return row[0]

    def put(self, key: str, value: str, ttl_seconds: float) -> None:
        self.check_size(key, value)
        with self._lock:
            conn = self._ensure_connected()
            conn.execute(
                """
                INSERT INTO shard_store (key, value, expires_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    expires_at = excluded.expires_at
                """,
                (key, value, self._clock() + ttl_seconds),
            )
            conn.commit()

    def remove(self, key: str) -> None:
        with self._lock:
            conn = self._ensure_connected()
            conn.execute("DELETE FROM shard_store WHERE key = ?", (key,))
            conn.commit()

    def sweep_expired(self) -> int:
        """Delete expired rows.

        Returns:
            Number of rows removed.
        """
        with self._lock:
            conn = self._ensure_connected()
            cursor = conn.execute(
                "DELETE FROM shard_store WHERE expires_at <= ?", (self._clock(),)
            )
            conn.commit()

        deleted = cursor.rowcount
        if deleted > 0:
            logger.debug(f"Swept {deleted} expired rows")
        return deleted
