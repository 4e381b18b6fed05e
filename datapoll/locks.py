"""Named mutual-exclusion locks with a bounded wait."""

import logging
import sqlite3
import threading
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from .errors import LockTimeoutError

logger = logging.getLogger(__name__)


class KeyedMutex(ABC):
    """A process-wide mutex addressed by name."""

    @abstractmethod
    def try_acquire(self, name: str, timeout_ms: int) -> bool:
        """Wait up to timeout_ms for the named lock.

        Returns:
            True if the lock is now held by the caller.
        """
        pass

    @abstractmethod
    def release(self, name: str) -> None:
        """Release a lock previously obtained with try_acquire."""
        pass

    @contextmanager
    def hold(self, name: str, timeout_ms: int) -> Iterator[None]:
        """Hold the named lock for the duration of the block.

        Raises:
            LockTimeoutError: If the lock is not obtained within timeout_ms.
        """
        if not self.try_acquire(name, timeout_ms):
            raise LockTimeoutError(name, timeout_ms)
        try:
            yield
        finally:
            self.release(name)


class ThreadKeyedMutex(KeyedMutex):
    """Named locks shared by the threads of one process."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def _lock_for(self, name: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(name)
            if lock is None:
                lock = self._locks[name] = threading.Lock()
            return lock

    def try_acquire(self, name: str, timeout_ms: int) -> bool:
        return self._lock_for(name).acquire(timeout=max(timeout_ms, 0) / 1000)

    def release(self, name: str) -> None:
        self._lock_for(name).release()


MUTEX_SCHEMA = """
CREATE TABLE IF NOT EXISTS mutex (
    name TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    expires_at REAL NOT NULL
);
"""


class SQLiteKeyedMutex(KeyedMutex):
    """Named locks shared by every process using the same database file.

    A lock is a lease row; it expires after lease_seconds so a holder that
    died without releasing cannot block writers forever.
    """

    def __init__(
        self,
        db_path: str | Path,
        lease_seconds: float = 60.0,
        retry_interval: float = 0.05,
    ):
        """Initialize the mutex.

        Args:
            db_path: Path to SQLite database file.
            lease_seconds: Maximum time a lock is held before it lapses.
            retry_interval: Seconds between acquisition attempts.
        """
        self.db_path = Path(db_path).expanduser()
        self.lease_seconds = lease_seconds
        self.retry_interval = retry_interval
        self._conn: sqlite3.Connection | None = None
        self._conn_lock = threading.Lock()
        self._owners: dict[str, str] = {}

    def connect(self) -> None:
        """Initialize database connection and schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._conn = sqlite3.connect(
            str(self.db_path),
            check_same_thread=False,
            timeout=30.0,
            isolation_level=None,
        )
        self._conn.executescript(MUTEX_SCHEMA)

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

    def _attempt(self, name: str, owner: str) -> bool:
        now = time.time()
        with self._conn_lock:
            conn = self._ensure_connected()
            conn.execute("BEGIN IMMEDIATE")
            try:
                conn.execute(
                    "DELETE FROM mutex WHERE name = ? AND expires_at <= ?",
                    (name, now),
                )
                cursor = conn.execute(
                    "INSERT OR IGNORE INTO mutex (name, owner, expires_at) VALUES (?, ?, ?)",
                    (name, owner, now + self.lease_seconds),
                )
                conn.execute("COMMIT")
            except sqlite3.Error:
                conn.execute("ROLLBACK")
                raise
        return cursor.rowcount == 1

    def try_acquire(self, name: str, timeout_ms: int) -> bool:
        owner = uuid.uuid4().hex
        deadline = time.monotonic() + max(timeout_ms, 0) / 1000

        while True:
            if self._attempt(name, owner):
                self._owners[name] = owner
                return True
            if time.monotonic() >= deadline:
                logger.debug(f"Gave up waiting for lock '{name}'")
                return False
            time.sleep(self.retry_interval)

    def release(self, name: str) -> None:
        owner = self._owners.pop(name, None)
        if owner is None:
            raise RuntimeError(f"Lock '{name}' is not held")

        with self._conn_lock:
            conn = self._ensure_connected()
            conn.execute(
                "DELETE FROM mutex WHERE name = ? AND owner = ?", (name, owner)
            )
