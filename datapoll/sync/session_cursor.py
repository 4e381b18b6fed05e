"""Per-session sync cursors: last successful sync time and cancel intent."""

import json
import logging
import math
from dataclasses import dataclass
from typing import Callable

from ..errors import CacheCorruptedError
from ..storage import SizeLimitedTTLCache
from .envelope import now_ms

logger = logging.getLogger(__name__)

SESSION_TTL_SECONDS = 60 * 60 * 1


@dataclass
class SessionCursor:
    """Bookkeeping for one polling session."""

    last_success: float = -math.inf  # epoch ms; -inf means never synced
    cancel_requested: bool = False

    @property
    def has_synced(self) -> bool:
        return self.last_success != -math.inf


class SessionCursorStore:
    """Session cursors kept in the shard store, each with its own TTL."""

    def __init__(
        self,
        store: SizeLimitedTTLCache,
        retention_seconds: int,
        ttl_seconds: int = SESSION_TTL_SECONDS,
        clock: Callable[[], int] = now_ms,
    ):
        """Initialize the cursor store.

        Args:
            store: Backing key-value store.
            retention_seconds: Default staleness window for is_stale().
            ttl_seconds: Inactivity TTL of each cursor.
            clock: Returns the current time in epoch milliseconds.
        """
        self._store = store
        self._clock = clock
        self.retention_seconds = retention_seconds
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def cache_key(session_id: str) -> str:
        return f"_poll_sess_{session_id}"

    def get(self, session_id: str) -> SessionCursor:
        """Get the cursor of a session.

        A missing cursor, or one stored with a cancel flag only, reads as
        never synced.

        Raises:
            CacheCorruptedError: If the stored cursor is not a JSON object.
        """
        raw = self._store.get(self.cache_key(session_id))
        if not raw:
            return SessionCursor()

        try:
            info = json.loads(raw)
        except json.JSONDecodeError as e:
            raise CacheCorruptedError(f"Cursor of session {session_id} is not valid JSON") from e
        if not isinstance(info, dict):
            raise CacheCorruptedError(
                f"Cursor of session {session_id} holds {type(info).__name__}, expected object"
            )

        last_success = info.get("lastSuccess")
        return SessionCursor(
            last_success=-math.inf if last_success is None else last_success,
            cancel_requested=bool(info.get("cancel")),
        )

    def set(
        self,
        session_id: str,
        ts: int | None = None,
        cancel: bool | None = None,
    ) -> None:
        """Replace the cursor of a session.

        Args:
            session_id: Session id.
            ts: Last successful sync in epoch ms, None to leave it unset.
            cancel: Cancellation flag, None to leave it unset.
        """
        info = json.dumps({"lastSuccess": ts, "cancel": cancel})
        self._store.put(self.cache_key(session_id), info, self.ttl_seconds)

    def clear(self, session_id: str) -> None:
        """Remove the cursor of a session."""
        self._store.remove(self.cache_key(session_id))

    def is_stale(self, session_id: str, retention_seconds: int | None = None) -> bool:
        """Check whether a session has gone too long without a sync.

        Args:
            session_id: Session id; must be non-empty.
            retention_seconds: Window to apply, defaults to the store's.

        Returns:
            True if the last successful sync is older than the window.
        """
        if not session_id:
            raise ValueError("is_stale() requires a session id")

        window = self.retention_seconds if retention_seconds is None else retention_seconds
        cursor = self.get(session_id)
        return (self._clock() - cursor.last_success) / 1000 > window
