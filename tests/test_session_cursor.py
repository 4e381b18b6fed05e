"""Tests for the session cursor store."""

import json
import math

import pytest

from datapoll.errors import CacheCorruptedError
from datapoll.storage import MemoryShardStore
from datapoll.sync import SessionCursor, SessionCursorStore


@pytest.fixture
def cursors(store, clock):
    """Create a cursor store with a 6 minute staleness window."""
    return SessionCursorStore(store, retention_seconds=360, clock=clock)


class TestSessionCursor:
    """Tests for SessionCursor."""

    def test_defaults(self):
        """Test a new cursor has never synced."""
        cursor = SessionCursor()

        assert cursor.last_success == -math.inf
        assert cursor.cancel_requested is False
        assert cursor.has_synced is False

    def test_has_synced(self):
        """Test a cursor with a timestamp has synced."""
        assert SessionCursor(last_success=0).has_synced is True


class TestSessionCursorStore:
    """Tests for SessionCursorStore."""

    def test_missing_cursor(self, cursors):
        """Test an unknown session reads as never synced."""
        cursor = cursors.get("nobody")

        assert cursor.last_success == -math.inf
        assert cursor.cancel_requested is False

    def test_set_and_get(self, cursors, clock):
        """Test a timestamp write is read back."""
        cursors.set("s1", ts=clock.now)

        cursor = cursors.get("s1")
        assert cursor.last_success == clock.now
        assert cursor.cancel_requested is False

    def test_stored_form(self, cursors, store, clock):
        """Test cursors are stored as JSON under the session key."""
        cursors.set("s1", ts=clock.now)

        raw = store.get("_poll_sess_s1")
        assert json.loads(raw) == {"lastSuccess": clock.now, "cancel": None}

    def test_cancel_only_cursor(self, cursors, clock):
        """Test writing a cancel drops the timestamp."""
        cursors.set("s1", ts=clock.now)
        cursors.set("s1", cancel=True)

        cursor = cursors.get("s1")
        assert cursor.cancel_requested is True
        assert cursor.last_success == -math.inf

    def test_timestamp_clears_cancel(self, cursors, clock):
        """Test writing a timestamp consumes a pending cancel."""
        cursors.set("s1", cancel=True)
        cursors.set("s1", ts=clock.now)

        assert cursors.get("s1").cancel_requested is False

    def test_clear(self, cursors, clock):
        """Test clearing removes the cursor."""
        cursors.set("s1", ts=clock.now)
        cursors.clear("s1")

        assert cursors.get("s1").has_synced is False

    def test_cursor_expires(self, clock):
        """Test cursors expire after their TTL."""
        now = [0.0]
        store = MemoryShardStore(clock=lambda: now[0])
        cursors = SessionCursorStore(store, retention_seconds=360, clock=clock)
        cursors.set("s1", ts=clock.now)

        now[0] = 3600.0
        assert cursors.get("s1").has_synced is False

    def test_is_stale_inside_window(self, cursors, clock):
        """Test a recent sync is not stale."""
        cursors.set("s1", ts=clock.minutes_ago(1))

        assert cursors.is_stale("s1") is False

    def test_is_stale_outside_window(self, cursors, clock):
        """Test a sync older than the window is stale."""
        cursors.set("s1", ts=clock.minutes_ago(7))

        assert cursors.is_stale("s1") is True

    def test_is_stale_never_synced(self, cursors):
        """Test a session without a cursor is stale."""
        assert cursors.is_stale("new") is True

    def test_is_stale_window_override(self, cursors, clock):
        """Test an explicit window takes precedence."""
        cursors.set("s1", ts=clock.minutes_ago(7))

        assert cursors.is_stale("s1", retention_seconds=60 * 30) is False

    def test_is_stale_boundary(self, cursors, clock):
        """Test exactly the window's age is not yet stale."""
        cursors.set("s1", ts=clock.minutes_ago(6))

        assert cursors.is_stale("s1") is False

    def test_is_stale_requires_session(self, cursors):
        """Test staleness needs a concrete session id."""
        with pytest.raises(ValueError):
            cursors.is_stale("")

    def test_garbled_cursor_raises(self, cursors, store):
        """Test a cursor that is not JSON raises CacheCorruptedError."""
        store.put(SessionCursorStore.cache_key("s1"), "{oops", 60)

        with pytest.raises(CacheCorruptedError) as exc_info:
            cursors.get("s1")

        assert isinstance(exc_info.value.__cause__, json.JSONDecodeError)

    @pytest.mark.parametrize("raw", ["[1]", "5", '"text"'])
    def test_non_object_cursor_raises(self, cursors, store, raw):
        """Test a cursor holding a JSON scalar or list is rejected."""
        store.put(SessionCursorStore.cache_key("s1"), raw, 60)

        with pytest.raises(CacheCorruptedError):
            cursors.is_stale("s1")
