"""Incremental data synchronization between browser sessions.

Server side: a sharded change cache of recent record writes plus per-session
cursors, answering short and long polls. Client side: a resilient poll
scheduler that pauses while the page is hidden.
"""

from .change_cache import ShardedChangeCache
from .envelope import ChangeEnvelope, RecordChange
from .poll_client import LongPollResult, PollClient
from .poll_service import PollService, StaleScope
from .scheduler import PollRequest, PollScheduler, SchedulerState
from .session_cursor import SessionCursor, SessionCursorStore
from .visibility import PageVisibility

__all__ = [
    "ChangeEnvelope",
    "LongPollResult",
    "PageVisibility",
    "PollClient",
    "PollRequest",
    "PollScheduler",
    "PollService",
    "RecordChange",
    "SchedulerState",
    "SessionCursor",
    "SessionCursorStore",
    "ShardedChangeCache",
    "StaleScope",
]
