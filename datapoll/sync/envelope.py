"""Change envelopes exchanged between the poll caches and clients."""

import time
from dataclasses import dataclass
from typing import Any, Mapping


@dataclass(frozen=True)
class RecordChange:
    """A single record write reported by a session."""

    model: str  # "Item", "Project", "Comment", ...
    id: str
    record: Any = None
    delete: bool = False

    @property
    def key(self) -> str:
        """Record id as used in the cache's composite key."""
        return str(self.id)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RecordChange":
        """Create from a {"model", "id", "record", "del"} mapping."""
        return cls(
            model=data["model"],
            id=data["id"],
            record=data.get("record"),
            delete=bool(data.get("del", False)),
        )


@dataclass(frozen=True)
class ChangeEnvelope:
    """One recorded change, as stored in the change cache."""

    session_id: str
    timestamp: int  # epoch milliseconds
    model_name: str
    record: Any
    is_delete: bool = False

    def to_stored(self) -> dict[str, Any]:
        """Convert to the compact form kept under the model key."""
        return {
            "sess": self.session_id,
            "rec": self.record,
            "del": self.is_delete,
            "ts": self.timestamp,
        }

    @classmethod
    def from_stored(cls, model_name: str, data: Mapping[str, Any]) -> "ChangeEnvelope":
        """Create from the compact stored form."""
        return cls(
            session_id=data.get("sess"),
            timestamp=data.get("ts"),
            model_name=model_name,
            record=data.get("rec"),
            is_delete=bool(data.get("del")),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire form sent to clients."""
        return {
            "sess": self.session_id,
            "model": self.model_name,
            "rec": self.record,
            "del": self.is_delete,
            "ts": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ChangeEnvelope":
        """Create from the wire form."""
        return cls.from_stored(data["model"], data)


def composite_key(record_id: Any, session_id: str) -> str:
    """Cache key of a record written by a session.

    Repeated writes by one session coalesce; writes by different sessions
    to the same record are kept side by side.
    """
    return f"{record_id}{session_id}"


def now_ms() -> int:
    """Current time in epoch milliseconds, the unit of every poll timestamp."""
    return int(time.time() * 1000)
