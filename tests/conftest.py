"""Shared fixtures for the datapoll tests."""

import pytest

from datapoll.locks import ThreadKeyedMutex
from datapoll.storage import MemoryShardStore


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, now: int = 1_700_000_000_000):
        self.now = now
        self.sleeps: list[float] = []

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1000)

    def sleep(self, seconds: float) -> None:
        """Stand-in for time.sleep that advances the clock."""
        self.sleeps.append(seconds)
        self.advance(seconds)

    def minutes_ago(self, minutes: float) -> int:
        return self.now - int(minutes * 60 * 1000)


@pytest.fixture
def clock():
    """Create a fake millisecond clock."""
    return FakeClock()


@pytest.fixture
def store():
    """Create an in-memory shard store."""
    return MemoryShardStore()


@pytest.fixture
def mutex():
    """Create a thread mutex."""
    return ThreadKeyedMutex()
