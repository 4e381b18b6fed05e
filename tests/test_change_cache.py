"""Tests for the sharded change cache."""

import json

import pytest

from datapoll.errors import CacheCapacityError, CacheCorruptedError, LockTimeoutError
from datapoll.storage import MemoryShardStore
from datapoll.sync import RecordChange, ShardedChangeCache


@pytest.fixture
def cache(store, mutex, clock):
    """Create a change cache with a 6 minute retention."""
    return ShardedChangeCache(
        store, mutex, prefix="_test", retention_seconds=360, clock=clock
    )


def big_records(count: int, size: int = 1000) -> list[RecordChange]:
    return [
        RecordChange(model="Item", id=f"r{i}", record={"body": "x" * size})
        for i in range(count)
    ]


class TestShardedChangeCache:
    """Tests for ShardedChangeCache."""

    def test_shard_keys(self, cache):
        """Test shard keys carry the prefix and index."""
        assert cache.key == "_test__data_poll_cache"
        assert cache.shard_key(0) == "_test__data_poll_cache-0"
        assert cache.shard_key(12) == "_test__data_poll_cache-12"

    def test_load_empty(self, cache):
        """Test an absent cache loads as empty."""
        assert cache.load() == {}
        assert cache.envelopes() == []

    def test_record_changes(self, cache, clock):
        """Test a recorded write is stored under record id plus session id."""
        cache.record_changes("s1", [RecordChange(model="M", id="r1", record={"v": 1})])

        data = cache.load()
        assert data["M"]["r1s1"] == {
            "sess": "s1",
            "rec": {"v": 1},
            "del": False,
            "ts": clock.now,
        }

    def test_record_changes_from_mappings(self, cache):
        """Test plain mappings with a "del" flag are accepted."""
        cache.record_changes(
            "s1", [{"model": "Item", "id": 7, "record": None, "del": True}]
        )

        entry = cache.load()["Item"]["7s1"]
        assert entry["del"] is True
        assert entry["rec"] is None

    def test_same_session_coalesces(self, cache, clock):
        """Test repeated writes by one session keep only the last."""
        cache.record_changes("s1", [RecordChange(model="M", id="r1", record={"v": 1})])
        clock.advance(5)
        cache.record_changes("s1", [RecordChange(model="M", id="r1", record={"v": 2})])

        entries = cache.load()["M"]
        assert list(entries) == ["r1s1"]
        assert entries["r1s1"]["rec"] == {"v": 2}
        assert entries["r1s1"]["ts"] == clock.now

    def test_different_sessions_kept_apart(self, cache):
        """Test writes to one record by two sessions are both kept."""
        cache.record_changes("s1", [RecordChange(model="M", id="r1", record={"v": 1})])
        cache.record_changes("s2", [RecordChange(model="M", id="r1", record={"v": 2})])

        entries = cache.load()["M"]
        assert set(entries) == {"r1s1", "r1s2"}

    def test_one_timestamp_per_batch(self, cache):
        """Test every record in one call shares a timestamp."""
        cache.record_changes(
            "s1",
            [
                RecordChange(model="Item", id="a"),
                RecordChange(model="Project", id="b"),
            ],
        )

        stamps = {u.timestamp for u in cache.envelopes()}
        assert len(stamps) == 1

    def test_large_cache_spans_shards(self, cache, store):
        """Test a cache larger than one shard is split and reassembled."""
        cache.record_changes("s1", big_records(150))

        assert store.get(cache.shard_key(0)) is not None
        assert store.get(cache.shard_key(1)) is not None
        assert store.get(cache.shard_key(2)) is None
        assert len(store.get(cache.shard_key(0))) == 100_000

        cache.updates = {}
        assert len(cache.load()["Item"]) == 150

    def test_shrinking_cache_leaves_no_trailing_shard(self, cache, store, clock):
        """Test a smaller rewrite removes higher shards from before."""
        cache.record_changes("s1", big_records(150))
        assert store.get(cache.shard_key(1)) is not None

        clock.advance(361)
        cache.record_changes("s2", [RecordChange(model="M", id="r1")])

        assert store.get(cache.shard_key(0)) is not None
        assert store.get(cache.shard_key(1)) is None
        assert list(cache.load()) == ["Item", "M"]
        assert cache.load()["Item"] == {}

    def test_eviction(self, cache, clock):
        """Test envelopes older than the retention are dropped on write."""
        cache.record_changes("s1", [RecordChange(model="M", id="old")])
        clock.advance(361)
        cache.record_changes("s1", [RecordChange(model="M", id="new")])

        # Evicted entries are nulled in the mirror and dropped when stored
        assert cache.updates["M"]["olds1"] is None
        assert set(cache.load()["M"]) == {"news1"}

    def test_eviction_boundary(self, cache, clock):
        """Test an envelope exactly at the cutoff is kept."""
        cache.record_changes("s1", [RecordChange(model="M", id="edge")])
        clock.advance(360)
        cache.record_changes("s1", [RecordChange(model="M", id="new")])

        assert set(cache.load()["M"]) == {"edges1", "news1"}

    def test_evict_count(self, cache, clock):
        """Test evict() reports how many envelopes it removed."""
        cache.record_changes("s1", [RecordChange(model="M", id="a")])
        cache.record_changes("s2", [RecordChange(model="M", id="b")])

        assert cache.evict(clock.now + 1) == 2
        assert cache.evict(clock.now + 1) == 0
        assert cache.envelopes() == []

    def test_corrupted_cache_raises(self, cache, store):
        """Test shards that are not valid JSON raise CacheCorruptedError."""
        store.put(cache.shard_key(0), '{"M": {"r1s1": ', 60)

        with pytest.raises(CacheCorruptedError) as exc_info:
            cache.load()

        assert isinstance(exc_info.value, ValueError)
        assert isinstance(exc_info.value.__cause__, json.JSONDecodeError)

    def test_non_object_cache_raises(self, cache, store):
        """Test a JSON document that is not an object is rejected."""
        store.put(cache.shard_key(0), "[1, 2, 3]", 60)

        with pytest.raises(CacheCorruptedError):
            cache.load()

    def test_corrupted_cache_heals_on_write(self, cache, store):
        """Test the next recorded change rewrites a corrupted cache."""
        store.put(cache.shard_key(0), "{not json", 60)

        cache.record_changes("s1", [RecordChange(model="M", id="r1")])

        assert set(cache.load()["M"]) == {"r1s1"}

    def test_lock_timeout(self, store, mutex):
        """Test a writer that cannot get the lock writes nothing."""
        cache = ShardedChangeCache(store, mutex, lock_timeout_seconds=0.05)
        mutex.try_acquire(cache.lock_name, 0)

        with pytest.raises(LockTimeoutError):
            cache.record_changes("s1", [RecordChange(model="M", id="r1")])

        assert store.get(cache.shard_key(0)) is None

    def test_lock_released_after_write(self, cache, mutex):
        """Test the writer lock is free again once a write finishes."""
        cache.record_changes("s1", [RecordChange(model="M", id="r1")])

        assert mutex.try_acquire(cache.lock_name, 0) is True

    def test_capacity_error_keeps_existing_shards(self, mutex, clock):
        """Test a write needing too many shards leaves the cache untouched."""
        store = MemoryShardStore()
        cache = ShardedChangeCache(
            store, mutex, shard_size=50, max_shards=2, clock=clock
        )
        cache.record_changes("s1", [RecordChange(model="M", id="1")])
        before = [store.get(cache.shard_key(i)) for i in range(2)]

        with pytest.raises(CacheCapacityError):
            cache.record_changes(
                "s1", [RecordChange(model="M", id="2", record="x" * 200)]
            )

        assert [store.get(cache.shard_key(i)) for i in range(2)] == before

    def test_shard_size_over_store_limit(self, mutex):
        """Test shards bigger than the store allows are refused up front."""
        store = MemoryShardStore(max_value_size=1000)

        with pytest.raises(ValueError):
            ShardedChangeCache(store, mutex, shard_size=1001)

    def test_load_stops_at_max_shards(self, store, mutex):
        """Test reads never go past max_shards."""
        cache = ShardedChangeCache(store, mutex, shard_size=10, max_shards=2)
        store.put(cache.shard_key(0), '{"M":{}', 60)
        store.put(cache.shard_key(1), "}", 60)
        store.put(cache.shard_key(2), "garbage", 60)

        assert cache.load() == {"M": {}}

    def test_clear(self, cache, store):
        """Test clearing removes every shard."""
        cache.record_changes("s1", big_records(150))

        cache.clear()

        assert cache.updates == {}
        assert store.get(cache.shard_key(0)) is None
        assert store.get(cache.shard_key(1)) is None
        assert cache.load() == {}

    def test_envelopes(self, cache, clock):
        """Test the mirror flattens into envelopes."""
        cache.record_changes(
            "s1", [RecordChange(model="Item", id="1", record={"name": "a"})]
        )

        envelopes = cache.envelopes()
        assert len(envelopes) == 1
        assert envelopes[0].model_name == "Item"
        assert envelopes[0].session_id == "s1"
        assert envelopes[0].record == {"name": "a"}
        assert envelopes[0].timestamp == clock.now

    def test_get_stats(self, cache):
        """Test stats report shards and envelope counts."""
        cache.record_changes("s1", big_records(150))
        cache.record_changes("s2", [RecordChange(model="Project", id="p")])

        stats = cache.get_stats()

        assert stats["key"] == "_test__data_poll_cache"
        assert stats["shards"] == 2
        assert stats["envelopes_by_model"] == {"Item": 150, "Project": 1}
        assert stats["retention_seconds"] == 360


class TestReadersDuringWrite:
    """Tests for lock-free readers landing inside a write."""

    def test_reload_mid_write_keeps_batch(self, store, mutex, clock):
        """Test a reader reloading between upsert and write loses nothing."""
        reads = []

        def reading_clock():
            # Every clock read inside record_changes lets a reader in first
            reads.append(cache.load())
            return clock()

        cache = ShardedChangeCache(store, mutex, clock=reading_clock)

        cache.record_changes("s1", [RecordChange(model="M", id="r1", record={"v": 1})])
        cache.record_changes("s2", [RecordChange(model="M", id="r2", record={"v": 2})])

        assert len(reads) >= 4
        assert set(cache.load()["M"]) == {"r1s1", "r2s2"}
        assert cache.updates["M"]["r2s2"]["rec"] == {"v": 2}

    def test_loaded_mapping_is_private(self, cache):
        """Test a later write does not change a mapping a reader holds."""
        cache.record_changes("s1", [RecordChange(model="M", id="r1")])
        held = cache.load()

        cache.record_changes("s2", [RecordChange(model="M", id="r2")])

        assert set(held["M"]) == {"r1s1"}
        assert [u.session_id for u in cache.envelopes(held)] == ["s1"]
        assert len(cache.envelopes()) == 2


class TestMalformedCache:
    """Tests for valid JSON that is not a change cache."""

    @pytest.mark.parametrize(
        "raw",
        ['{"M": [1]}', '{"M": "text"}', '{"M": null}', '{"M": {"r1s1": 5}}'],
    )
    def test_wrong_shape_raises(self, cache, store, raw):
        """Test model and entry values must be objects."""
        store.put(cache.shard_key(0), raw, 60)

        with pytest.raises(CacheCorruptedError):
            cache.load()

    def test_evicted_entry_is_accepted(self, cache, store):
        """Test null entries are valid."""
        store.put(cache.shard_key(0), '{"M": {"r1s1": null}}', 60)

        assert cache.load() == {"M": {"r1s1": None}}
        assert cache.envelopes() == []

    def test_wrong_shape_heals_on_write(self, cache, store):
        """Test the next recorded change replaces a malformed cache."""
        store.put(cache.shard_key(0), '{"M": [1]}', 60)

        cache.record_changes("s1", [RecordChange(model="M", id="r1")])

        assert set(cache.load()["M"]) == {"r1s1"}
