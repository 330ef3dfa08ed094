"""Tests for SyncEngine watermark handling."""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from chunkvault.store import Chunk, ChunkStore, format_timestamp
from chunkvault.sync import SyncEngine, SyncResult

T0 = datetime(2026, 3, 1, 9, 0, 0, tzinfo=timezone.utc)


class FrozenClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FrozenClock(T0)


@pytest.fixture
def store(clock):
    store = ChunkStore(":memory:", clock=clock)
    store.connect()
    yield store
    store.close()


@pytest.fixture
def engine(store):
    return SyncEngine(store)


def _chunk(chunk_id: str, updated_at: datetime) -> Chunk:
    return Chunk(
        user_id="alice",
        collection="notes",
        chunk_id=chunk_id,
        encrypted_data=b"x",
        iv=b"iv",
        metadata=None,
        version=1,
        updated_at=updated_at,
    )


class TestWatermark:
    """Tests for the next-watermark rules."""

    def test_empty_without_since_uses_query_time(self, engine, clock):
        """Test that a first sync of nothing returns the current time."""
        clock.advance(minutes=3)

        result = engine.changes_since("alice", "notes")

        assert result.chunks == []
        assert result.latest_sync == T0 + timedelta(minutes=3)

    def test_empty_with_since_echoes_since(self, engine):
        since = T0 + timedelta(days=1)

        result = engine.changes_since("alice", "notes", since=since)

        assert result.chunks == []
        assert result.latest_sync == since

    def test_latest_sync_is_newest_returned(self, store, engine, clock):
        store.upsert("alice", "notes", "a", b"a", b"iv")
        clock.advance(seconds=10)
        newest = store.upsert("alice", "notes", "b", b"b", b"iv")
        clock.advance(minutes=5)

        result = engine.changes_since("alice", "notes")

        assert result.latest_sync == newest.updated_at

    def test_latest_sync_is_max_not_last(self):
        """Test that the watermark does not depend on result order."""
        store = MagicMock(spec=ChunkStore)
        store.range_since.return_value = [
            _chunk("late", T0 + timedelta(seconds=30)),
            _chunk("early", T0 + timedelta(seconds=10)),
        ]
        engine = SyncEngine(store)

        result = engine.changes_since("alice", "notes")

        assert result.latest_sync == T0 + timedelta(seconds=30)

    def test_watermark_taken_before_query(self):
        """Test that the fallback watermark is issued before the range query."""
        store = MagicMock(spec=ChunkStore)
        store.watermark_now.return_value = T0
        store.range_since.return_value = []

        result = SyncEngine(store).changes_since("alice")

        assert [c[0] for c in store.mock_calls] == ["watermark_now", "range_since"]
        assert result.latest_sync == T0


class TestCompleteness:
    """Tests that sync neither skips nor repeats changes."""

    def test_returns_exactly_changes_after_since(self, store, engine, clock):
        """Test A, B, C written in order; since between A and B returns B, C."""
        a = store.upsert("alice", "notes", "A", b"a", b"iv")
        clock.advance(seconds=1)
        b = store.upsert("alice", "notes", "B", b"b", b"iv")
        clock.advance(seconds=1)
        c = store.upsert("alice", "notes", "C", b"c", b"iv")

        since = a.updated_at + (b.updated_at - a.updated_at) / 2
        result = engine.changes_since("alice", "notes", since=since)

        assert [ch.chunk_id for ch in result.chunks] == ["B", "C"]
        assert result.latest_sync == c.updated_at

    def test_since_is_exclusive(self, store, engine, clock):
        a = store.upsert("alice", "notes", "A", b"a", b"iv")
        clock.advance(seconds=1)
        store.upsert("alice", "notes", "B", b"b", b"iv")

        result = engine.changes_since("alice", "notes", since=a.updated_at)

        assert [ch.chunk_id for ch in result.chunks] == ["B"]

    def test_resync_with_watermark_is_empty(self, store, engine):
        """Test that syncing again with the returned watermark yields nothing."""
        store.upsert("alice", "notes", "A", b"a", b"iv")
        store.upsert("alice", "notes", "B", b"b", b"iv")

        first = engine.changes_since("alice", "notes")
        second = engine.changes_since("alice", "notes", since=first.latest_sync)

        assert len(first.chunks) == 2
        assert second.chunks == []
        assert second.latest_sync == first.latest_sync

    def test_same_tick_writes_are_not_skipped(self, store, engine):
        """Test that a write in the same clock tick as the watermark still syncs."""
        store.upsert("alice", "notes", "A", b"a", b"iv")
        first = engine.changes_since("alice", "notes")

        store.upsert("alice", "notes", "B", b"b", b"iv")
        second = engine.changes_since("alice", "notes", since=first.latest_sync)

        assert [ch.chunk_id for ch in second.chunks] == ["B"]

    def test_write_after_empty_first_sync_is_not_skipped(self, store, engine):
        """Test that a write in the same tick as a fallback watermark still syncs."""
        first = engine.changes_since("alice", "notes")

        written = store.upsert("alice", "notes", "A", b"a", b"iv")
        second = engine.changes_since("alice", "notes", since=first.latest_sync)

        assert first.latest_sync == T0
        assert written.updated_at > first.latest_sync
        assert [ch.chunk_id for ch in second.chunks] == ["A"]

    def test_fallback_watermark_never_goes_backwards(self, store, engine, clock):
        store.upsert("alice", "notes", "A", b"a", b"iv")
        clock.advance(hours=-1)

        result = engine.changes_since("bob", "notes")

        assert result.latest_sync == T0

    def test_updated_chunk_reappears(self, store, engine, clock):
        store.upsert("alice", "notes", "A", b"a", b"iv")
        first = engine.changes_since("alice", "notes")

        clock.advance(seconds=1)
        store.patch("alice", "notes", "A", metadata="edited")
        second = engine.changes_since("alice", "notes", since=first.latest_sync)

        assert len(second.chunks) == 1
        assert second.chunks[0].version == 2
        assert second.chunks[0].metadata == "edited"


class TestScopes:
    """Tests for per-collection and cross-collection sync."""

    def test_all_collections_include_collection_name(self, store, engine):
        store.upsert("alice", "notes", "n1", b"a", b"iv")
        store.upsert("alice", "tags", "t1", b"b", b"iv")

        result = engine.changes_since("alice")
        data = result.to_dict()

        assert [c["collection"] for c in data["chunks"]] == ["notes", "tags"]

    def test_single_collection_omits_collection_name(self, store, engine):
        store.upsert("alice", "notes", "n1", b"a", b"iv")
        store.upsert("alice", "tags", "t1", b"b", b"iv")

        data = engine.changes_since("alice", "notes").to_dict()

        assert len(data["chunks"]) == 1
        assert "collection" not in data["chunks"][0]

    def test_other_users_are_invisible(self, store, engine):
        store.upsert("bob", "notes", "n1", b"a", b"iv")

        assert engine.changes_since("alice").chunks == []


class TestSyncResult:
    """Tests for the wire representation."""

    def test_to_dict(self):
        result = SyncResult(
            latest_sync=T0, chunks=[_chunk("a", T0)], include_collection=False
        )

        data = result.to_dict()

        assert data["latest_sync"] == "2026-03-01T09:00:00.000000Z"
        assert data["chunks"][0] == {
            "chunk_id": "a",
            "encrypted": [120],
            "iv": [105, 118],
            "metadata": None,
            "version": 1,
            "updated_at": format_timestamp(T0),
        }
