"""Tests for the chunk orchestrator.

Covers chunk boundaries, commit / rollback accounting, failure policies,
filtering, read failures and stop requests.
"""

import math
import sqlite3

import pytest

from batchrun.chunk import ChunkOrchestrator, ChunkStatus
from batchrun.errors import ReadError, TransformError, WriteError
from batchrun.items import (
    END_OF_DATA,
    FlatFileItemSource,
    ItemSink,
    ItemSource,
    ListItemSink,
    ListItemSource,
    SqliteItemSink,
)
from batchrun.job import FailurePolicy
from batchrun.transaction import SqliteTransactionManager


class UnopenableSink(ItemSink):
    def __init__(self):
        self.closed = False

    def open(self):
        raise PermissionError("table locked")

    def write(self, chunk):
        raise AssertionError("write after failed open")

    def close(self):
        self.closed = True


class BrokenSource(ItemSource):
    """Yields items then raises on read number fail_at (1-based)."""

    def __init__(self, items, fail_at):
        self.items = list(items)
        self.fail_at = fail_at
        self.reads = 0
        self.closed = False

    def read(self):
        self.reads += 1
        if self.reads == self.fail_at:
            raise OSError("disk gone")
        if self.reads > len(self.items):
            return END_OF_DATA
        return self.items[self.reads - 1]

    def close(self):
        self.closed = True


# =============================================================================
# CHUNKING
# =============================================================================


class TestChunking:
    """Tests for chunk boundaries and counters."""

    def test_five_items_in_chunks_of_two(self):
        sink = ListItemSink()
        result = ChunkOrchestrator().run(ListItemSource(range(5)), None, sink, 2)

        assert result.status == ChunkStatus.COMPLETED
        assert [len(c) for c in sink.chunks] == [2, 2, 1]
        assert sink.items == [0, 1, 2, 3, 4]
        assert result.read_count == 5
        assert result.write_count == 5
        assert result.commit_count == 3
        assert result.rollback_count == 0

    def test_flat_file_rows_in_chunks_of_two(self, tmp_path):
        path = tmp_path / "movies.csv"
        path.write_text(
            "title,year\n"
            "Toy Story,1995\n"
            "Heat,1995\n"
            "Fargo,1996\n"
            "Scream,1996\n"
            "Titanic,1997\n"
        )
        sink = ListItemSink()
        source = FlatFileItemSource(path, types={"year": "int"})
        result = ChunkOrchestrator().run(source, None, sink, 2)

        assert result.status == ChunkStatus.COMPLETED
        assert [len(c) for c in sink.chunks] == [2, 2, 1]
        assert [item["title"] for item in sink.items] == ["Toy Story", "Heat", "Fargo", "Scream", "Titanic"]
        assert sink.items[4] == {"title": "Titanic", "year": 1997}
        assert result.commit_count == 3

    @pytest.mark.parametrize("n,k", [(0, 3), (1, 1), (6, 3), (7, 3), (10, 4), (3, 10)])
    def test_commit_count_is_ceil_n_over_k(self, n, k):
        sink = ListItemSink()
        result = ChunkOrchestrator().run(ListItemSource(range(n)), None, sink, k)
        assert result.commit_count == math.ceil(n / k)
        assert all(len(c) == k for c in sink.chunks[:-1])

    def test_empty_source_writes_nothing(self):
        sink = ListItemSink()
        result = ChunkOrchestrator().run(ListItemSource([]), None, sink, 3)
        assert result.status == ChunkStatus.COMPLETED
        assert sink.chunks == []
        assert result.commit_count == 0

    @pytest.mark.parametrize("size", [0, -1, True, 1.5])
    def test_invalid_chunk_size(self, size):
        with pytest.raises(ValueError, match="chunk_size"):
            ChunkOrchestrator().run(ListItemSource([1]), None, ListItemSink(), size)

    def test_on_chunk_called_at_every_boundary(self):
        seen = []
        orchestrator = ChunkOrchestrator(on_chunk=lambda r: seen.append(r.commit_count))
        orchestrator.run(ListItemSource(range(5)), None, ListItemSink(), 2)
        assert seen == [1, 2, 3]


# =============================================================================
# FAILURE POLICIES
# =============================================================================


class TestAbortStep:
    """Tests for the default ABORT_STEP policy."""

    def test_failure_on_chunk_two(self, failing_sink):
        sink = failing_sink(fail_on={2})
        result = ChunkOrchestrator().run(ListItemSource(range(8)), None, sink, 2)

        assert result.status == ChunkStatus.FAILED
        assert result.commit_count == 1
        assert result.rollback_count == 1
        # chunks 3 and 4 were never attempted
        assert sink.attempts == 2
        assert result.read_count == 4
        assert result.write_count == 2
        assert isinstance(result.error, WriteError)
        assert isinstance(result.error.__cause__, RuntimeError)

    def test_failure_on_first_chunk(self, failing_sink):
        sink = failing_sink(fail_on={1})
        result = ChunkOrchestrator().run(ListItemSource(range(4)), None, sink, 2)
        assert result.status == ChunkStatus.FAILED
        assert result.commit_count == 0
        assert result.rollback_count == 1

    def test_source_and_sink_closed_after_failure(self, failing_sink):
        sink = failing_sink(fail_on={1})
        ChunkOrchestrator().run(ListItemSource(range(4)), None, sink, 2)
        assert sink.opened
        assert sink.closed

    def test_sink_open_failure_is_a_write_error(self):
        sink = UnopenableSink()
        source = BrokenSource([1, 2], fail_at=99)
        result = ChunkOrchestrator().run(source, None, sink, 2)

        assert result.status == ChunkStatus.FAILED
        assert isinstance(result.error, WriteError)
        assert "table locked" in str(result.error)
        assert result.read_count == 0
        assert sink.closed
        assert source.closed

    def test_source_open_failure_is_a_read_error(self, tmp_path, failing_sink):
        sink = failing_sink()
        result = ChunkOrchestrator().run(FlatFileItemSource(tmp_path / "missing.csv"), None, sink, 2)

        assert result.status == ChunkStatus.FAILED
        assert isinstance(result.error, ReadError)
        assert not isinstance(result.error, WriteError)
        assert not sink.opened


class TestSkipChunk:
    """Tests for the SKIP_CHUNK policy."""

    def test_skips_failed_chunk_and_continues(self, failing_sink):
        sink = failing_sink(fail_on={2})
        orchestrator = ChunkOrchestrator(failure_policy=FailurePolicy.SKIP_CHUNK)
        result = orchestrator.run(ListItemSource(range(6)), None, sink, 2)

        assert result.status == ChunkStatus.COMPLETED
        assert result.commit_count == 2
        assert result.rollback_count == 1
        assert result.skip_count == 2
        assert result.write_count == 4
        assert sink.chunks == [[0, 1], [4, 5]]
        assert len(result.skipped_errors) == 1

    def test_skips_every_failing_chunk(self, failing_sink):
        sink = failing_sink(fail_on={1, 3})
        orchestrator = ChunkOrchestrator(failure_policy=FailurePolicy.SKIP_CHUNK)
        result = orchestrator.run(ListItemSource(range(5)), None, sink, 2)
        assert result.rollback_count == 2
        assert result.commit_count == 1
        assert result.skip_count == 3


# =============================================================================
# TRANSFORM
# =============================================================================


class TestTransform:
    """Tests for item transforms."""

    def test_transform_applied(self):
        sink = ListItemSink()
        ChunkOrchestrator().run(ListItemSource([1, 2, 3]), lambda x: x * 10, sink, 2)
        assert sink.items == [10, 20, 30]

    def test_none_filters_items(self):
        sink = ListItemSink()
        result = ChunkOrchestrator().run(
            ListItemSource(range(6)), lambda x: x if x % 2 == 0 else None, sink, 3
        )
        assert sink.items == [0, 2, 4]
        assert result.filter_count == 3
        assert result.write_count == 3
        assert result.read_count == 6

    def test_fully_filtered_chunk_commits_without_write(self, failing_sink):
        sink = failing_sink(fail_on={1})
        result = ChunkOrchestrator().run(ListItemSource([1, 2]), lambda x: None, sink, 2)
        assert result.status == ChunkStatus.COMPLETED
        assert result.commit_count == 1
        assert sink.attempts == 0

    def test_transform_error_rolls_back_chunk(self):
        def transform(x):
            if x == 3:
                raise ValueError("bad item")
            return x

        sink = ListItemSink()
        result = ChunkOrchestrator().run(ListItemSource(range(6)), transform, sink, 2)

        assert result.status == ChunkStatus.FAILED
        assert isinstance(result.error, TransformError)
        assert result.commit_count == 1
        assert result.rollback_count == 1
        assert sink.items == [0, 1]


# =============================================================================
# READ FAILURES AND STOP
# =============================================================================


class TestReadFailure:
    """Tests for source failures."""

    def test_read_error_aborts_without_rollback(self):
        source = BrokenSource(range(10), fail_at=4)
        sink = ListItemSink()
        result = ChunkOrchestrator(failure_policy=FailurePolicy.SKIP_CHUNK).run(source, None, sink, 2)

        assert result.status == ChunkStatus.FAILED
        assert isinstance(result.error, ReadError)
        assert result.commit_count == 1
        assert result.rollback_count == 0
        assert result.read_count == 3
        assert sink.items == [0, 1]
        assert source.closed


class TestStop:
    """Tests for stop requests."""

    def test_stop_at_chunk_boundary(self):
        sink = ListItemSink()
        orchestrator = ChunkOrchestrator(should_stop=lambda: len(sink.chunks) >= 1)
        result = orchestrator.run(ListItemSource(range(10)), None, sink, 2)

        assert result.status == ChunkStatus.STOPPED
        assert result.commit_count == 1
        assert result.read_count == 2


# =============================================================================
# SQLITE INTEGRATION
# =============================================================================


class TestSqliteChunks:
    """Chunks written to SQLite inside real transactions."""

    def test_rolled_back_chunk_leaves_no_rows(self):
        conn = sqlite3.connect(":memory:", isolation_level=None)
        items = [
            {"title": "Toy Story", "year": 1995},
            {"title": "Heat", "year": 1995},
            {"title": "Fargo", "year": 1996},
            {"title": "Broken"},  # missing column fails chunk 2 on its second row
            {"title": "Scream", "year": 1996},
        ]
        sink = SqliteItemSink(conn, "movies", columns=["title", "year"])
        orchestrator = ChunkOrchestrator(
            transaction_manager=SqliteTransactionManager(conn),
            failure_policy=FailurePolicy.SKIP_CHUNK,
        )
        result = orchestrator.run(ListItemSource(items), None, sink, 2)

        titles = [r[0] for r in conn.execute('SELECT title FROM "movies" ORDER BY rowid')]
        assert titles == ["Toy Story", "Heat", "Scream"]
        assert result.commit_count == 2
        assert result.rollback_count == 1
