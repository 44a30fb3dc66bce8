"""Tests for transaction managers."""

import sqlite3

import pytest

from batchrun.transaction import (
    ResourcelessTransactionManager,
    SqliteTransactionManager,
    TransactionManager,
)


class RecordingTransactionManager(TransactionManager):
    def __init__(self, fail_commit=False):
        self.calls = []
        self.fail_commit = fail_commit

    def begin(self):
        self.calls.append("begin")

    def commit(self):
        self.calls.append("commit")
        if self.fail_commit:
            raise RuntimeError("commit failed")

    def rollback(self):
        self.calls.append("rollback")


class TestTransactionScope:
    """Tests for the transaction() context manager."""

    def test_commits_on_success(self):
        tm = RecordingTransactionManager()
        with tm.transaction():
            pass
        assert tm.calls == ["begin", "commit"]

    def test_rolls_back_and_reraises(self):
        tm = RecordingTransactionManager()
        with pytest.raises(ValueError):
            with tm.transaction():
                raise ValueError("boom")
        assert tm.calls == ["begin", "rollback"]

    def test_failed_commit_rolls_back(self):
        tm = RecordingTransactionManager(fail_commit=True)
        with pytest.raises(RuntimeError, match="commit failed"):
            with tm.transaction():
                pass
        assert tm.calls == ["begin", "commit", "rollback"]

    def test_resourceless_is_noop(self):
        with ResourcelessTransactionManager().transaction():
            pass


class TestSqliteTransactionManager:
    """Tests for SqliteTransactionManager."""

    @pytest.fixture
    def conn(self):
        conn = sqlite3.connect(":memory:", isolation_level=None)
        conn.execute("CREATE TABLE t (v INTEGER)")
        yield conn
        conn.close()

    def test_commit_persists(self, conn):
        tm = SqliteTransactionManager(conn)
        with tm.transaction():
            conn.execute("INSERT INTO t VALUES (1)")
        assert conn.execute("SELECT COUNT(*) FROM t").fetchone()[0] == 1
        assert not conn.in_transaction

    def test_rollback_discards_rows(self, conn):
        tm = SqliteTransactionManager(conn)
        with pytest.raises(RuntimeError):
            with tm.transaction():
                conn.execute("INSERT INTO t VALUES (1)")
                conn.execute("INSERT INTO t VALUES (2)")
                raise RuntimeError("sink failed")
        assert conn.execute("SELECT COUNT(*) FROM t").fetchone()[0] == 0

    def test_rollback_discards_ddl(self, conn):
        tm = SqliteTransactionManager(conn)
        with pytest.raises(RuntimeError):
            with tm.transaction():
                conn.execute("CREATE TABLE extra (v)")
                raise RuntimeError("boom")
        tables = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
        assert tables == {"t"}
