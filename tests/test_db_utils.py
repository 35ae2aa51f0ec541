"""
Unit tests for db_utils: lock retry and connection handling.
"""

import sqlite3

import pytest

from fleet_telemetry.db_utils import get_optimized_connection, open_connection, retry_on_db_lock


class TestRetryOnDbLock:
    """Test suite for retry_on_db_lock decorator."""

    def test_retry_decorator_success_first_attempt(self):
        call_count = {"count": 0}

        @retry_on_db_lock(max_attempts=3)
        def test_function():
            call_count["count"] += 1
            return "success"

        assert test_function() == "success"
        assert call_count["count"] == 1

    def test_retry_decorator_success_after_retry(self, monkeypatch):
        """Test function succeeds after retries."""
        monkeypatch.setattr("fleet_telemetry.db_utils.time.sleep", lambda _s: None)
        call_count = {"count": 0}

        @retry_on_db_lock(max_attempts=3, base_delay=0.1)
        def test_function():
            call_count["count"] += 1
            if call_count["count"] < 3:
                raise sqlite3.OperationalError("database is locked")
            return "success"

        assert test_function() == "success"
        assert call_count["count"] == 3

    def test_retry_decorator_gives_up(self, monkeypatch):
        monkeypatch.setattr("fleet_telemetry.db_utils.time.sleep", lambda _s: None)

        @retry_on_db_lock(max_attempts=2, base_delay=0.1)
        def test_function():
            raise sqlite3.OperationalError("database is busy")

        with pytest.raises(sqlite3.OperationalError, match="busy"):
            test_function()

    def test_retry_decorator_non_retryable_error(self):
        """Test non-retryable errors are not retried."""
        call_count = {"count": 0}

        @retry_on_db_lock(max_attempts=3)
        def test_function():
            call_count["count"] += 1
            raise sqlite3.OperationalError("no such table: events")

        with pytest.raises(sqlite3.OperationalError):
            test_function()
        assert call_count["count"] == 1


def test_optimized_connection_uses_wal(tmp_path):
    conn = get_optimized_connection(str(tmp_path / "wal.db"))
    try:
        assert conn.execute("PRAGMA journal_mode;").fetchone()[0].lower() == "wal"
    finally:
        conn.close()


def test_open_connection_commits_and_rows_are_mappings(tmp_path):
    path = str(tmp_path / "rows.db")
    with open_connection(path) as conn:
        conn.execute("CREATE TABLE t (a INTEGER, b TEXT)")
        conn.execute("INSERT INTO t VALUES (1, 'x')")

    with open_connection(path) as conn:
        row = conn.execute("SELECT * FROM t").fetchone()

    assert (row["a"], row["b"]) == (1, "x")


def test_open_connection_rolls_back_on_error(tmp_path):
    path = str(tmp_path / "rollback.db")
    with open_connection(path) as conn:
        conn.execute("CREATE TABLE t (a INTEGER)")

    with pytest.raises(RuntimeError):
        with open_connection(path) as conn:
            conn.execute("INSERT INTO t VALUES (1)")
            raise RuntimeError("abort")

    with open_connection(path) as conn:
        assert conn.execute("SELECT COUNT(*) FROM t").fetchone()[0] == 0
