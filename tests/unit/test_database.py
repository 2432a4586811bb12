"""Tests for the shared SQLite store and in-memory telemetry."""

from __future__ import annotations

import sqlite3

import pytest

from trackq.infrastructure.database import Database, get_db_path, retry_on_db_lock
from trackq.infrastructure.database_schema import validate_schema
from trackq.observability.telemetry import counter, get_counter, get_latency_stats, time_block


def role_count(db: Database) -> int:
    with db.connection() as conn:
        return conn.execute("SELECT COUNT(*) FROM project_roles").fetchone()[0]


def insert_role(conn: sqlite3.Connection, name: str) -> None:
    conn.execute(
        "INSERT INTO project_roles (name, is_active, sort_order, created_at) VALUES (?, 1, 9, '2025-01-01')",
        (name,),
    )


class TestTransactions:
    def test_commit(self, db):
        with db.transaction() as conn:
            insert_role(conn, "Growth")
        assert role_count(db) == 5

    def test_nested_transaction_joins_outer_and_rolls_back(self, db):
        with pytest.raises(RuntimeError):
            with db.transaction() as outer:
                insert_role(outer, "Growth")
                with db.transaction() as inner:
                    assert inner is outer
                    insert_role(inner, "Payments")
                raise RuntimeError("abort")

        assert role_count(db) == 4

    def test_reads_inside_transaction_see_uncommitted_writes(self, db):
        with db.transaction() as conn:
            insert_role(conn, "Growth")
            assert role_count(db) == 5

    def test_pool_stats(self, db):
        assert db.pool_stats()["available"] == 2
        with db.connection():
            stats = db.pool_stats()
            assert stats["in_use"] == 1
            assert stats["pool_size"] == 2


class TestSchema:
    def test_seeding_is_idempotent(self, tmp_path):
        path = tmp_path / "seed.db"
        Database(path).close()
        reopened = Database(path)
        try:
            assert role_count(reopened) == 4
            with reopened.connection() as conn:
                assert conn.execute("SELECT COUNT(*) FROM work_categories").fetchone()[0] == 7
                assert validate_schema(conn) is True
        finally:
            reopened.close()

    def test_validate_schema_reports_missing_tables(self):
        conn = sqlite3.connect(":memory:")
        try:
            with pytest.raises(ValueError, match="Missing tables"):
                validate_schema(conn)
        finally:
            conn.close()

    def test_db_path_from_environment(self, monkeypatch, tmp_path):
        monkeypatch.setenv("TRACKQ_DB_PATH", str(tmp_path / "env.db"))
        assert get_db_path() == tmp_path / "env.db"


class TestLockRetry:
    @pytest.fixture(autouse=True)
    def no_sleep(self, monkeypatch):
        monkeypatch.setattr("trackq.infrastructure.database.time.sleep", lambda seconds: None)

    def test_retries_locked_then_succeeds(self):
        calls = []

        @retry_on_db_lock(max_retries=3)
        def write():
            calls.append(1)
            if len(calls) < 3:
                raise sqlite3.OperationalError("database is locked")
            return "ok"

        assert write() == "ok"
        assert len(calls) == 3
        assert get_counter("database.lock_retry") == 2

    def test_other_errors_propagate_immediately(self):
        calls = []

        @retry_on_db_lock(max_retries=3)
        def write():
            calls.append(1)
            raise sqlite3.OperationalError("no such table: nope")

        with pytest.raises(sqlite3.OperationalError, match="no such table"):
            write()
        assert len(calls) == 1

    def test_gives_up_after_max_retries(self):
        calls = []

        @retry_on_db_lock(max_retries=2)
        def write():
            calls.append(1)
            raise sqlite3.OperationalError("database is busy")

        with pytest.raises(sqlite3.OperationalError):
            write()
        assert len(calls) == 3


def test_counters_and_latency():
    counter("demo")
    assert counter("demo", 2) == 3
    assert get_counter("demo") == 3
    assert get_counter("missing") == 0

    with time_block("demo.block"):
        pass
    with time_block("demo.block"):
        pass

    stats = get_latency_stats("demo.block")
    assert stats["count"] == 2
    assert stats["min"] <= stats["max"]
    assert get_latency_stats("never")["count"] == 0
