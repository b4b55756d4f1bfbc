"""Tests for the SQLite layer: schema, transactions, namespace state."""

import sqlite3

import pytest

from db import (
    get_state,
    sqlite_connection,
    sqlite_transaction,
    upsert_state,
    write_scope,
)


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    """Redirect SQLite DB to a temp directory for test isolation."""
    db_file = str(tmp_path / "test_enderactyl.db")
    monkeypatch.setenv("ENDERACTYL_DB_PATH", db_file)
    yield db_file


class TestSQLiteConnection:
    def test_connection_creates_tables(self):
        with sqlite_connection() as conn:
            names = {r["name"] for r in conn.execute(
                "SELECT name FROM sqlite_master WHERE type='table'"
            ).fetchall()}
        assert {"state", "users", "servers", "ledger_entries", "wallet_transactions",
                "coupons", "coupon_uses", "earn_tokens", "events"} <= names

    def test_wal_mode_enabled(self):
        with sqlite_connection() as conn:
            assert conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"

    def test_explicit_path(self, tmp_path):
        other = str(tmp_path / "other.db")
        with sqlite_connection(other) as conn:
            conn.execute("SELECT 1 FROM users").fetchall()


class TestSQLiteTransaction:
    def test_commit_on_success(self):
        with sqlite_transaction() as conn:
            upsert_state(conn, "ns", {"a": 1})
        with sqlite_connection() as conn:
            assert get_state(conn, "ns") == {"a": 1}

    def test_rollback_on_exception(self):
        with pytest.raises(RuntimeError):
            with sqlite_transaction() as conn:
                upsert_state(conn, "ns", {"a": 1})
                raise RuntimeError("boom")
        with sqlite_connection() as conn:
            assert get_state(conn, "ns") is None

    def test_write_scope_joins_open_transaction(self):
        with pytest.raises(RuntimeError):
            with sqlite_transaction() as conn:
                with write_scope(conn) as joined:
                    assert joined is conn
                    upsert_state(joined, "ns", {"joined": True})
                raise RuntimeError("abort outer")
        with sqlite_connection() as conn:
            assert get_state(conn, "ns") is None

    def test_upsert_overwrites(self):
        with sqlite_transaction() as conn:
            upsert_state(conn, "ns", {"v": 1})
            upsert_state(conn, "ns", {"v": 2})
        with sqlite_connection() as conn:
            assert get_state(conn, "ns") == {"v": 2}


class TestConstraints:
    def test_negative_balance_rejected_by_schema(self):
        with pytest.raises(sqlite3.IntegrityError):
            with sqlite_transaction() as conn:
                conn.execute(
                    "INSERT INTO users (user_id, coins, created_at, updated_at) "
                    "VALUES ('u', -1, 0, 0)"
                )

    def test_unknown_billing_state_rejected(self):
        with pytest.raises(sqlite3.IntegrityError):
            with sqlite_transaction() as conn:
                conn.execute(
                    "INSERT INTO users (user_id, coins, created_at, updated_at) "
                    "VALUES ('u', 0, 0, 0)"
                )
                conn.execute(
                    "INSERT INTO servers (server_id, user_id, name, remote_id, "
                    "billing_state, last_charged_at, created_at) "
                    "VALUES ('s', 'u', 's', '1', 'deleted', 0, 0)"
                )
