"""Tests for the Database connection layer."""

from __future__ import annotations

from pathlib import Path

from kbase.db.connection import Database


def test_connect_creates_file(tmp_path):
    db_path = tmp_path / ".kbase.db"
    conn = Database(db_path).connect()
    conn.close()
    assert db_path.exists()


def test_sqlite_vec_loads(tmp_path):
    conn = Database(tmp_path / ".kbase.db").connect()
    version = conn.execute("SELECT vec_version()").fetchone()[0]
    conn.close()
    assert version.startswith("v")


def test_foreign_keys_enabled(tmp_path):
    conn = Database(tmp_path / ".kbase.db").connect()
    assert conn.execute("PRAGMA foreign_keys").fetchone()[0] == 1
    conn.close()


def test_wal_journal_mode(tmp_path):
    conn = Database(tmp_path / ".kbase.db").connect()
    assert conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"
    conn.close()


def test_each_connect_is_independent(tmp_path):
    db = Database(str(tmp_path / ".kbase.db"))
    assert isinstance(db.db_path, Path)
    first, second = db.connect(), db.connect()
    first.close()
    assert second.execute("SELECT 1").fetchone()[0] == 1
    second.close()
