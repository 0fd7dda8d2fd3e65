"""Tests for the forward-only migration runner."""

from __future__ import annotations

import sqlite3

import pytest

from kbase.db.connection import Database
from kbase.db.migrations import MIGRATIONS, run_migrations


def _fresh_conn(tmp_path):
    """Open a new connection without running migrations."""
    return Database(tmp_path / "test.db").connect()


def _exists(conn, name: str, kind: str = "table") -> bool:
    return conn.execute(
        "SELECT name FROM sqlite_master WHERE type = ? AND name = ?", (kind, name)
    ).fetchone() is not None


# --- Bootstrap ---

def test_run_migrations_records_version(tmp_path):
    conn = _fresh_conn(tmp_path)
    run_migrations(conn)
    version = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()[0]
    assert version == MIGRATIONS[-1][0]
    conn.close()


def test_run_migrations_idempotent(tmp_path):
    conn = _fresh_conn(tmp_path)
    run_migrations(conn)
    run_migrations(conn)
    count = conn.execute("SELECT COUNT(*) FROM schema_version").fetchone()[0]
    assert count == len(MIGRATIONS)
    conn.close()


# --- Objects created ---

@pytest.mark.parametrize(
    "name", ["sources", "documents", "document_uploads", "ingest_jobs", "chunks", "chunk_roles", "chunks_fts"]
)
def test_run_migrations_creates_tables(tmp_path, name):
    conn = _fresh_conn(tmp_path)
    run_migrations(conn)
    assert _exists(conn, name)
    conn.close()


def test_run_migrations_creates_visibility_view(tmp_path):
    conn = _fresh_conn(tmp_path)
    run_migrations(conn)
    assert _exists(conn, "v_visible_chunks", kind="view")
    conn.close()


# --- Constraints ---

def _seed(conn, tenant="t1", doc="d1"):
    conn.execute("INSERT INTO sources (id, tenant_id, type, title) VALUES ('s1', ?, 'upload', 'a.txt')", (tenant,))
    conn.execute(
        "INSERT INTO documents (id, tenant_id, source_id, title, declared_type) VALUES (?, ?, 's1', 'a.txt', 'text/plain')",
        (doc, tenant),
    )


def test_chunk_tenant_trigger_rejects_mismatch(tmp_path):
    conn = _fresh_conn(tmp_path)
    run_migrations(conn)
    _seed(conn)
    with pytest.raises(sqlite3.IntegrityError, match="tenant_id"):
        conn.execute(
            "INSERT INTO chunks (tenant_id, document_id, chunk_idx, content, embedding) VALUES ('t2', 'd1', 0, 'x', x'00')"
        )
    conn.close()


def test_only_one_active_job_per_document(tmp_path):
    conn = _fresh_conn(tmp_path)
    run_migrations(conn)
    _seed(conn)
    conn.execute("INSERT INTO ingest_jobs (id, tenant_id, document_id) VALUES ('j1', 't1', 'd1')")
    with pytest.raises(sqlite3.IntegrityError):
        conn.execute("INSERT INTO ingest_jobs (id, tenant_id, document_id) VALUES ('j2', 't1', 'd1')")
    conn.close()


def test_document_status_check(tmp_path):
    conn = _fresh_conn(tmp_path)
    run_migrations(conn)
    _seed(conn)
    with pytest.raises(sqlite3.IntegrityError):
        conn.execute("UPDATE documents SET status = 'archived' WHERE id = 'd1'")
    conn.close()
