"""Forward-only migration runner for the knowledge base schema.

Every table carries ``tenant_id``; the chunk tenant is checked against its
document by a trigger in addition to the repository's own check.
``v_visible_chunks`` is the only relation retrieval queries read from.
"""

from __future__ import annotations

import sqlite3

# schema_version is the bootstrap table, created before migrations run.
_CREATE_SCHEMA_VERSION = """
CREATE TABLE IF NOT EXISTS schema_version (
    version     INTEGER NOT NULL,
    applied_at  DATETIME NOT NULL DEFAULT (datetime('now'))
)
"""

_V1_SQL = """
CREATE TABLE IF NOT EXISTS sources (
    id              TEXT PRIMARY KEY,
    tenant_id       TEXT NOT NULL,
    type            TEXT NOT NULL,
    title           TEXT NOT NULL,
    uri             TEXT,
    config          TEXT NOT NULL DEFAULT '{}',
    created_by      TEXT,
    created_at      DATETIME NOT NULL DEFAULT (datetime('now'))
);
CREATE INDEX IF NOT EXISTS idx_sources_tenant_title ON sources(tenant_id, type, title);

CREATE TABLE IF NOT EXISTS documents (
    id              TEXT PRIMARY KEY,
    tenant_id       TEXT NOT NULL,
    source_id       TEXT NOT NULL REFERENCES sources(id) ON DELETE CASCADE,
    title           TEXT NOT NULL,
    declared_type   TEXT NOT NULL,
    status          TEXT NOT NULL DEFAULT 'pending'
                    CHECK (status IN ('pending', 'processing', 'ready', 'error')),
    error           TEXT,
    content_hash    TEXT,
    version         INTEGER NOT NULL DEFAULT 1,
    chunker_version TEXT,
    embedding_model TEXT,
    allowed_roles   TEXT NOT NULL DEFAULT '[]',
    created_by      TEXT,
    created_at      DATETIME NOT NULL DEFAULT (strftime('%Y-%m-%d %H:%M:%f', 'now')),
    updated_at      DATETIME NOT NULL DEFAULT (strftime('%Y-%m-%d %H:%M:%f', 'now'))
);
CREATE INDEX IF NOT EXISTS idx_documents_tenant ON documents(tenant_id, source_id);
CREATE INDEX IF NOT EXISTS idx_documents_status ON documents(status);

CREATE TABLE IF NOT EXISTS document_uploads (
    document_id     TEXT PRIMARY KEY REFERENCES documents(id) ON DELETE CASCADE,
    tenant_id       TEXT NOT NULL,
    data            BLOB NOT NULL
);

CREATE TABLE IF NOT EXISTS ingest_jobs (
    id              TEXT PRIMARY KEY,
    tenant_id       TEXT NOT NULL,
    document_id     TEXT NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
    status          TEXT NOT NULL DEFAULT 'queued'
                    CHECK (status IN ('queued', 'running', 'done', 'error')),
    error           TEXT,
    created_at      DATETIME NOT NULL DEFAULT (strftime('%Y-%m-%d %H:%M:%f', 'now')),
    started_at      DATETIME,
    finished_at     DATETIME
);
CREATE INDEX IF NOT EXISTS idx_jobs_document ON ingest_jobs(tenant_id, document_id);
-- At most one queued/running attempt per document.
CREATE UNIQUE INDEX IF NOT EXISTS idx_jobs_one_active
    ON ingest_jobs(document_id) WHERE status IN ('queued', 'running');

CREATE TABLE IF NOT EXISTS chunks (
    id              INTEGER PRIMARY KEY,
    tenant_id       TEXT NOT NULL,
    document_id     TEXT NOT NULL REFERENCES documents(id) ON DELETE CASCADE,
    chunk_idx       INTEGER NOT NULL CHECK (chunk_idx >= 0),
    content         TEXT NOT NULL,
    embedding       BLOB NOT NULL,
    metadata        TEXT NOT NULL DEFAULT '{}',
    created_at      DATETIME NOT NULL DEFAULT (datetime('now')),
    UNIQUE (document_id, chunk_idx)
);
CREATE INDEX IF NOT EXISTS idx_chunks_tenant ON chunks(tenant_id, document_id);

CREATE TRIGGER IF NOT EXISTS trg_chunks_tenant_matches_document
BEFORE INSERT ON chunks
WHEN (SELECT tenant_id FROM documents WHERE id = NEW.document_id) IS NOT NEW.tenant_id
BEGIN
    SELECT RAISE(ABORT, 'chunk tenant_id does not match document tenant_id');
END;

CREATE TABLE IF NOT EXISTS chunk_roles (
    chunk_id        INTEGER NOT NULL REFERENCES chunks(id) ON DELETE CASCADE,
    tenant_id       TEXT NOT NULL,
    role            TEXT NOT NULL,
    PRIMARY KEY (chunk_id, role)
);
CREATE INDEX IF NOT EXISTS idx_chunk_roles_tenant_role ON chunk_roles(tenant_id, role);

-- rowid = chunks.id; rows are inserted and deleted explicitly by the repository.
CREATE VIRTUAL TABLE IF NOT EXISTS chunks_fts USING fts5(content, tokenize='porter ascii');

-- One row per (chunk, role). Callers filter by tenant_id and role, then DISTINCT.
CREATE VIEW IF NOT EXISTS v_visible_chunks AS
SELECT
    c.id            AS chunk_id,
    c.tenant_id     AS tenant_id,
    c.document_id   AS document_id,
    c.chunk_idx     AS chunk_idx,
    c.content       AS content,
    c.embedding     AS embedding,
    c.metadata      AS metadata,
    r.role          AS role,
    d.title         AS title,
    d.created_at    AS document_created_at,
    s.id            AS source_id,
    s.uri           AS source_uri
FROM chunks c
JOIN chunk_roles r ON r.chunk_id = c.id AND r.tenant_id = c.tenant_id
JOIN documents d   ON d.id = c.document_id AND d.tenant_id = c.tenant_id
JOIN sources s     ON s.id = d.source_id AND s.tenant_id = d.tenant_id;
"""

# Append-only. Each entry: (version: int, sql: str).
# executescript() issues an implicit COMMIT before running.
MIGRATIONS: list[tuple[int, str]] = [
    (1, _V1_SQL),
]


def run_migrations(conn: sqlite3.Connection) -> None:
    """Apply all pending migrations in ascending version order.

    Idempotent: safe to call on a database at any version.
    """
    conn.execute(_CREATE_SCHEMA_VERSION)
    conn.commit()

    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    current = row[0] if row[0] is not None else 0

    for version, sql in MIGRATIONS:
        if version > current:
            conn.executescript(sql)
            conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (version,)
            )
            conn.commit()
