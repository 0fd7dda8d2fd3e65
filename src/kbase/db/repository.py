"""Repository pattern for all knowledge base database operations.

Single interface for: sources, documents, uploads, ingest jobs, chunks,
chunk roles, FTS5 sync and the role-filtered visibility reads used by
retrieval. Every statement is scoped by ``tenant_id``.

Multi-statement state changes (upload registration, job transitions, chunk
replacement) run inside ``transaction()`` so they commit all-or-nothing.
"""

from __future__ import annotations

import json
import sqlite3
from array import array
from collections.abc import Iterator
from contextlib import contextmanager

import sqlite_vec

from kbase.db.models import (
    ACTIVE_JOB_STATUSES,
    DOC_ERROR,
    DOC_PENDING,
    DOC_PROCESSING,
    DOC_READY,
    JOB_DONE,
    JOB_ERROR,
    JOB_RUNNING,
    Chunk,
    Document,
    DocumentSummary,
    IngestJob,
    Source,
    VisibleChunk,
)
from kbase.errors import ValidationError

_NOW = "strftime('%Y-%m-%d %H:%M:%f', 'now')"

_DOCUMENT_COLUMNS = (
    "id, tenant_id, source_id, title, declared_type, status, error, content_hash, "
    "version, chunker_version, embedding_model, allowed_roles, created_by, created_at, updated_at"
)
_JOB_COLUMNS = "id, tenant_id, document_id, status, error, created_at, started_at, finished_at"
_SOURCE_COLUMNS = "id, tenant_id, type, title, uri, config, created_by, created_at"
_VISIBLE_COLUMNS = (
    "chunk_id, document_id, chunk_idx, content, metadata, title, "
    "document_created_at, source_id, source_uri"
)


class Repository:
    """Data access layer for all knowledge base entities.

    Wraps an open sqlite3.Connection. The connection is owned by the caller
    and must be closed after use.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        """Initialise with an open database connection.

        Args:
            conn: An open sqlite3.Connection with sqlite-vec loaded and schema
                initialised (see kbase.db.schema.initialize).
        """
        self._conn = conn
        self._in_transaction = False

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Run the enclosed calls in one IMMEDIATE transaction.

        Commits on success, rolls back on any exception. Nested use joins the
        outer transaction.
        """
        if self._in_transaction:
            yield
            return
        if self._conn.in_transaction:
            self._conn.commit()
        self._conn.execute("BEGIN IMMEDIATE")
        self._in_transaction = True
        try:
            yield
        except BaseException:
            self._conn.rollback()
            raise
        else:
            self._conn.commit()
        finally:
            self._in_transaction = False

    def _commit(self) -> None:
        if not self._in_transaction:
            self._conn.commit()

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    def add_source(self, source: Source) -> None:
        """Insert a new source record."""
        self._conn.execute(
            """
            INSERT INTO sources (id, tenant_id, type, title, uri, config, created_by)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                source.id,
                source.tenant_id,
                source.type,
                source.title,
                source.uri,
                source.config,
                source.created_by,
            ),
        )
        self._commit()

    def get_source(self, tenant_id: str, source_id: str) -> Source | None:
        row = self._conn.execute(
            f"SELECT {_SOURCE_COLUMNS} FROM sources WHERE tenant_id = ? AND id = ?",
            (tenant_id, source_id),
        ).fetchone()
        return _row_to_source(row) if row else None

    def find_source(self, tenant_id: str, source_type: str, title: str) -> Source | None:
        """Return the oldest source of *source_type* named *title*, or None."""
        row = self._conn.execute(
            f"""
            SELECT {_SOURCE_COLUMNS} FROM sources
            WHERE tenant_id = ? AND type = ? AND title = ?
            ORDER BY created_at, id LIMIT 1
            """,
            (tenant_id, source_type, title),
        ).fetchone()
        return _row_to_source(row) if row else None

    def list_sources(self, tenant_id: str) -> list[Source]:
        rows = self._conn.execute(
            f"SELECT {_SOURCE_COLUMNS} FROM sources WHERE tenant_id = ? ORDER BY created_at, id",
            (tenant_id,),
        ).fetchall()
        return [_row_to_source(r) for r in rows]

    def update_source_metadata(
        self, tenant_id: str, source_id: str, *, uri: str | None = None, config: dict | None = None
    ) -> None:
        """Update the soft metadata (uri, config) of a source."""
        if uri is not None:
            self._conn.execute(
                "UPDATE sources SET uri = ? WHERE tenant_id = ? AND id = ?",
                (uri, tenant_id, source_id),
            )
        if config is not None:
            self._conn.execute(
                "UPDATE sources SET config = ? WHERE tenant_id = ? AND id = ?",
                (json.dumps(config, sort_keys=True), tenant_id, source_id),
            )
        self._commit()

    def count_documents_by_source(self, tenant_id: str, source_id: str) -> int:
        return self._conn.execute(
            "SELECT COUNT(*) FROM documents WHERE tenant_id = ? AND source_id = ?",
            (tenant_id, source_id),
        ).fetchone()[0]

    def delete_source(self, tenant_id: str, source_id: str) -> None:
        """Delete a source; its documents cascade, chunk FTS rows are removed first."""
        for row in self._conn.execute(
            "SELECT id FROM documents WHERE tenant_id = ? AND source_id = ?",
            (tenant_id, source_id),
        ).fetchall():
            self._delete_fts_for_document(tenant_id, row["id"])
        self._conn.execute(
            "DELETE FROM sources WHERE tenant_id = ? AND id = ?", (tenant_id, source_id)
        )
        self._commit()

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def add_document(self, document: Document) -> None:
        """Insert a new document record."""
        self._conn.execute(
            """
            INSERT INTO documents (
                id, tenant_id, source_id, title, declared_type, status, error,
                content_hash, version, chunker_version, embedding_model,
                allowed_roles, created_by
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                document.id,
                document.tenant_id,
                document.source_id,
                document.title,
                document.declared_type,
                document.status,
                document.error,
                document.content_hash,
                document.version,
                document.chunker_version,
                document.embedding_model,
                json.dumps(list(document.allowed_roles)),
                document.created_by,
            ),
        )
        self._commit()

    def get_document(self, tenant_id: str, document_id: str) -> Document | None:
        row = self._conn.execute(
            f"SELECT {_DOCUMENT_COLUMNS} FROM documents WHERE tenant_id = ? AND id = ?",
            (tenant_id, document_id),
        ).fetchone()
        return _row_to_document(row) if row else None

    def find_document(self, tenant_id: str, source_id: str, title: str) -> Document | None:
        row = self._conn.execute(
            f"""
            SELECT {_DOCUMENT_COLUMNS} FROM documents
            WHERE tenant_id = ? AND source_id = ? AND title = ?
            ORDER BY created_at, id LIMIT 1
            """,
            (tenant_id, source_id, title),
        ).fetchone()
        return _row_to_document(row) if row else None

    def list_documents(self, tenant_id: str) -> list[DocumentSummary]:
        """Return all documents of a tenant (newest first) with chunk counts and latest job."""
        rows = self._conn.execute(
            f"""
            SELECT {_DOCUMENT_COLUMNS},
                   (SELECT COUNT(*) FROM chunks c
                     WHERE c.tenant_id = d.tenant_id AND c.document_id = d.id) AS chunk_count
            FROM documents d
            WHERE tenant_id = ?
            ORDER BY created_at DESC, id
            """,
            (tenant_id,),
        ).fetchall()
        return [
            DocumentSummary(
                document=_row_to_document(r),
                chunk_count=r["chunk_count"],
                latest_job=self.latest_job(tenant_id, r["id"]),
            )
            for r in rows
        ]

    def list_documents_by_status(self, tenant_id: str, statuses: tuple[str, ...]) -> list[Document]:
        placeholders = ",".join("?" * len(statuses))
        rows = self._conn.execute(
            f"""
            SELECT {_DOCUMENT_COLUMNS} FROM documents
            WHERE tenant_id = ? AND status IN ({placeholders})
            ORDER BY created_at, id
            """,
            (tenant_id, *statuses),
        ).fetchall()
        return [_row_to_document(r) for r in rows]

    def list_tenant_ids(self) -> list[str]:
        """Administrative: every tenant that owns at least one document."""
        rows = self._conn.execute(
            "SELECT DISTINCT tenant_id FROM documents ORDER BY tenant_id"
        ).fetchall()
        return [r[0] for r in rows]

    def set_document_status(
        self, tenant_id: str, document_id: str, status: str, error: str | None = None
    ) -> bool:
        """Update status/error. Returns False if the document no longer exists."""
        cur = self._conn.execute(
            f"""
            UPDATE documents SET status = ?, error = ?, updated_at = {_NOW}
            WHERE tenant_id = ? AND id = ?
            """,
            (status, error, tenant_id, document_id),
        )
        self._commit()
        return cur.rowcount > 0

    def delete_document(self, tenant_id: str, document_id: str) -> int:
        """Delete a document's chunks (and FTS rows), then the document.

        Returns the number of chunks removed.
        """
        removed = self.delete_chunks_by_document(tenant_id, document_id)
        self._conn.execute(
            "DELETE FROM documents WHERE tenant_id = ? AND id = ?", (tenant_id, document_id)
        )
        self._commit()
        return removed

    # ------------------------------------------------------------------
    # Uploads (raw bytes kept for re-runs)
    # ------------------------------------------------------------------

    def save_upload(self, tenant_id: str, document_id: str, data: bytes) -> None:
        self._conn.execute(
            """
            INSERT INTO document_uploads (document_id, tenant_id, data) VALUES (?, ?, ?)
            ON CONFLICT(document_id) DO UPDATE SET data = excluded.data
            """,
            (document_id, tenant_id, sqlite3.Binary(data)),
        )
        self._commit()

    def get_upload(self, tenant_id: str, document_id: str) -> bytes | None:
        row = self._conn.execute(
            "SELECT data FROM document_uploads WHERE tenant_id = ? AND document_id = ?",
            (tenant_id, document_id),
        ).fetchone()
        return bytes(row["data"]) if row else None

    # ------------------------------------------------------------------
    # Ingest jobs
    # ------------------------------------------------------------------

    def add_job(self, job: IngestJob) -> None:
        self._conn.execute(
            "INSERT INTO ingest_jobs (id, tenant_id, document_id, status, error) VALUES (?, ?, ?, ?, ?)",
            (job.id, job.tenant_id, job.document_id, job.status, job.error),
        )
        self._commit()

    def get_job(self, tenant_id: str, job_id: str) -> IngestJob | None:
        row = self._conn.execute(
            f"SELECT {_JOB_COLUMNS} FROM ingest_jobs WHERE tenant_id = ? AND id = ?",
            (tenant_id, job_id),
        ).fetchone()
        return _row_to_job(row) if row else None

    def list_jobs(self, tenant_id: str, document_id: str) -> list[IngestJob]:
        """All attempts for a document, oldest first."""
        rows = self._conn.execute(
            f"""
            SELECT {_JOB_COLUMNS} FROM ingest_jobs
            WHERE tenant_id = ? AND document_id = ?
            ORDER BY created_at, rowid
            """,
            (tenant_id, document_id),
        ).fetchall()
        return [_row_to_job(r) for r in rows]

    def latest_job(self, tenant_id: str, document_id: str) -> IngestJob | None:
        row = self._conn.execute(
            f"""
            SELECT {_JOB_COLUMNS} FROM ingest_jobs
            WHERE tenant_id = ? AND document_id = ?
            ORDER BY created_at DESC, rowid DESC LIMIT 1
            """,
            (tenant_id, document_id),
        ).fetchone()
        return _row_to_job(row) if row else None

    def active_job(self, tenant_id: str, document_id: str) -> IngestJob | None:
        placeholders = ",".join("?" * len(ACTIVE_JOB_STATUSES))
        row = self._conn.execute(
            f"""
            SELECT {_JOB_COLUMNS} FROM ingest_jobs
            WHERE tenant_id = ? AND document_id = ? AND status IN ({placeholders})
            """,
            (tenant_id, document_id, *ACTIVE_JOB_STATUSES),
        ).fetchone()
        return _row_to_job(row) if row else None

    def _finish_job(self, tenant_id: str, job_id: str, status: str, error: str | None) -> None:
        self._conn.execute(
            f"""
            UPDATE ingest_jobs SET status = ?, error = ?, finished_at = {_NOW}
            WHERE tenant_id = ? AND id = ?
            """,
            (status, error, tenant_id, job_id),
        )

    # ------------------------------------------------------------------
    # Job state transitions (document mirrors job)
    # ------------------------------------------------------------------

    def register_upload(
        self,
        source: Source | None,
        document: Document,
        job: IngestJob,
        data: bytes,
    ) -> None:
        """Create source (if given), document, raw upload and queued job atomically."""
        with self.transaction():
            if source is not None:
                self.add_source(source)
            self.add_document(document)
            self.save_upload(document.tenant_id, document.id, data)
            self.add_job(job)

    def queue_attempt(
        self,
        job: IngestJob,
        *,
        data: bytes | None = None,
        allowed_roles: list[str] | None = None,
        declared_type: str | None = None,
        stale_error: str = "Superseded by a new ingest attempt",
    ) -> None:
        """Start a new attempt for an existing document.

        Any still-active job is closed as ``error`` first so that at most one
        attempt is active. The document moves back to ``pending``; its chunks
        stay in place until the new attempt swaps them. A new upload (``data``)
        may also change the roles and the declared type used for extraction.
        """
        with self.transaction():
            active = self.active_job(job.tenant_id, job.document_id)
            if active is not None:
                self._finish_job(job.tenant_id, active.id, JOB_ERROR, stale_error)
            if data is not None:
                self.save_upload(job.tenant_id, job.document_id, data)
                if declared_type is not None:
                    self._conn.execute(
                        "UPDATE documents SET declared_type = ? WHERE tenant_id = ? AND id = ?",
                        (declared_type, job.tenant_id, job.document_id),
                    )
            if allowed_roles is not None:
                _require_roles(allowed_roles)
                self._conn.execute(
                    "UPDATE documents SET allowed_roles = ? WHERE tenant_id = ? AND id = ?",
                    (json.dumps(list(allowed_roles)), job.tenant_id, job.document_id),
                )
            self.add_job(job)
            self.set_document_status(job.tenant_id, job.document_id, DOC_PENDING)

    def mark_running(self, tenant_id: str, document_id: str, job_id: str) -> bool:
        """queued → running, pending → processing. False if job is not queued."""
        with self.transaction():
            cur = self._conn.execute(
                f"""
                UPDATE ingest_jobs SET status = ?, error = NULL, started_at = {_NOW}
                WHERE tenant_id = ? AND id = ? AND status = 'queued'
                """,
                (JOB_RUNNING, tenant_id, job_id),
            )
            if cur.rowcount == 0:
                return False
            return self.set_document_status(tenant_id, document_id, DOC_PROCESSING)

    def _job_is_running(self, tenant_id: str, job_id: str) -> bool:
        job = self.get_job(tenant_id, job_id)
        return job is not None and job.status == JOB_RUNNING

    def mark_failed(self, tenant_id: str, document_id: str, job_id: str, message: str) -> bool:
        """Job and document → error.

        False (nothing written) if the document was deleted or the job was
        superseded by a newer attempt meanwhile.
        """
        with self.transaction():
            if not self._job_is_running(tenant_id, job_id):
                return False
            self._finish_job(tenant_id, job_id, JOB_ERROR, message)
            return self.set_document_status(tenant_id, document_id, DOC_ERROR, message)

    def mark_unchanged(self, tenant_id: str, document_id: str, job_id: str) -> bool:
        """Confirm ready without re-creating chunks (content identical).

        The document's current ``allowed_roles`` are re-applied to its
        existing chunks in the same transaction.
        """
        with self.transaction():
            document = self.get_document(tenant_id, document_id)
            if document is None or not self._job_is_running(tenant_id, job_id):
                return False
            _require_roles(document.allowed_roles)
            self._conn.execute(
                """
                DELETE FROM chunk_roles WHERE tenant_id = ? AND chunk_id IN (
                    SELECT id FROM chunks WHERE tenant_id = ? AND document_id = ?
                )
                """,
                (tenant_id, tenant_id, document_id),
            )
            self._conn.execute(
                """
                INSERT INTO chunk_roles (chunk_id, tenant_id, role)
                SELECT c.id, c.tenant_id, r.value
                FROM chunks c, json_each(?) r
                WHERE c.tenant_id = ? AND c.document_id = ?
                """,
                (json.dumps(sorted(set(document.allowed_roles))), tenant_id, document_id),
            )
            self._finish_job(tenant_id, job_id, JOB_DONE, None)
            return self.set_document_status(tenant_id, document_id, DOC_READY)

    def replace_chunks(
        self,
        tenant_id: str,
        document_id: str,
        job_id: str,
        chunks: list[Chunk],
        *,
        content_hash: str,
        version: int,
        chunker_version: str,
        embedding_model: str,
    ) -> bool:
        """Swap a document's chunk set and mark it ready, all in one transaction.

        Readers see either the previous chunk set or the new one, never a mix.
        Returns False (and writes nothing) if the document was deleted, or
        the job superseded, while the job was running.
        """
        if not chunks:
            raise ValidationError("A ready document needs at least one chunk")
        with self.transaction():
            if self.get_document(tenant_id, document_id) is None:
                return False
            if not self._job_is_running(tenant_id, job_id):
                return False
            self.delete_chunks_by_document(tenant_id, document_id)
            for chunk in chunks:
                if chunk.document_id != document_id:
                    raise ValidationError(
                        f"Chunk {chunk.chunk_idx} belongs to document {chunk.document_id!r}"
                    )
                self.add_chunk(chunk)
            self._conn.execute(
                f"""
                UPDATE documents
                SET status = ?, error = NULL, content_hash = ?, version = ?,
                    chunker_version = ?, embedding_model = ?, updated_at = {_NOW}
                WHERE tenant_id = ? AND id = ?
                """,
                (
                    DOC_READY,
                    content_hash,
                    version,
                    chunker_version,
                    embedding_model,
                    tenant_id,
                    document_id,
                ),
            )
            self._finish_job(tenant_id, job_id, JOB_DONE, None)
        return True

    # ------------------------------------------------------------------
    # Chunks (administrative / ingestion paths, unfiltered by role)
    # ------------------------------------------------------------------

    def add_chunk(self, chunk: Chunk) -> int:
        """Insert chunk + roles + FTS row. Returns the new chunk id.

        Raises:
            ValidationError: empty ``allowed_roles``, empty embedding, or a
                tenant that differs from the owning document's tenant.
        """
        _require_roles(chunk.allowed_roles)
        if not chunk.embedding:
            raise ValidationError("Chunk embedding must not be empty")
        doc_row = self._conn.execute(
            "SELECT tenant_id FROM documents WHERE id = ?", (chunk.document_id,)
        ).fetchone()
        if doc_row is None or doc_row["tenant_id"] != chunk.tenant_id:
            raise ValidationError(
                f"Chunk tenant {chunk.tenant_id!r} does not own document {chunk.document_id!r}"
            )

        cur = self._conn.execute(
            """
            INSERT INTO chunks (tenant_id, document_id, chunk_idx, content, embedding, metadata)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                chunk.tenant_id,
                chunk.document_id,
                chunk.chunk_idx,
                chunk.content,
                sqlite_vec.serialize_float32(chunk.embedding),
                chunk.metadata,
            ),
        )
        chunk_id = cur.lastrowid
        self._conn.executemany(
            "INSERT INTO chunk_roles (chunk_id, tenant_id, role) VALUES (?, ?, ?)",
            [(chunk_id, chunk.tenant_id, role) for role in sorted(set(chunk.allowed_roles))],
        )
        self._conn.execute(
            "INSERT INTO chunks_fts(rowid, content) VALUES (?, ?)", (chunk_id, chunk.content)
        )
        self._commit()
        chunk.id = chunk_id
        return chunk_id

    def get_chunk(self, tenant_id: str, chunk_id: int) -> Chunk | None:
        row = self._conn.execute(
            """
            SELECT id, tenant_id, document_id, chunk_idx, content, embedding, metadata, created_at
            FROM chunks WHERE tenant_id = ? AND id = ?
            """,
            (tenant_id, chunk_id),
        ).fetchone()
        return self._row_to_chunk(row) if row else None

    def list_chunks(self, tenant_id: str, document_id: str) -> list[Chunk]:
        """All chunks of a document ordered by ``chunk_idx``."""
        rows = self._conn.execute(
            """
            SELECT id, tenant_id, document_id, chunk_idx, content, embedding, metadata, created_at
            FROM chunks WHERE tenant_id = ? AND document_id = ?
            ORDER BY chunk_idx
            """,
            (tenant_id, document_id),
        ).fetchall()
        return [self._row_to_chunk(r) for r in rows]

    def count_chunks_by_document(self, tenant_id: str, document_id: str) -> int:
        return self._conn.execute(
            "SELECT COUNT(*) FROM chunks WHERE tenant_id = ? AND document_id = ?",
            (tenant_id, document_id),
        ).fetchone()[0]

    def delete_chunks_by_document(self, tenant_id: str, document_id: str) -> int:
        """Delete chunks + FTS entries for a document. Roles cascade."""
        self._delete_fts_for_document(tenant_id, document_id)
        cur = self._conn.execute(
            "DELETE FROM chunks WHERE tenant_id = ? AND document_id = ?",
            (tenant_id, document_id),
        )
        self._commit()
        return cur.rowcount

    def _delete_fts_for_document(self, tenant_id: str, document_id: str) -> None:
        # FTS5 has no cascade; delete by explicit rowid
        self._conn.execute(
            """
            DELETE FROM chunks_fts WHERE rowid IN (
                SELECT id FROM chunks WHERE tenant_id = ? AND document_id = ?
            )
            """,
            (tenant_id, document_id),
        )

    def _row_to_chunk(self, row: sqlite3.Row) -> Chunk:
        roles = [
            r["role"]
            for r in self._conn.execute(
                "SELECT role FROM chunk_roles WHERE chunk_id = ? ORDER BY role", (row["id"],)
            ).fetchall()
        ]
        return Chunk(
            id=row["id"],
            tenant_id=row["tenant_id"],
            document_id=row["document_id"],
            chunk_idx=row["chunk_idx"],
            content=row["content"],
            embedding=array("f", row["embedding"]).tolist(),
            allowed_roles=roles,
            metadata=row["metadata"],
            created_at=row["created_at"],
        )

    # ------------------------------------------------------------------
    # Visibility view (retrieval reads)
    # ------------------------------------------------------------------

    def search_vector(
        self,
        tenant_id: str,
        roles: list[str],
        embedding: list[float],
        limit: int = 10,
    ) -> list[VisibleChunk]:
        """Cosine nearest neighbours among chunks visible to *roles*.

        ``raw_score`` is the cosine distance (0 = identical direction).
        """
        if not roles or limit < 1:
            return []
        placeholders = ",".join("?" * len(roles))
        rows = self._conn.execute(
            f"""
            SELECT {_VISIBLE_COLUMNS}, vec_distance_cosine(embedding, ?) AS raw_score
            FROM (
                SELECT DISTINCT {_VISIBLE_COLUMNS}, embedding
                FROM v_visible_chunks
                WHERE tenant_id = ? AND role IN ({placeholders})
            )
            ORDER BY raw_score, chunk_idx, document_created_at, document_id
            LIMIT ?
            """,
            (sqlite_vec.serialize_float32(embedding), tenant_id, *roles, limit),
        ).fetchall()
        return [_row_to_visible(r) for r in rows]

    def search_keyword(
        self,
        tenant_id: str,
        roles: list[str],
        match_query: str,
        limit: int = 10,
    ) -> list[VisibleChunk]:
        """BM25 full-text search among chunks visible to *roles*.

        *match_query* must already be a valid FTS5 expression. bm25() returns
        negative values; lower (more negative) = better match.
        """
        if not roles or not match_query.strip() or limit < 1:
            return []
        placeholders = ",".join("?" * len(roles))
        rows = self._conn.execute(
            f"""
            WITH hits AS MATERIALIZED (
                SELECT rowid AS chunk_id, bm25(chunks_fts) AS raw_score
                FROM chunks_fts
                WHERE chunks_fts MATCH ?
            )
            SELECT {', '.join('v.' + c.strip() for c in _VISIBLE_COLUMNS.split(','))},
                   hits.raw_score AS raw_score
            FROM hits
            JOIN (
                SELECT DISTINCT {_VISIBLE_COLUMNS}
                FROM v_visible_chunks
                WHERE tenant_id = ? AND role IN ({placeholders})
            ) AS v ON v.chunk_id = hits.chunk_id
            ORDER BY hits.raw_score, v.chunk_idx, v.document_created_at, v.document_id
            LIMIT ?
            """,
            (match_query, tenant_id, *roles, limit),
        ).fetchall()
        return [_row_to_visible(r) for r in rows]


# ------------------------------------------------------------------
# Row → model helpers
# ------------------------------------------------------------------


def _require_roles(roles: list[str]) -> None:
    if not roles or not all(isinstance(r, str) and r.strip() for r in roles):
        raise ValidationError("allowed_roles must contain at least one non-empty role")


def _row_to_source(row: sqlite3.Row) -> Source:
    return Source(
        id=row["id"],
        tenant_id=row["tenant_id"],
        type=row["type"],
        title=row["title"],
        uri=row["uri"],
        config=row["config"],
        created_by=row["created_by"],
        created_at=row["created_at"],
    )


def _row_to_document(row: sqlite3.Row) -> Document:
    return Document(
        id=row["id"],
        tenant_id=row["tenant_id"],
        source_id=row["source_id"],
        title=row["title"],
        declared_type=row["declared_type"],
        status=row["status"],
        error=row["error"],
        content_hash=row["content_hash"],
        version=row["version"],
        chunker_version=row["chunker_version"],
        embedding_model=row["embedding_model"],
        allowed_roles=json.loads(row["allowed_roles"]),
        created_by=row["created_by"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_job(row: sqlite3.Row) -> IngestJob:
    return IngestJob(
        id=row["id"],
        tenant_id=row["tenant_id"],
        document_id=row["document_id"],
        status=row["status"],
        error=row["error"],
        created_at=row["created_at"],
        started_at=row["started_at"],
        finished_at=row["finished_at"],
    )


def _row_to_visible(row: sqlite3.Row) -> VisibleChunk:
    return VisibleChunk(
        chunk_id=row["chunk_id"],
        document_id=row["document_id"],
        chunk_idx=row["chunk_idx"],
        content=row["content"],
        metadata=row["metadata"],
        title=row["title"],
        document_created_at=row["document_created_at"],
        source_id=row["source_id"],
        source_uri=row["source_uri"],
        raw_score=row["raw_score"],
    )
