"""Ingest orchestrator: drives one document through extract → chunk → embed → store.

State machine per attempt (``IngestJob``)::

    queued → running → done
                     ↘ error

The Document mirrors its latest job: pending → processing → ready | error.
Nothing is written to the chunk store before the final atomic replace, so a
failure at any step leaves the previous chunk set (if any) intact.
"""

from __future__ import annotations

import json
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass

from kbase.db.connection import Database
from kbase.db.models import DOC_PENDING, DOC_PROCESSING, Chunk, Document, IngestJob, Source
from kbase.db.repository import Repository
from kbase.errors import IngestError, NotFound, ProviderError
from kbase.ingest.chunker import Chunker
from kbase.ingest.embedder import Embedder
from kbase.ingest.registry import extract
from kbase.log import get_logger

logger = get_logger(__name__)

UPLOAD_SOURCE_TYPE = "upload"

# Result statuses
READY = "ready"
UNCHANGED = "unchanged"
FAILED = "error"
DISCARDED = "discarded"
SKIPPED = "skipped"


@dataclass
class IngestTicket:
    """Identifies one queued attempt."""

    tenant_id: str
    document_id: str
    job_id: str
    source_id: str


@dataclass
class IngestResult:
    document_id: str
    job_id: str
    status: str
    chunk_count: int = 0
    version: int | None = None
    content_hash: str | None = None
    error: str | None = None


class IngestOrchestrator:
    """Run ingest jobs against a shared ``Database``.

    Each job opens its own connection, so ``run_many()`` can process
    independent documents concurrently.

    Args:
        db: Database holding the chunk store (schema already initialized).
        embedder: Embedder wrapping the injected embedding capability.
        chunker: Chunker; its ``version`` is stored on each ready document.
        workers: Thread pool size for ``run_many()``.
    """

    def __init__(
        self,
        db: Database,
        embedder: Embedder,
        chunker: Chunker | None = None,
        workers: int = 2,
    ) -> None:
        self._db = db
        self._embedder = embedder
        self._chunker = chunker or Chunker()
        self._workers = max(1, workers)

    # ------------------------------------------------------------------
    # Queueing
    # ------------------------------------------------------------------

    def submit(
        self,
        tenant_id: str,
        filename: str,
        data: bytes,
        declared_type: str,
        allowed_roles: list[str],
        created_by: str | None = None,
    ) -> IngestTicket:
        """Register an upload and queue an attempt (no processing yet).

        A file name already uploaded by this tenant re-ingests that document;
        otherwise Source, Document, raw upload and Job are created in one
        transaction.
        """
        conn = self._db.connect()
        try:
            repo = Repository(conn)
            job_id = str(uuid.uuid4())
            with repo.transaction():
                source = repo.find_source(tenant_id, UPLOAD_SOURCE_TYPE, filename)
                document = (
                    repo.find_document(tenant_id, source.id, filename) if source is not None else None
                )
                if document is not None:
                    repo.queue_attempt(
                        IngestJob(id=job_id, tenant_id=tenant_id, document_id=document.id),
                        data=data,
                        allowed_roles=allowed_roles,
                        declared_type=declared_type,
                    )
                    logger.info("ingest.requeued", tenant_id=tenant_id, document_id=document.id, job_id=job_id)
                    return IngestTicket(tenant_id, document.id, job_id, source.id)

                new_source = None
                if source is None:
                    source = new_source = Source(
                        id=str(uuid.uuid4()),
                        tenant_id=tenant_id,
                        type=UPLOAD_SOURCE_TYPE,
                        title=filename,
                        config=json.dumps({"declared_type": declared_type}),
                        created_by=created_by,
                    )
                document = Document(
                    id=str(uuid.uuid4()),
                    tenant_id=tenant_id,
                    source_id=source.id,
                    title=filename,
                    declared_type=declared_type,
                    allowed_roles=list(allowed_roles),
                    created_by=created_by,
                )
                job = IngestJob(id=job_id, tenant_id=tenant_id, document_id=document.id)
                repo.register_upload(new_source, document, job, data)
        finally:
            conn.close()

        logger.info(
            "ingest.queued",
            tenant_id=tenant_id,
            document_id=document.id,
            job_id=job_id,
            bytes=len(data),
            declared_type=declared_type,
        )
        return IngestTicket(tenant_id, document.id, job_id, source.id)

    def requeue(
        self,
        tenant_id: str,
        document_id: str,
        data: bytes | None = None,
        allowed_roles: list[str] | None = None,
    ) -> IngestTicket:
        """Queue a fresh attempt for an existing document.

        Raises:
            NotFound: no such document for this tenant.
        """
        conn = self._db.connect()
        try:
            repo = Repository(conn)
            document = repo.get_document(tenant_id, document_id)
            if document is None:
                raise NotFound(f"Document {document_id} not found")
            job = IngestJob(id=str(uuid.uuid4()), tenant_id=tenant_id, document_id=document_id)
            repo.queue_attempt(job, data=data, allowed_roles=allowed_roles)
        finally:
            conn.close()
        return IngestTicket(tenant_id, document_id, job.id, document.source_id)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def ingest(
        self,
        tenant_id: str,
        filename: str,
        data: bytes,
        declared_type: str,
        allowed_roles: list[str],
        created_by: str | None = None,
    ) -> IngestResult:
        """``submit()`` then ``run()`` synchronously."""
        ticket = self.submit(tenant_id, filename, data, declared_type, allowed_roles, created_by)
        return self.run(ticket)

    def run_many(self, tickets: list[IngestTicket]) -> list[IngestResult]:
        """Run independent attempts concurrently; results follow input order."""
        if not tickets:
            return []
        with ThreadPoolExecutor(
            max_workers=min(self._workers, len(tickets)), thread_name_prefix="kbase-ingest"
        ) as pool:
            futures = [pool.submit(self.run, t) for t in tickets]
            return [f.result() for f in futures]

    def run(self, ticket: IngestTicket) -> IngestResult:
        """Execute one queued attempt to completion.

        Input problems and provider failures are recorded on the Job and
        Document and reported in the result. Unexpected exceptions are
        recorded the same way, then re-raised.
        """
        conn = self._db.connect()
        try:
            repo = Repository(conn)
            try:
                return self._run(repo, ticket)
            except Exception as exc:
                message = f"Unexpected error: {type(exc).__name__}"
                repo.mark_failed(ticket.tenant_id, ticket.document_id, ticket.job_id, message)
                logger.exception(
                    "ingest.crashed",
                    tenant_id=ticket.tenant_id,
                    document_id=ticket.document_id,
                    job_id=ticket.job_id,
                )
                raise
        finally:
            conn.close()

    def _run(self, repo: Repository, ticket: IngestTicket) -> IngestResult:
        tenant_id, document_id, job_id = ticket.tenant_id, ticket.document_id, ticket.job_id
        log = logger.bind(tenant_id=tenant_id, document_id=document_id, job_id=job_id)

        if not repo.mark_running(tenant_id, document_id, job_id):
            log.info("ingest.skipped", reason="job not queued or document missing")
            return IngestResult(document_id, job_id, SKIPPED)
        document = repo.get_document(tenant_id, document_id)
        data = repo.get_upload(tenant_id, document_id)
        if document is None or data is None:
            return self._fail(repo, ticket, "Upload data is missing", log)
        log.info("ingest.start", declared_type=document.declared_type, bytes=len(data))

        try:
            extracted = extract(data, document.declared_type)
        except IngestError as exc:
            return self._fail(repo, ticket, exc.message, log)
        log.debug("ingest.extracted", chars=len(extracted.text), content_hash=extracted.content_hash)

        if (
            document.content_hash == extracted.content_hash
            and document.chunker_version == self._chunker.version
            and document.embedding_model == self._embedder.model
            and repo.count_chunks_by_document(tenant_id, document_id) > 0
        ):
            if not repo.mark_unchanged(tenant_id, document_id, job_id):
                return self._discarded(ticket, log)
            log.info("ingest.unchanged", content_hash=extracted.content_hash, version=document.version)
            return IngestResult(
                document_id,
                job_id,
                UNCHANGED,
                chunk_count=repo.count_chunks_by_document(tenant_id, document_id),
                version=document.version,
                content_hash=extracted.content_hash,
            )

        pieces = self._chunker.chunk(extracted.text, extracted.spans)
        try:
            vectors = self._embedder.embed([p.content for p in pieces])
        except ProviderError as exc:
            return self._fail(repo, ticket, str(exc), log)

        changed = document.content_hash is not None and document.content_hash != extracted.content_hash
        version = document.version + 1 if changed else document.version
        chunks = [
            Chunk(
                tenant_id=tenant_id,
                document_id=document_id,
                chunk_idx=piece.chunk_idx,
                content=piece.content,
                embedding=vector,
                allowed_roles=list(document.allowed_roles),
                metadata=json.dumps(
                    {**piece.metadata, "format": extracted.format}, sort_keys=True
                ),
            )
            for piece, vector in zip(pieces, vectors)
        ]
        stored = repo.replace_chunks(
            tenant_id,
            document_id,
            job_id,
            chunks,
            content_hash=extracted.content_hash,
            version=version,
            chunker_version=self._chunker.version,
            embedding_model=self._embedder.model,
        )
        if not stored:
            return self._discarded(ticket, log)

        log.info(
            "ingest.done",
            chunks=len(chunks),
            version=version,
            content_hash=extracted.content_hash,
        )
        return IngestResult(
            document_id,
            job_id,
            READY,
            chunk_count=len(chunks),
            version=version,
            content_hash=extracted.content_hash,
        )

    def _fail(self, repo: Repository, ticket: IngestTicket, message: str, log) -> IngestResult:
        if not repo.mark_failed(ticket.tenant_id, ticket.document_id, ticket.job_id, message):
            return self._discarded(ticket, log)
        log.warning("ingest.failed", error=message)
        return IngestResult(ticket.document_id, ticket.job_id, FAILED, error=message)

    @staticmethod
    def _discarded(ticket: IngestTicket, log) -> IngestResult:
        log.info("ingest.discarded", reason="document deleted or attempt superseded")
        return IngestResult(ticket.document_id, ticket.job_id, DISCARDED)

    # ------------------------------------------------------------------
    # Recovery + deletion
    # ------------------------------------------------------------------

    def recover(self, tenant_id: str | None = None) -> list[IngestResult]:
        """Re-run documents left ``pending``/``processing`` (e.g. after a crash).

        Stale attempts are closed as ``error`` and a fresh attempt is queued
        and run for each document. Run by ``kbase recover``, or by the CLI
        bootstrap when ``ingest.recover_on_startup`` is set; no other process
        may be ingesting at the same time.
        """
        conn = self._db.connect()
        try:
            repo = Repository(conn)
            tenants = [tenant_id] if tenant_id is not None else repo.list_tenant_ids()
            tickets: list[IngestTicket] = []
            for tid in tenants:
                for document in repo.list_documents_by_status(tid, (DOC_PENDING, DOC_PROCESSING)):
                    job = IngestJob(id=str(uuid.uuid4()), tenant_id=tid, document_id=document.id)
                    repo.queue_attempt(job, stale_error="Interrupted before completion")
                    tickets.append(IngestTicket(tid, document.id, job.id, document.source_id))
        finally:
            conn.close()

        logger.info("ingest.recover", tenant_id=tenant_id, documents=len(tickets))
        return self.run_many(tickets)

    def delete_document(self, tenant_id: str, document_id: str) -> bool:
        """Delete chunks, then the document, then its source if now orphaned.

        Returns False if the document does not exist. A job still running for
        the document discards its results when it finishes.
        """
        conn = self._db.connect()
        try:
            repo = Repository(conn)
            with repo.transaction():
                document = repo.get_document(tenant_id, document_id)
                if document is None:
                    return False
                removed = repo.delete_document(tenant_id, document_id)
                orphaned = repo.count_documents_by_source(tenant_id, document.source_id) == 0
                if orphaned:
                    repo.delete_source(tenant_id, document.source_id)
        finally:
            conn.close()
        logger.info(
            "ingest.deleted",
            tenant_id=tenant_id,
            document_id=document_id,
            chunks=removed,
            source_removed=orphaned,
        )
        return True
