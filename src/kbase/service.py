"""Knowledge base facade: permission checks, upload boundary, query entry points.

Every public method takes the tenant and the calling user explicitly and
checks a permission key before touching the store:

    kb.write  upload, reingest, delete, recover
    kb.read   list, get, search, ask
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Protocol

from kbase.config import KbConfig
from kbase.db.connection import Database
from kbase.db.models import Document, DocumentSummary
from kbase.db.repository import Repository
from kbase.db.schema import initialize
from kbase.errors import FileTooLarge, NotFound, PermissionDenied, ValidationError
from kbase.ingest.chunker import Chunker
from kbase.ingest.embedder import Embedder
from kbase.ingest.orchestrator import IngestOrchestrator, IngestResult
from kbase.ingest.registry import detect_type
from kbase.log import get_logger
from kbase.rag.composer import Answer, AnswerComposer
from kbase.rag.llm_client import (
    CompletionClient,
    EmbeddingClient,
    LiteLLMCompletionClient,
    LiteLLMEmbeddingClient,
    is_configured,
)
from kbase.rag.reranker import Reranker
from kbase.rag.retriever import RetrievedChunk, Retriever

logger = get_logger(__name__)

PERM_READ = "kb.read"
PERM_WRITE = "kb.write"

GATE_MESSAGE = (
    "Ask a tenant-specific question (topic, doc, ID…) to get grounded answers with citations."
)
NO_RESULTS_MESSAGE = (
    "I couldn't find relevant documents to answer that. "
    "Try refining your question or uploading docs."
)

_QUERY_TOKEN_RE = re.compile(r"[^a-z0-9]+")
_STOPWORDS = frozenset(
    [
        "the", "a", "an", "and", "or", "but", "of", "to", "in", "on", "for", "with",
        "is", "it", "this", "that", "hey", "hi", "hello", "thanks",
    ]
)


@dataclass(frozen=True)
class Caller:
    """The authenticated user acting on a tenant, with their roles there."""

    user_id: str
    roles: tuple[str, ...]


class PermissionChecker(Protocol):
    def has_permission(self, tenant_id: str, caller: Caller, key: str) -> bool: ...


class RolePermissions:
    """Grant permission keys by role, from the ``permissions:`` config section."""

    def __init__(self, mapping: dict[str, list[str]]) -> None:
        self._mapping = {role: frozenset(keys) for role, keys in mapping.items()}

    def has_permission(self, tenant_id: str, caller: Caller, key: str) -> bool:
        return any(key in self._mapping.get(role, ()) for role in caller.roles)


def content_terms(question: str) -> list[str]:
    """Lower-cased alphanumeric terms of *question* minus chit-chat stopwords."""
    return [t for t in _QUERY_TOKEN_RE.split(question.lower()) if t and t not in _STOPWORDS]


class KnowledgeBase:
    """Wire the ingest pipeline, retriever and composer around one database.

    Capability clients are injected; use ``from_config()`` for the LiteLLM
    defaults. Reranking is off unless a *reranker* is given. The schema is
    initialized on construction.
    """

    def __init__(
        self,
        db: Database,
        config: KbConfig,
        embedding_client: EmbeddingClient,
        completion_client: CompletionClient | None = None,
        permissions: PermissionChecker | None = None,
        reranker: Reranker | None = None,
    ) -> None:
        self._db = db
        self._config = config
        self._permissions = permissions or RolePermissions(config.permissions)

        conn = db.connect()
        try:
            initialize(conn)
        finally:
            conn.close()

        self.embedder = Embedder(embedding_client, config.embedding)
        self.chunker = Chunker(config.chunking.chunk_size, config.chunking.overlap)
        self.orchestrator = IngestOrchestrator(db, self.embedder, self.chunker, config.ingest.workers)
        self.retriever = Retriever(db, self.embedder, config, reranker)
        self.composer = AnswerComposer(completion_client, config.generation)

    @classmethod
    def from_config(cls, config: KbConfig) -> KnowledgeBase:
        """Build with LiteLLM clients.

        Completion uses ``generation.model`` and reranking uses
        ``retrieval.rerank_model``; either is left unconfigured without a key.
        """
        completion = (
            LiteLLMCompletionClient(config.generation.model)
            if is_configured(config.generation.model)
            else None
        )
        rerank_model = config.retrieval.rerank_model
        reranker = (
            Reranker(LiteLLMCompletionClient(rerank_model)) if is_configured(rerank_model) else None
        )
        return cls(
            Database(config.database.path),
            config,
            LiteLLMEmbeddingClient(config.embedding.model, config.embedding.dimensions),
            completion,
            reranker=reranker,
        )

    # ------------------------------------------------------------------
    # Permissions
    # ------------------------------------------------------------------

    def _require(self, tenant_id: str, caller: Caller, key: str) -> None:
        if not tenant_id:
            raise ValidationError("tenant_id is required")
        if not self._permissions.has_permission(tenant_id, caller, key):
            logger.warning("permission.denied", tenant_id=tenant_id, user_id=caller.user_id, permission=key)
            raise PermissionDenied(key, tenant_id)

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def upload(
        self,
        tenant_id: str,
        caller: Caller,
        data: bytes,
        filename: str,
        declared_type: str | None = None,
        allowed_roles: list[str] | None = None,
    ) -> IngestResult:
        """Validate an upload, register it and ingest it synchronously.

        Raises:
            PermissionDenied: caller lacks ``kb.write``.
            FileTooLarge: larger than ``ingest.max_file_mb``.
            UnsupportedFormat: type not recognised (checked before queueing).
            ValidationError: empty file name or empty role list.
        """
        self._require(tenant_id, caller, PERM_WRITE)
        if not filename or not filename.strip():
            raise ValidationError("filename is required")
        limit = self._config.ingest.max_file_mb * 1024 * 1024
        if len(data) > limit:
            raise FileTooLarge(len(data), limit)

        declared = declared_type or filename
        detect_type(declared)
        roles = self._resolve_roles(allowed_roles)

        ticket = self.orchestrator.submit(
            tenant_id, filename.strip(), data, declared, roles, created_by=caller.user_id
        )
        return self.orchestrator.run(ticket)

    def reingest(self, tenant_id: str, caller: Caller, document_id: str) -> IngestResult:
        """Re-run ingestion for a document from its stored upload."""
        self._require(tenant_id, caller, PERM_WRITE)
        ticket = self.orchestrator.requeue(tenant_id, document_id)
        return self.orchestrator.run(ticket)

    def delete_document(self, tenant_id: str, caller: Caller, document_id: str) -> None:
        self._require(tenant_id, caller, PERM_WRITE)
        if not self.orchestrator.delete_document(tenant_id, document_id):
            raise NotFound(f"Document {document_id} not found")

    def recover(self, tenant_id: str, caller: Caller) -> list[IngestResult]:
        """Re-run this tenant's documents left pending/processing."""
        self._require(tenant_id, caller, PERM_WRITE)
        return self.orchestrator.recover(tenant_id)

    def _resolve_roles(self, allowed_roles: list[str] | None) -> list[str]:
        if allowed_roles is None:
            return list(self._config.ingest.default_allowed_roles)
        roles = sorted({r.strip() for r in allowed_roles if r and r.strip()})
        if not roles:
            raise ValidationError("allowed_roles must contain at least one role")
        return roles

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    def list_documents(self, tenant_id: str, caller: Caller) -> list[DocumentSummary]:
        self._require(tenant_id, caller, PERM_READ)
        conn = self._db.connect()
        try:
            return Repository(conn).list_documents(tenant_id)
        finally:
            conn.close()

    def get_document(self, tenant_id: str, caller: Caller, document_id: str) -> Document:
        self._require(tenant_id, caller, PERM_READ)
        conn = self._db.connect()
        try:
            document = Repository(conn).get_document(tenant_id, document_id)
        finally:
            conn.close()
        if document is None:
            raise NotFound(f"Document {document_id} not found")
        return document

    def search(
        self,
        tenant_id: str,
        caller: Caller,
        query: str,
        k: int | None = None,
        use_rerank: bool = False,
    ) -> list[RetrievedChunk]:
        """Ranked chunks visible to the caller's roles."""
        self._require(tenant_id, caller, PERM_READ)
        return self.retriever.retrieve(tenant_id, query, list(caller.roles), k=k, use_rerank=use_rerank)

    def ask(self, tenant_id: str, caller: Caller, question: str, k: int | None = None) -> Answer:
        """Answer *question* from the caller's visible chunks, with citations.

        Low-signal questions (fewer than ``generation.min_query_terms``
        content terms) get guidance instead of a retrieval. Results scoring
        below ``generation.score_floor`` are dropped before composition.
        """
        self._require(tenant_id, caller, PERM_READ)
        question = question.strip()
        if len(content_terms(question)) < self._config.generation.min_query_terms:
            return Answer(text=GATE_MESSAGE)

        chunks = self.retriever.retrieve(tenant_id, question, list(caller.roles), k=k)
        floor = self._config.generation.score_floor
        chunks = [c for c in chunks if c.score >= floor]
        if not chunks:
            return Answer(text=NO_RESULTS_MESSAGE)
        return self.composer.compose(question, chunks)
