"""Domain models for the kbase chunk store."""

from __future__ import annotations

import json
from dataclasses import dataclass, field

# Document lifecycle (durable projection of the latest job).
DOC_PENDING = "pending"
DOC_PROCESSING = "processing"
DOC_READY = "ready"
DOC_ERROR = "error"

# Ingest job lifecycle (append-only history of attempts).
JOB_QUEUED = "queued"
JOB_RUNNING = "running"
JOB_DONE = "done"
JOB_ERROR = "error"

ACTIVE_JOB_STATUSES = (JOB_QUEUED, JOB_RUNNING)


@dataclass
class Source:
    id: str
    tenant_id: str
    type: str
    title: str
    uri: str | None = None
    config: str = "{}"
    created_by: str | None = None
    created_at: str | None = None


@dataclass
class Document:
    id: str
    tenant_id: str
    source_id: str
    title: str
    declared_type: str
    status: str = DOC_PENDING
    error: str | None = None
    content_hash: str | None = None
    version: int = 1
    chunker_version: str | None = None
    embedding_model: str | None = None
    allowed_roles: list[str] = field(default_factory=list)
    created_by: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class IngestJob:
    id: str
    tenant_id: str
    document_id: str
    status: str = JOB_QUEUED
    error: str | None = None
    created_at: str | None = None
    started_at: str | None = None
    finished_at: str | None = None


@dataclass
class Chunk:
    tenant_id: str
    document_id: str
    chunk_idx: int
    content: str
    embedding: list[float] = field(default_factory=list)
    allowed_roles: list[str] = field(default_factory=list)
    metadata: str = field(default_factory=lambda: "{}")
    created_at: str | None = None
    id: int | None = None  # set after insert; None for unsaved chunks

    @property
    def metadata_dict(self) -> dict:
        return json.loads(self.metadata)


@dataclass
class DocumentSummary:
    """Listing row: a document plus its chunk count and latest job."""

    document: Document
    chunk_count: int
    latest_job: IngestJob | None


@dataclass
class VisibleChunk:
    """A chunk row read through the visibility view, with its raw channel score.

    ``raw_score`` is a cosine distance for vector reads and a BM25 rank
    (lower = better) for keyword reads.
    """

    chunk_id: int
    document_id: str
    chunk_idx: int
    content: str
    metadata: str
    title: str
    document_created_at: str
    source_id: str
    source_uri: str | None
    raw_score: float

    @property
    def metadata_dict(self) -> dict:
        return json.loads(self.metadata)
