"""Hybrid retriever: dense (sqlite-vec cosine) + BM25 (FTS5), weighted fusion.

Both channels read only through the role-filtered visibility view, so a
candidate is never produced for a chunk the caller cannot see.

Scores (all in [0, 1]):
  vector  = clamp(1 - cosine_distance, 0, 1)
  keyword = min-max normalized BM25 relevance over the keyword candidates
            (a flat distribution normalizes to 1.0)
  hybrid  = 0.65 * vector + 0.35 * keyword   (weights configurable)

Ordering: score desc, then chunk_idx asc, then document creation time, then
document id. The whole call is bounded by the tenant's ``timeout_ms``.
"""

from __future__ import annotations

import json
import re
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from typing import Any

from kbase.config import KbConfig, RetrievalCfg
from kbase.db.connection import Database
from kbase.db.models import VisibleChunk
from kbase.db.repository import Repository
from kbase.errors import RetrievalTimeout
from kbase.ingest.embedder import Embedder
from kbase.log import get_logger
from kbase.rag.reranker import Reranker

logger = get_logger(__name__)

SNIPPET_CHARS = 220

_TERM_RE = re.compile(r"\w+")

# (trigger pattern, extra FTS terms)
_SYNONYMS: list[tuple[re.Pattern[str], list[str]]] = [
    (
        re.compile(r"account\s*number|account\s*no\.?|acct\.?", re.IGNORECASE),
        ['"account number"', '"account no"', "acct"],
    ),
    (
        re.compile(r"receipt\s*number|receipt\s*no\.?", re.IGNORECASE),
        ['"receipt number"', '"receipt no"'],
    ),
    (re.compile(r"cheque|check", re.IGNORECASE), ["cheque", "check"]),
]


@dataclass
class RetrievedChunk:
    """A ranked chunk reference with its 0-1 relevance score and channel scores."""

    chunk_id: int
    document_id: str
    chunk_idx: int
    title: str
    content: str
    snippet: str
    source_id: str
    source_uri: str | None
    score: float
    vector_score: float = 0.0
    keyword_score: float = 0.0
    rerank_score: float | None = None
    document_created_at: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)


def build_match_query(query: str) -> str:
    """Build an FTS5 expression: quoted query terms OR-ed, plus synonym expansion."""
    terms: list[str] = []
    for term in _TERM_RE.findall(query.lower()):
        quoted = f'"{term}"'
        if quoted not in terms:
            terms.append(quoted)
    for pattern, extra in _SYNONYMS:
        if pattern.search(query):
            for term in extra:
                if term not in terms:
                    terms.append(term)
    return " OR ".join(terms)


def make_snippet(content: str, limit: int = SNIPPET_CHARS) -> str:
    """Whitespace-collapsed preview of at most *limit* characters."""
    return " ".join(content.split())[:limit]


class Retriever:
    """Retrieve the chunks most relevant to a query for one caller.

    Args:
        db: Database holding the chunk store.
        embedder: Embeds the query with the same model used at ingest.
        config: Root config; per-tenant retrieval overrides are honoured.
        reranker: Optional LLM reranker; without one, rerank requests keep
            the initial ranking.
    """

    def __init__(
        self,
        db: Database,
        embedder: Embedder,
        config: KbConfig | None = None,
        reranker: Reranker | None = None,
    ) -> None:
        self._db = db
        self._embedder = embedder
        self._config = config or KbConfig()
        self._reranker = reranker

    def retrieve(
        self,
        tenant_id: str,
        query: str,
        caller_roles: list[str],
        k: int | None = None,
        use_rerank: bool = False,
    ) -> list[RetrievedChunk]:
        """Return at most *k* visible chunks, best first.

        Raises:
            RetrievalTimeout: the call exceeded the tenant's ``timeout_ms``.
            EmbeddingProviderError: the query could not be embedded.
        """
        cfg = self._config.retrieval_for(tenant_id)
        roles = sorted({r for r in caller_roles if r})
        k = cfg.top_k if k is None else k
        if not roles or not query.strip() or k < 1:
            return []

        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="kbase-retrieve")
        future = pool.submit(self._retrieve, tenant_id, query, roles, k, use_rerank, cfg)
        try:
            results = future.result(timeout=cfg.timeout_ms / 1000)
        except FuturesTimeout:
            future.cancel()
            logger.warning("retrieve.timeout", tenant_id=tenant_id, timeout_ms=cfg.timeout_ms)
            raise RetrievalTimeout(cfg.timeout_ms) from None
        finally:
            # abandoned work finishes in the background and is discarded
            pool.shutdown(wait=False)
        return results

    def _retrieve(
        self,
        tenant_id: str,
        query: str,
        roles: list[str],
        k: int,
        use_rerank: bool,
        cfg: RetrievalCfg,
    ) -> list[RetrievedChunk]:
        limit = max(k, min(cfg.max_candidates, k * cfg.overfetch))
        query_vec = self._embedder.embed_query(query)

        conn = self._db.connect()
        try:
            repo = Repository(conn)
            vector_hits = repo.search_vector(tenant_id, roles, query_vec, limit)
            keyword_hits: list[VisibleChunk] = []
            if cfg.hybrid_enabled:
                keyword_hits = repo.search_keyword(tenant_id, roles, build_match_query(query), limit)
        finally:
            conn.close()

        ranked = sorted(_fuse(vector_hits, keyword_hits, cfg), key=_sort_key)
        if (use_rerank or cfg.rerank_enabled) and ranked:
            ranked = self._rerank(query, ranked, cfg)
        results = _apply_doc_cap(ranked, cfg.doc_cap)[:k]

        logger.info(
            "retrieve.done",
            tenant_id=tenant_id,
            vector_candidates=len(vector_hits),
            keyword_candidates=len(keyword_hits),
            results=len(results),
        )
        return results

    def _rerank(self, query: str, ranked: list[RetrievedChunk], cfg: RetrievalCfg) -> list[RetrievedChunk]:
        """Rerank the top ``rerank_window`` candidates; only that window is kept."""
        if self._reranker is None:
            return ranked
        window = ranked[: cfg.rerank_window]
        scores = self._reranker.score(query, [c.content for c in window])
        if scores is None:
            return ranked
        for chunk, score in zip(window, scores):
            chunk.rerank_score = score
            chunk.score = score
        return sorted(window, key=_sort_key)


# ------------------------------------------------------------------
# Fusion
# ------------------------------------------------------------------


def _fuse(
    vector_hits: list[VisibleChunk],
    keyword_hits: list[VisibleChunk],
    cfg: RetrievalCfg,
) -> list[RetrievedChunk]:
    merged: dict[int, RetrievedChunk] = {}

    for hit in vector_hits:
        entry = merged.setdefault(hit.chunk_id, _to_result(hit))
        entry.vector_score = min(1.0, max(0.0, 1.0 - hit.raw_score))

    if keyword_hits:
        # bm25() is lower-is-better; negate so higher = more relevant
        relevance = [-hit.raw_score for hit in keyword_hits]
        lo, hi = min(relevance), max(relevance)
        for hit, rel in zip(keyword_hits, relevance):
            entry = merged.setdefault(hit.chunk_id, _to_result(hit))
            entry.keyword_score = 1.0 if hi == lo else (rel - lo) / (hi - lo)

    for entry in merged.values():
        if cfg.hybrid_enabled:
            entry.score = cfg.vector_weight * entry.vector_score + cfg.keyword_weight * entry.keyword_score
        else:
            entry.score = entry.vector_score
        entry.score = min(1.0, max(0.0, entry.score))
    return list(merged.values())


def _to_result(hit: VisibleChunk) -> RetrievedChunk:
    return RetrievedChunk(
        chunk_id=hit.chunk_id,
        document_id=hit.document_id,
        chunk_idx=hit.chunk_idx,
        title=hit.title,
        content=hit.content,
        snippet=make_snippet(hit.content),
        source_id=hit.source_id,
        source_uri=hit.source_uri,
        score=0.0,
        document_created_at=hit.document_created_at,
        metadata=json.loads(hit.metadata or "{}"),
    )


def _sort_key(c: RetrievedChunk) -> tuple:
    return (-c.score, c.chunk_idx, c.document_created_at, c.document_id, c.chunk_id)


def _apply_doc_cap(ranked: list[RetrievedChunk], doc_cap: int | None) -> list[RetrievedChunk]:
    if not doc_cap:
        return ranked
    per_doc: dict[str, int] = {}
    selected: list[RetrievedChunk] = []
    for chunk in ranked:
        count = per_doc.get(chunk.document_id, 0)
        if count >= doc_cap:
            continue
        per_doc[chunk.document_id] = count + 1
        selected.append(chunk)
    return selected
