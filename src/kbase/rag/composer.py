"""Answer composer: context assembly, token budget, cited completion.

Pipeline:
  1. Number the retrieved chunks [1]..[n] in ranking order.
  2. Truncate each to ``max_chunk_chars`` and fill the context up to
     ``token_budget`` tokens.
  3. One completion call answering only from the context, citing [n].
  4. Citations cover every chunk given; ``used`` marks the ones whose [n]
     marker appears in the answer.

An unconfigured or failing completion provider yields a concatenation of the
context instead (``fallback=True``), unless ``fallback_on_error`` is off.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

from kbase.config import GenerationCfg
from kbase.errors import CompletionProviderError
from kbase.log import get_logger
from kbase.rag.llm_client import CompletionClient, count_tokens
from kbase.rag.retriever import RetrievedChunk

logger = get_logger(__name__)

CITATION_SNIPPET_CHARS = 300

SYSTEM_PROMPT = (
    "You are a helpful assistant. Answer concisely using only the provided context. "
    "Cite sources as [1], [2], ... where relevant. If unsure, say you don't know."
)
FALLBACK_PREFIX = "Based on the following sources, here is an answer:"


@dataclass
class Citation:
    index: int
    chunk_id: int
    document_id: str
    chunk_idx: int
    title: str
    source_uri: str | None
    snippet: str
    score: float
    used: bool = False


@dataclass
class Answer:
    text: str
    citations: list[Citation] = field(default_factory=list)
    fallback: bool = False


class AnswerComposer:
    """Compose a cited answer from retrieved chunks.

    Args:
        client: Completion capability, or None when not configured.
        config: Generation settings (model, budget, truncation, fallback).
    """

    def __init__(self, client: CompletionClient | None, config: GenerationCfg | None = None) -> None:
        self._client = client
        self._config = config or GenerationCfg()

    def compose(self, question: str, chunks: list[RetrievedChunk]) -> Answer:
        """Answer *question* from *chunks*.

        Raises:
            CompletionProviderError: the provider failed and
                ``fallback_on_error`` is disabled.
        """
        context = self._apply_token_budget(chunks)
        citations = [
            Citation(
                index=i + 1,
                chunk_id=c.chunk_id,
                document_id=c.document_id,
                chunk_idx=c.chunk_idx,
                title=c.title,
                source_uri=c.source_uri,
                snippet=c.content[:CITATION_SNIPPET_CHARS],
                score=c.score,
            )
            for i, c in enumerate(chunks)
        ]
        if not context:
            return Answer(text="", citations=citations)

        try:
            if self._client is None:
                raise CompletionProviderError("No completion provider configured")
            text = self._client.complete(
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": self._user_prompt(question, context)},
                ],
                max_tokens=self._config.max_tokens,
                temperature=self._config.temperature,
            )
        except CompletionProviderError as exc:
            if not self._config.fallback_on_error:
                raise
            logger.warning("compose.fallback", error=type(exc).__name__, chunks=len(context))
            for citation in citations[: len(context)]:
                citation.used = True
            return Answer(text=self._fallback_text(context), citations=citations, fallback=True)

        for citation in citations[: len(context)]:
            citation.used = bool(re.search(rf"\[#?{citation.index}\]", text))
        logger.info(
            "compose.done",
            chunks=len(context),
            used=sum(c.used for c in citations),
            chars=len(text),
        )
        return Answer(text=text, citations=citations)

    # ------------------------------------------------------------------
    # Prompt assembly
    # ------------------------------------------------------------------

    def _apply_token_budget(self, chunks: list[RetrievedChunk]) -> list[RetrievedChunk]:
        """Leading chunks that fit within ``token_budget`` (at least one)."""
        selected: list[RetrievedChunk] = []
        total = 0
        for chunk in chunks:
            tokens = count_tokens(self._config.model, chunk.content[: self._config.max_chunk_chars])
            if selected and total + tokens > self._config.token_budget:
                break
            selected.append(chunk)
            total += tokens
        return selected

    def _user_prompt(self, question: str, context: list[RetrievedChunk]) -> str:
        limit = self._config.max_chunk_chars
        blocks = "\n\n".join(
            f"[{i + 1}] {c.title + ' — ' if c.title else ''}{c.content[:limit]}"
            for i, c in enumerate(context)
        )
        return f"Question: {question}\n\nContext:\n{blocks}"

    @staticmethod
    def _fallback_text(context: list[RetrievedChunk]) -> str:
        joined = "\n\n".join(f"({i + 1}) {c.content}" for i, c in enumerate(context))
        return f"{FALLBACK_PREFIX}\n\n{joined}"
