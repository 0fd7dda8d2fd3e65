"""LLM listwise reranker for the top retrieval candidates.

One completion call scores every passage in the window (0-1). Any failure
(unconfigured provider, call error, malformed or wrong-length reply) returns
None and the caller keeps its initial ranking.
"""

from __future__ import annotations

import json

from kbase.errors import CompletionProviderError
from kbase.log import get_logger
from kbase.rag.llm_client import CompletionClient

logger = get_logger(__name__)

_PASSAGE_CHARS = 1200

_RERANK_SYSTEM = (
    "You are a ranking model. Score each numbered passage for relevance to the "
    "query from 0 to 1 with 0.01 precision. "
    "Output ONLY a JSON array of numbers, one per passage, in passage order."
)


class Reranker:
    """Score ``(query, passage)`` pairs with a completion capability."""

    def __init__(self, client: CompletionClient) -> None:
        self._client = client

    def score(self, query: str, passages: list[str]) -> list[float] | None:
        """Return one score in [0, 1] per passage, or None on any failure."""
        if not passages:
            return []
        numbered = "\n\n".join(
            f"[{i + 1}] {text[:_PASSAGE_CHARS]}" for i, text in enumerate(passages)
        )
        try:
            raw = self._client.complete(
                messages=[
                    {"role": "system", "content": _RERANK_SYSTEM},
                    {"role": "user", "content": f"Query: {query}\n\nPassages:\n{numbered}"},
                ],
                max_tokens=16 + 8 * len(passages),
                temperature=0.0,
            )
        except CompletionProviderError as exc:
            logger.warning("rerank.failed", error=type(exc).__name__, provider=exc.provider_name)
            return None
        scores = _parse_score_array(raw, expected_length=len(passages))
        if scores is None:
            logger.warning("rerank.unparseable", passages=len(passages))
        return scores


def _parse_score_array(raw: str, expected_length: int) -> list[float] | None:
    """Parse a JSON array (or ``{"scores": [...]}``) of numbers; None on mismatch."""
    try:
        start = raw.index("[")
        end = raw.rindex("]") + 1
        arr = json.loads(raw[start:end])
        if isinstance(arr, list) and len(arr) == expected_length:
            return [max(0.0, min(1.0, float(v))) for v in arr]
    except (ValueError, json.JSONDecodeError, TypeError):
        pass
    return None
