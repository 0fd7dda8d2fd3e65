"""Embedder: batched, bounded-concurrency embedding with per-batch retry.

Texts are grouped into batches bounded by ``batch_size`` and
``max_batch_chars``. Batches are issued concurrently (at most
``concurrency`` in flight); each batch is retried with exponential backoff
on ``EmbeddingProviderError``. A batch that exhausts its attempts fails the
whole call; nothing is persisted by the Embedder itself.
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from kbase.config import EmbeddingCfg
from kbase.errors import EmbeddingProviderError
from kbase.log import get_logger
from kbase.rag.llm_client import EmbeddingClient

logger = get_logger(__name__)


class Embedder:
    """Turn texts into fixed-dimension vectors via an injected client.

    Args:
        client: Embedding capability (constructed once, shared).
        config: Batching, concurrency, retry and dimension settings.
    """

    def __init__(self, client: EmbeddingClient, config: EmbeddingCfg | None = None) -> None:
        self._client = client
        self._config = config or EmbeddingCfg()

    @property
    def model(self) -> str:
        return getattr(self._client, "model", self._config.model)

    @property
    def dimensions(self) -> int:
        return self._config.dimensions

    def embed(self, texts: list[str]) -> list[list[float]]:
        """Return one vector per text, in input order.

        Raises:
            EmbeddingProviderError: a batch failed after all attempts, or the
                capability returned vectors of the wrong count/dimension.
        """
        if not texts:
            return []
        batches = self._make_batches(texts)
        workers = max(1, min(self._config.concurrency, len(batches)))
        logger.debug("embed.start", texts=len(texts), batches=len(batches), workers=workers)

        if workers == 1:
            results = [self._embed_batch(i, b) for i, b in enumerate(batches)]
        else:
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="kbase-embed") as pool:
                futures = [pool.submit(self._embed_batch, i, b) for i, b in enumerate(batches)]
                results = [f.result() for f in futures]

        vectors = [vec for batch in results for vec in batch]
        logger.debug("embed.done", vectors=len(vectors), model=self.model)
        return vectors

    def embed_query(self, text: str) -> list[float]:
        """Embed a single query string."""
        return self.embed([text])[0]

    # ------------------------------------------------------------------
    # Batching
    # ------------------------------------------------------------------

    def _make_batches(self, texts: list[str]) -> list[list[str]]:
        batches: list[list[str]] = []
        current: list[str] = []
        chars = 0
        for text in texts:
            too_many = len(current) >= self._config.batch_size
            too_long = current and chars + len(text) > self._config.max_batch_chars
            if too_many or too_long:
                batches.append(current)
                current, chars = [], 0
            current.append(text)
            chars += len(text)
        if current:
            batches.append(current)
        return batches

    def _embed_batch(self, index: int, batch: list[str]) -> list[list[float]]:
        cfg = self._config
        retrying = Retrying(
            stop=stop_after_attempt(cfg.max_attempts),
            wait=wait_exponential(
                multiplier=cfg.backoff_seconds,
                min=cfg.backoff_seconds,
                max=cfg.backoff_max_seconds,
            ),
            retry=retry_if_exception_type(EmbeddingProviderError),
            before_sleep=lambda state: logger.warning(
                "embed.batch_retry",
                batch=index,
                attempt=state.attempt_number,
                error=type(state.outcome.exception()).__name__,
            ),
            reraise=True,
        )
        vectors = retrying(self._call, batch)
        return vectors

    def _call(self, batch: list[str]) -> list[list[float]]:
        vectors = self._client.embed(batch)
        if len(vectors) != len(batch):
            raise EmbeddingProviderError(
                f"Expected {len(batch)} embeddings, got {len(vectors)}"
            )
        for vec in vectors:
            if len(vec) != self._config.dimensions:
                raise EmbeddingProviderError(
                    f"Embedding dimension {len(vec)} != configured {self._config.dimensions}"
                )
        return [[float(v) for v in vec] for vec in vectors]
