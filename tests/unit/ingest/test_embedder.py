"""Tests for the batched, retrying Embedder."""

from __future__ import annotations

import pytest

from kbase.config import EmbeddingCfg
from kbase.errors import EmbeddingProviderError
from kbase.ingest.embedder import Embedder


def _cfg(**overrides):
    base = dict(dimensions=8, backoff_seconds=0.0, backoff_max_seconds=0.0, concurrency=1)
    base.update(overrides)
    return EmbeddingCfg(**base)


def test_embed_returns_vectors_in_order(make_embed_client):
    client = make_embed_client()
    embedder = Embedder(client, _cfg(batch_size=2, concurrency=3))
    texts = [f"text number {i}" for i in range(5)]
    vectors = embedder.embed(texts)
    assert len(vectors) == 5
    single = Embedder(make_embed_client(), _cfg()).embed(texts)
    assert vectors == single


def test_embed_empty_list_makes_no_call(make_embed_client):
    client = make_embed_client()
    assert Embedder(client, _cfg()).embed([]) == []
    assert client.calls == []


def test_batches_respect_count_and_chars(make_embed_client):
    embedder = Embedder(make_embed_client(), _cfg(batch_size=3, max_batch_chars=10))
    batches = embedder._make_batches(["aaaa", "bbbb", "cccc", "d", "e", "f", "g"])
    assert batches == [["aaaa", "bbbb"], ["cccc", "d", "e"], ["f", "g"]]


def test_oversized_text_gets_own_batch(make_embed_client):
    embedder = Embedder(make_embed_client(), _cfg(max_batch_chars=5))
    assert embedder._make_batches(["x" * 20, "y"]) == [["x" * 20], ["y"]]


def test_transient_failure_is_retried(make_embed_client):
    client = make_embed_client(fail_times=2)
    vectors = Embedder(client, _cfg(max_attempts=3)).embed(["hello"])
    assert len(vectors) == 1
    assert len(client.calls) == 3


def test_exhausted_retries_raise(make_embed_client):
    client = make_embed_client(fail_times=5)
    with pytest.raises(EmbeddingProviderError):
        Embedder(client, _cfg(max_attempts=2)).embed(["hello"])
    assert len(client.calls) == 2


def test_wrong_dimension_rejected(make_embed_client):
    client = make_embed_client(dims=4)
    with pytest.raises(EmbeddingProviderError, match="dimension"):
        Embedder(client, _cfg(max_attempts=1)).embed(["hello"])


def test_wrong_count_rejected(make_embed_client):
    class Short(make_embed_client):
        def embed(self, texts):
            return super().embed(texts)[:-1]

    with pytest.raises(EmbeddingProviderError, match="Expected 2"):
        Embedder(Short(), _cfg(max_attempts=1)).embed(["a", "b"])


def test_model_and_dimensions(make_embed_client):
    embedder = Embedder(make_embed_client(), _cfg())
    assert embedder.model == "fake/embed-8"
    assert embedder.dimensions == 8
    assert len(embedder.embed_query("query text")) == 8
