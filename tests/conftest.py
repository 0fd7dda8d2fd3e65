"""Shared pytest fixtures."""

from __future__ import annotations

import hashlib
import re
from unittest.mock import patch

import pytest
from typer.testing import CliRunner

from kbase.config import EmbeddingCfg, KbConfig
from kbase.db.connection import Database
from kbase.db.schema import initialize
from kbase.errors import CompletionProviderError, EmbeddingProviderError
from kbase.service import Caller, KnowledgeBase

DIMS = 8


def fake_vector(text: str, dims: int = DIMS) -> list[float]:
    """Deterministic bag-of-words vector; never all-zero."""
    vec = [0.0] * dims
    for word in re.findall(r"\w+", text.lower()):
        vec[int(hashlib.md5(word.encode()).hexdigest(), 16) % (dims - 1)] += 1.0
    vec[-1] = 0.5
    return vec


class FakeEmbeddingClient:
    """Records every batch; fails the first ``fail_times`` calls."""

    model = "fake/embed-8"

    def __init__(self, dims: int = DIMS, fail_times: int = 0) -> None:
        self.dims = dims
        self.fail_times = fail_times
        self.calls: list[list[str]] = []

    def embed(self, texts: list[str]) -> list[list[float]]:
        self.calls.append(list(texts))
        if self.fail_times > 0:
            self.fail_times -= 1
            raise EmbeddingProviderError("provider unavailable", provider_name="fake")
        return [fake_vector(t, self.dims) for t in texts]

    @property
    def texts_embedded(self) -> int:
        return sum(len(c) for c in self.calls)


class FakeCompletionClient:
    model = "fake/chat"

    def __init__(self, reply: str = "The answer is 42 [1].", fail: bool = False) -> None:
        self.reply = reply
        self.fail = fail
        self.calls: list[list[dict]] = []

    def complete(self, messages, max_tokens=1024, temperature=0.0) -> str:
        self.calls.append(messages)
        if self.fail:
            raise CompletionProviderError("provider down", provider_name="fake")
        return self.reply


def make_config() -> KbConfig:
    cfg = KbConfig()
    cfg.embedding = EmbeddingCfg(
        model="fake/embed-8",
        dimensions=DIMS,
        concurrency=2,
        backoff_seconds=0.0,
        backoff_max_seconds=0.0,
    )
    return cfg


@pytest.fixture
def tmp_db(tmp_path):
    """File-based DB in tmp_path with schema initialized, closed after test."""
    db = Database(tmp_path / ".kbase.db")
    conn = db.connect()
    initialize(conn)
    yield conn
    conn.close()


@pytest.fixture
def database(tmp_path):
    """Initialized ``Database`` for components that open their own connections."""
    db = Database(tmp_path / ".kbase.db")
    conn = db.connect()
    initialize(conn)
    conn.close()
    return db


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def embed_client():
    return FakeEmbeddingClient()


@pytest.fixture
def kb(database, config, embed_client):
    return KnowledgeBase(database, config, embed_client, completion_client=None)


@pytest.fixture
def admin():
    return Caller(user_id="u-admin", roles=("admin",))


@pytest.fixture
def support():
    return Caller(user_id="u-support", roles=("support",))


@pytest.fixture
def make_embed_client():
    """Factory for embedding fakes with custom dims/failures."""
    return FakeEmbeddingClient


@pytest.fixture
def make_completion_client():
    return FakeCompletionClient


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def cli_kb(kb):
    """Route every CLI command to the test ``kb`` instead of a config-built one."""
    with patch("kbase.cli.documents.build_kb", return_value=kb), patch(
        "kbase.cli.query.build_kb", return_value=kb
    ):
        yield kb
