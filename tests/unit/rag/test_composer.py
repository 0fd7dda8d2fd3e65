"""Tests for the answer composer: citations, token budget, fallback."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from kbase.config import GenerationCfg
from kbase.errors import CompletionProviderError
from kbase.rag.composer import FALLBACK_PREFIX, SYSTEM_PROMPT, AnswerComposer
from kbase.rag.retriever import RetrievedChunk


def _chunk(i, content=None, title="policy.txt"):
    text = content or f"Content of chunk {i}."
    return RetrievedChunk(
        chunk_id=i,
        document_id=f"doc-{i}",
        chunk_idx=0,
        title=title,
        content=text,
        snippet=text[:220],
        source_id="src",
        source_uri=None,
        score=1.0 - i / 10,
    )


@pytest.fixture(autouse=True)
def _char_tokens():
    with patch("kbase.rag.composer.count_tokens", side_effect=lambda model, text: max(1, len(text) // 4)):
        yield


def test_compose_marks_cited_chunks_used(make_completion_client):
    client = make_completion_client(reply="Refunds take thirty days [1]. See also [#3].")
    answer = AnswerComposer(client, GenerationCfg()).compose("refund time?", [_chunk(1), _chunk(2), _chunk(3)])
    assert answer.fallback is False
    assert answer.text.startswith("Refunds take thirty days")
    assert [c.index for c in answer.citations] == [1, 2, 3]
    assert [c.used for c in answer.citations] == [True, False, True]
    assert answer.citations[0].document_id == "doc-1"
    assert answer.citations[0].snippet == "Content of chunk 1."


def test_prompt_contains_numbered_context(make_completion_client):
    client = make_completion_client()
    AnswerComposer(client, GenerationCfg()).compose("refund time?", [_chunk(1), _chunk(2)])
    [messages] = client.calls
    assert messages[0] == {"role": "system", "content": SYSTEM_PROMPT}
    user = messages[1]["content"]
    assert user.startswith("Question: refund time?")
    assert "[1] policy.txt — Content of chunk 1." in user
    assert "[2] policy.txt — Content of chunk 2." in user


def test_chunks_truncated_to_max_chars(make_completion_client):
    client = make_completion_client()
    cfg = GenerationCfg(max_chunk_chars=50)
    AnswerComposer(client, cfg).compose("q", [_chunk(1, content="y" * 500)])
    assert "y" * 51 not in client.calls[0][1]["content"]


def test_token_budget_limits_context(make_completion_client):
    client = make_completion_client(reply="Answer [1] [2] [3]")
    cfg = GenerationCfg(token_budget=30)
    chunks = [_chunk(i, content="z" * 80) for i in range(1, 4)]  # 20 tokens each
    answer = AnswerComposer(client, cfg).compose("q", chunks)
    user = client.calls[0][1]["content"]
    assert "[1]" in user and "[2]" not in user
    assert [c.used for c in answer.citations] == [True, False, False]


def test_first_chunk_always_included(make_completion_client):
    client = make_completion_client()
    cfg = GenerationCfg(token_budget=1)
    AnswerComposer(client, cfg).compose("q", [_chunk(1, content="w" * 400)])
    assert "[1]" in client.calls[0][1]["content"]


def test_no_client_falls_back_to_excerpts():
    answer = AnswerComposer(None, GenerationCfg()).compose("q", [_chunk(1), _chunk(2)])
    assert answer.fallback is True
    assert answer.text.startswith(FALLBACK_PREFIX)
    assert "(1) Content of chunk 1." in answer.text
    assert "(2) Content of chunk 2." in answer.text
    assert all(c.used for c in answer.citations)


def test_provider_error_falls_back(make_completion_client):
    answer = AnswerComposer(make_completion_client(fail=True), GenerationCfg()).compose("q", [_chunk(1)])
    assert answer.fallback is True
    assert answer.citations[0].used is True


def test_provider_error_raises_when_fallback_disabled(make_completion_client):
    cfg = GenerationCfg(fallback_on_error=False)
    with pytest.raises(CompletionProviderError):
        AnswerComposer(make_completion_client(fail=True), cfg).compose("q", [_chunk(1)])


def test_no_chunks_no_call(make_completion_client):
    client = make_completion_client()
    answer = AnswerComposer(client, GenerationCfg()).compose("q", [])
    assert answer.text == ""
    assert answer.citations == []
    assert client.calls == []
