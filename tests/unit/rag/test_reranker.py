"""Tests for the LLM reranker."""

from __future__ import annotations

import pytest

from kbase.rag.reranker import Reranker, _parse_score_array


def test_score_parses_json_array(make_completion_client):
    client = make_completion_client(reply="[0.9, 0.2, 0.55]")
    assert Reranker(client).score("q", ["a", "b", "c"]) == [0.9, 0.2, 0.55]
    [messages] = client.calls
    assert "[1] a" in messages[1]["content"]
    assert "[3] c" in messages[1]["content"]


def test_score_clamps_values(make_completion_client):
    client = make_completion_client(reply='{"scores": [1.7, -0.3]}')
    assert Reranker(client).score("q", ["a", "b"]) == [1.0, 0.0]


def test_score_length_mismatch_is_none(make_completion_client):
    assert Reranker(make_completion_client(reply="[0.5]")).score("q", ["a", "b"]) is None


def test_score_provider_failure_is_none(make_completion_client):
    assert Reranker(make_completion_client(fail=True)).score("q", ["a"]) is None


def test_score_empty_passages_no_call(make_completion_client):
    client = make_completion_client()
    assert Reranker(client).score("q", []) == []
    assert client.calls == []


def test_passages_truncated(make_completion_client):
    client = make_completion_client(reply="[0.1]")
    Reranker(client).score("q", ["x" * 5000])
    assert "x" * 1201 not in client.calls[0][1]["content"]


@pytest.mark.parametrize("raw", ["no json here", "[0.1, \"high\"]", "[", ""])
def test_parse_score_array_malformed(raw):
    assert _parse_score_array(raw, expected_length=2) is None
