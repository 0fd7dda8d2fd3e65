"""Tests for the LiteLLM capability clients."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from kbase.errors import CompletionProviderError, EmbeddingProviderError
from kbase.rag.llm_client import (
    LiteLLMCompletionClient,
    LiteLLMEmbeddingClient,
    count_tokens,
    is_configured,
    validate_api_key,
)


# ------------------------------------------------------------------
# validate_api_key
# ------------------------------------------------------------------


def test_validate_api_key_raises_if_missing(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(EnvironmentError, match="OPENAI_API_KEY"):
        validate_api_key("openai/text-embedding-3-small")


def test_validate_api_key_passes_if_set(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test-key")
    validate_api_key("openai/gpt-4o-mini")


def test_validate_api_key_ollama_no_key_required():
    validate_api_key("ollama/nomic-embed-text")


def test_validate_api_key_bare_model_treated_as_openai(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with pytest.raises(EnvironmentError):
        validate_api_key("gpt-4o-mini")


def test_is_configured(monkeypatch):
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    assert is_configured("anthropic/claude-3-5-haiku-latest") is False
    monkeypatch.setenv("ANTHROPIC_API_KEY", "x")
    assert is_configured("anthropic/claude-3-5-haiku-latest") is True


# ------------------------------------------------------------------
# Embedding client
# ------------------------------------------------------------------


def test_embedding_client_orders_by_index(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    response = MagicMock()
    response.data = [{"index": 1, "embedding": [0.0, 1.0]}, {"index": 0, "embedding": [1.0, 0.0]}]
    with patch("kbase.rag.llm_client.litellm") as mock_litellm:
        mock_litellm.embedding.return_value = response
        vectors = LiteLLMEmbeddingClient("openai/text-embedding-3-small", dimensions=2).embed(["a", "b"])
    assert vectors == [[1.0, 0.0], [0.0, 1.0]]
    kwargs = mock_litellm.embedding.call_args.kwargs
    assert kwargs["num_retries"] == 0
    assert kwargs["dimensions"] == 2


def test_embedding_client_maps_provider_errors(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    with patch("kbase.rag.llm_client.litellm") as mock_litellm:
        mock_litellm.embedding.side_effect = RuntimeError("rate limited")
        with pytest.raises(EmbeddingProviderError) as exc_info:
            LiteLLMEmbeddingClient("openai/text-embedding-3-small").embed(["a"])
    assert exc_info.value.provider_name == "openai"


def test_embedding_client_missing_key(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    with patch("kbase.rag.llm_client.litellm") as mock_litellm:
        with pytest.raises(EmbeddingProviderError, match="OPENAI_API_KEY"):
            LiteLLMEmbeddingClient("openai/text-embedding-3-small").embed(["a"])
    mock_litellm.embedding.assert_not_called()


def test_embedding_client_count_mismatch(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    response = MagicMock()
    response.data = [{"index": 0, "embedding": [1.0]}]
    with patch("kbase.rag.llm_client.litellm") as mock_litellm:
        mock_litellm.embedding.return_value = response
        with pytest.raises(EmbeddingProviderError, match="Expected 2"):
            LiteLLMEmbeddingClient("openai/text-embedding-3-small").embed(["a", "b"])


# ------------------------------------------------------------------
# Completion client
# ------------------------------------------------------------------


def test_completion_client_returns_content(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    response = MagicMock()
    response.choices[0].message.content = "Thirty days [1]."
    with patch("kbase.rag.llm_client.litellm") as mock_litellm:
        mock_litellm.completion.return_value = response
        text = LiteLLMCompletionClient("openai/gpt-4o-mini").complete([{"role": "user", "content": "q"}])
    assert text == "Thirty days [1]."
    assert mock_litellm.completion.call_args.kwargs["num_retries"] == 3


def test_completion_client_maps_errors(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    with patch("kbase.rag.llm_client.litellm") as mock_litellm:
        mock_litellm.completion.side_effect = TimeoutError("slow")
        with pytest.raises(CompletionProviderError, match="TimeoutError"):
            LiteLLMCompletionClient("openai/gpt-4o-mini").complete([])


# ------------------------------------------------------------------
# count_tokens
# ------------------------------------------------------------------


def test_count_tokens_uses_litellm():
    with patch("kbase.rag.llm_client.litellm") as mock_litellm:
        mock_litellm.token_counter.return_value = 7
        assert count_tokens("openai/gpt-4o-mini", "hello") == 7


def test_count_tokens_falls_back_to_chars():
    with patch("kbase.rag.llm_client.litellm") as mock_litellm:
        mock_litellm.token_counter.side_effect = ValueError("unknown model")
        assert count_tokens("custom/model", "a" * 40) == 10
