"""LiteLLM capability clients with API key validation.

Embedding and completion capabilities are injected into the pipeline as
objects satisfying ``EmbeddingClient`` / ``CompletionClient``; the LiteLLM
implementations below are the production ones. Provider exceptions are
mapped to ``EmbeddingProviderError`` / ``CompletionProviderError``.

Embedding calls run with ``num_retries=0``: batch retries are owned by the
Embedder so that each batch is retried independently with its own backoff.
Completion calls use LiteLLM's built-in retry.
"""

from __future__ import annotations

import os
from typing import Protocol

import litellm

from kbase.errors import CompletionProviderError, EmbeddingProviderError

# Disable LiteLLM verbose logging unless explicitly enabled
litellm.suppress_debug_info = True
litellm.set_verbose = False  # type: ignore[assignment]


# ------------------------------------------------------------------
# Capability interfaces
# ------------------------------------------------------------------


class EmbeddingClient(Protocol):
    model: str

    def embed(self, texts: list[str]) -> list[list[float]]:
        """Return one vector per input text, in input order."""
        ...


class CompletionClient(Protocol):
    model: str

    def complete(
        self,
        messages: list[dict],
        max_tokens: int = 1024,
        temperature: float = 0.0,
    ) -> str:
        """Return the text of the first completion choice."""
        ...


# ------------------------------------------------------------------
# Provider → env var mapping for API key validation
# ------------------------------------------------------------------

_PROVIDER_ENV: dict[str, str | None] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "azure": "AZURE_API_KEY",
    "cohere": "COHERE_API_KEY",
    "google": "GOOGLE_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "groq": "GROQ_API_KEY",
    "together_ai": "TOGETHERAI_API_KEY",
    "ollama": None,  # Local, no key required
    "ollama_chat": None,
}


def validate_api_key(model: str) -> None:
    """Check that the required API key env var is set for *model*.

    Args:
        model: LiteLLM model string in 'provider/model' format.

    Raises:
        EnvironmentError: If the required key is missing from environment.
    """
    provider = model.split("/")[0].lower() if "/" in model else "openai"
    env_var = _PROVIDER_ENV.get(provider)

    if env_var is None:
        return

    if not os.getenv(env_var):
        raise EnvironmentError(
            f"API key not found for provider '{provider}'. "
            f"Set the {env_var} environment variable."
        )


def is_configured(model: str) -> bool:
    try:
        validate_api_key(model)
    except EnvironmentError:
        return False
    return True


def count_tokens(model: str, text: str) -> int:
    """Count tokens in *text* for *model* using LiteLLM's provider-aware counter.

    Falls back to character-based approximation (4 chars ≈ 1 token) if the model
    is not supported by litellm.token_counter().
    """
    try:
        return litellm.token_counter(model=model, text=text)
    except Exception:
        return max(1, len(text) // 4)


# ------------------------------------------------------------------
# LiteLLM implementations
# ------------------------------------------------------------------


class LiteLLMEmbeddingClient:
    """``EmbeddingClient`` backed by ``litellm.embedding()``."""

    def __init__(self, model: str, dimensions: int | None = None) -> None:
        self.model = model
        self.dimensions = dimensions

    def embed(self, texts: list[str]) -> list[list[float]]:
        provider = self.model.split("/")[0] if "/" in self.model else "openai"
        try:
            validate_api_key(self.model)
        except EnvironmentError as exc:
            raise EmbeddingProviderError(str(exc), provider_name=provider) from exc

        kwargs: dict = {"model": self.model, "input": texts, "num_retries": 0}
        if self.dimensions and provider == "openai" and "-3-" in self.model:
            kwargs["dimensions"] = self.dimensions
        try:
            response = litellm.embedding(**kwargs)
        except Exception as exc:
            raise EmbeddingProviderError(
                f"Embedding call failed: {type(exc).__name__}: {exc}", provider_name=provider
            ) from exc

        items = sorted(response.data, key=lambda item: _field(item, "index", 0))
        vectors = [list(_field(item, "embedding", [])) for item in items]
        if len(vectors) != len(texts):
            raise EmbeddingProviderError(
                f"Expected {len(texts)} embeddings, got {len(vectors)}", provider_name=provider
            )
        return vectors


class LiteLLMCompletionClient:
    """``CompletionClient`` backed by ``litellm.completion()``.

    LiteLLM's built-in retry is used (exponential backoff inside LiteLLM).
    """

    def __init__(self, model: str, num_retries: int = 3) -> None:
        self.model = model
        self.num_retries = num_retries

    def complete(
        self,
        messages: list[dict],
        max_tokens: int = 1024,
        temperature: float = 0.0,
    ) -> str:
        provider = self.model.split("/")[0] if "/" in self.model else "openai"
        try:
            validate_api_key(self.model)
        except EnvironmentError as exc:
            raise CompletionProviderError(str(exc), provider_name=provider) from exc
        try:
            response = litellm.completion(
                model=self.model,
                messages=messages,
                max_tokens=max_tokens,
                temperature=temperature,
                num_retries=self.num_retries,
            )
        except Exception as exc:
            raise CompletionProviderError(
                f"Completion call failed: {type(exc).__name__}: {exc}", provider_name=provider
            ) from exc
        return response.choices[0].message.content or ""


def _field(item, name: str, default):
    # litellm returns dicts for some providers and objects for others
    if isinstance(item, dict):
        return item.get(name, default)
    return getattr(item, name, default)
