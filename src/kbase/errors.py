"""Exception hierarchy for kbase.

    KbError
    +-- IngestError              (input problems, fatal to the job, never retried)
    |   +-- UnsupportedFormat
    |   +-- ExtractionFailed
    |   +-- EmptyContent
    +-- ProviderError            (external capability, retried with backoff)
    |   +-- EmbeddingProviderError
    |   +-- CompletionProviderError
    +-- RetrievalTimeout
    +-- PermissionDenied
    +-- NotFound
    +-- ValidationError          (also a ValueError)
        +-- FileTooLarge

Messages never contain document content; only ids, counts and types.
"""

from __future__ import annotations


class KbError(Exception):
    """Base exception for all kbase errors."""

    def __init__(self, message: str = "Knowledge base error", provider_name: str | None = None) -> None:
        self._message = message
        self._provider_name = provider_name
        super().__init__(message)

    @property
    def message(self) -> str:
        return self._message

    @property
    def provider_name(self) -> str | None:
        return self._provider_name

    def __str__(self) -> str:
        if self._provider_name:
            return f"[{self._provider_name}] {self._message}"
        return self._message


class IngestError(KbError):
    """Base for errors caused by the uploaded file itself."""


class UnsupportedFormat(IngestError):
    def __init__(self, declared_type: str) -> None:
        self.declared_type = declared_type
        super().__init__(f"Unsupported file type: {declared_type!r}")


class ExtractionFailed(IngestError):
    """The file could not be parsed (corrupt or malformed input)."""


class EmptyContent(IngestError):
    def __init__(self, message: str = "No extractable text content") -> None:
        super().__init__(message)


class ProviderError(KbError):
    """Base for transient errors raised by external capabilities."""


class EmbeddingProviderError(ProviderError):
    """Embedding capability failed (network, auth, quota, bad response)."""


class CompletionProviderError(ProviderError):
    """Completion capability failed or is not configured."""


class RetrievalTimeout(KbError):
    def __init__(self, timeout_ms: int) -> None:
        self.timeout_ms = timeout_ms
        super().__init__(f"Retrieval exceeded {timeout_ms} ms")


class PermissionDenied(KbError):
    def __init__(self, permission: str, tenant_id: str) -> None:
        self.permission = permission
        self.tenant_id = tenant_id
        super().__init__(f"Missing permission '{permission}' for tenant '{tenant_id}'")


class NotFound(KbError):
    """Requested entity does not exist for this tenant."""


class ValidationError(KbError, ValueError):
    """Input rejected at the boundary or at write time."""


class FileTooLarge(ValidationError):
    def __init__(self, size: int, limit: int) -> None:
        self.size = size
        self.limit = limit
        super().__init__(
            f"File too large ({size / (1024 * 1024):.1f} MB, max {limit // (1024 * 1024)} MB)"
        )
