"""kbase rich error messages: actionable feedback.

Every error shown to the user contains:
  1. What went wrong (clear cause)
  2. The exact action the user should take to fix it

Usage:
    from kbase.cli.errors import err_file_not_found
    console.print(err_file_not_found(path))
    raise typer.Exit(1)
"""

from __future__ import annotations

from kbase.errors import (
    EmbeddingProviderError,
    FileTooLarge,
    KbError,
    NotFound,
    PermissionDenied,
    RetrievalTimeout,
    UnsupportedFormat,
)


def err_no_api_key(provider: str) -> str:
    """No API key for *provider*.

    Example:
        No API key for 'openai'. Set:  export OPENAI_API_KEY=sk-...
    """
    env_map = {
        "openai": "OPENAI_API_KEY",
        "anthropic": "ANTHROPIC_API_KEY",
        "cohere": "COHERE_API_KEY",
        "gemini": "GEMINI_API_KEY",
        "mistral": "MISTRAL_API_KEY",
        "azure": "AZURE_API_KEY",
    }
    env_var = env_map.get(provider.lower(), f"{provider.upper()}_API_KEY")
    return (
        f"[red]Error:[/] No API key for '{provider}'.\n"
        f"  Set:  export {env_var}=sk-..."
    )


def err_file_not_found(path: str) -> str:
    return (
        f"[red]Error:[/] File not found: '{path}'\n"
        "  Check the path and try again."
    )


def err_file_too_large(path: str, size: int, limit: int) -> str:
    return (
        f"[red]Error:[/] File exceeds {limit // (1024 * 1024)} MB limit: "
        f"'{path}' ({size / (1024 * 1024):.1f} MB)\n"
        "  Split the document into smaller files and upload them separately."
    )


def err_unsupported_type(path: str, declared_type: str) -> str:
    return (
        f"[red]Error:[/] Unsupported file type '{declared_type}' for '{path}'.\n"
        "  Supported: .pdf, .md, .html, .txt (or pass --type application/pdf, text/markdown, ...)"
    )


def err_permission_denied(permission: str, tenant_id: str) -> str:
    return (
        f"[red]Error:[/] Permission '{permission}' denied for tenant '{tenant_id}'.\n"
        "  Run the command with a role that grants it, e.g.  --role admin"
    )


def err_document_not_found(document_id: str) -> str:
    return (
        f"[yellow]Document not found:[/] '{document_id}' is not in this tenant's knowledge base.\n"
        "  Run:  kbase docs  to see all documents."
    )


def err_retrieval_timeout(timeout_ms: int) -> str:
    return (
        f"[red]Error:[/] Retrieval exceeded {timeout_ms} ms.\n"
        "  Retry, or raise retrieval.timeout_ms in kbase.yaml."
    )


def err_provider(message: str) -> str:
    return (
        f"[red]Error:[/] Provider call failed: {message}\n"
        "  Check the model name and API key, then retry."
    )


def err_config(message: str) -> str:
    return (
        f"[red]Error:[/] Invalid configuration.\n  {message}\n"
        "  Fix kbase.yaml (or ~/.kbase/config.yaml) and retry."
    )


def warn_ingest_failed(title: str, error: str | None) -> str:
    return (
        f"[yellow]⚠[/] Ingest failed for '{title}': {error or 'unknown error'}\n"
        "  Fix the file and upload it again, or run:  kbase reingest <document-id>"
    )


def render_error(exc: KbError, path: str = "") -> str:
    """Map a kbase exception to its actionable message."""
    if isinstance(exc, PermissionDenied):
        return err_permission_denied(exc.permission, exc.tenant_id)
    if isinstance(exc, FileTooLarge):
        return err_file_too_large(path, exc.size, exc.limit)
    if isinstance(exc, UnsupportedFormat):
        return err_unsupported_type(path, exc.declared_type)
    if isinstance(exc, RetrievalTimeout):
        return err_retrieval_timeout(exc.timeout_ms)
    if isinstance(exc, NotFound):
        return f"[yellow]Not found:[/] {exc.message}\n  Run:  kbase docs  to see all documents."
    if isinstance(exc, EmbeddingProviderError) and "API key not found" in exc.message:
        return err_no_api_key(exc.provider_name or "openai")
    if exc.provider_name:
        return err_provider(str(exc))
    return f"[red]Error:[/] {exc.message}"
