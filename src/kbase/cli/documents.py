"""kbase document commands: upload, list, remove, re-ingest, recover.

Usage:
  kbase upload handbook.pdf notes.md --tenant acme --allow support --allow admin
  kbase docs --tenant acme
  kbase remove <document-id> --tenant acme --yes
  kbase reingest <document-id> --tenant acme
  kbase recover --tenant acme
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.table import Table

from kbase.cli.common import (
    DEFAULT_TENANT,
    DEFAULT_USER,
    DbOpt,
    RoleOpt,
    TenantOpt,
    UserOpt,
    build_kb,
    console,
    make_caller,
)
from kbase.cli.errors import (
    err_document_not_found,
    err_file_not_found,
    render_error,
    warn_ingest_failed,
)
from kbase.errors import KbError, NotFound
from kbase.ingest.orchestrator import FAILED, IngestResult


def upload_cmd(
    paths: Annotated[list[Path], typer.Argument(help="Files to upload (.pdf, .md, .html, .txt).")],
    allow: Annotated[
        Optional[list[str]],
        typer.Option("--allow", "-a", help="Role allowed to see the chunks (repeatable)."),
    ] = None,
    declared_type: Annotated[
        Optional[str],
        typer.Option("--type", help="Declared MIME type (default: from file extension)."),
    ] = None,
    tenant: TenantOpt = DEFAULT_TENANT,
    user: UserOpt = DEFAULT_USER,
    role: RoleOpt = None,
    db: DbOpt = None,
) -> None:
    """Upload files and ingest them into the tenant's knowledge base."""
    kb = build_kb(db)
    caller = make_caller(user, role)
    failures = 0

    for path in paths:
        if not path.is_file():
            console.print(err_file_not_found(str(path)))
            failures += 1
            continue
        try:
            result = kb.upload(
                tenant,
                caller,
                path.read_bytes(),
                path.name,
                declared_type=declared_type,
                allowed_roles=allow,
            )
        except KbError as exc:
            console.print(render_error(exc, str(path)))
            failures += 1
            continue
        failures += _print_result(path.name, result)

    if failures:
        raise typer.Exit(1)


def _print_result(title: str, result: IngestResult) -> int:
    if result.status == FAILED:
        console.print(warn_ingest_failed(title, result.error))
        return 1
    console.print(
        f"[green]✓[/] {title}  [dim]{result.document_id}[/]  "
        f"{result.status}  chunks={result.chunk_count}  v{result.version or '-'}"
    )
    return 0


def docs_cmd(
    tenant: TenantOpt = DEFAULT_TENANT,
    user: UserOpt = DEFAULT_USER,
    role: RoleOpt = None,
    db: DbOpt = None,
) -> None:
    """List the tenant's documents with status, version and chunk count."""
    kb = build_kb(db)
    try:
        summaries = kb.list_documents(tenant, make_caller(user, role))
    except KbError as exc:
        console.print(render_error(exc))
        raise typer.Exit(1) from exc

    if not summaries:
        console.print("[dim]No documents.[/]  Run:  kbase upload <file>")
        return

    table = Table(title=f"Documents ({tenant})")
    table.add_column("ID", style="dim")
    table.add_column("Title")
    table.add_column("Status")
    table.add_column("Version", justify="right")
    table.add_column("Chunks", justify="right")
    table.add_column("Roles")
    table.add_column("Last job")
    for s in summaries:
        doc = s.document
        status = {"ready": "[green]ready[/]", "error": "[red]error[/]"}.get(doc.status, doc.status)
        job = s.latest_job
        table.add_row(
            doc.id,
            doc.title,
            status,
            str(doc.version),
            str(s.chunk_count),
            ", ".join(doc.allowed_roles),
            f"{job.status} {job.finished_at or job.created_at}" if job else "-",
        )
    console.print(table)

    stuck = sum(1 for s in summaries if s.document.status in ("pending", "processing"))
    if stuck:
        console.print(
            f"[yellow]⚠[/] {stuck} document(s) not finished ingesting.\n"
            f"  If no upload is running, run:  kbase recover --tenant {tenant}"
        )


def remove_cmd(
    document_id: Annotated[str, typer.Argument(help="Document id (see: kbase docs).")],
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation prompt.")] = False,
    tenant: TenantOpt = DEFAULT_TENANT,
    user: UserOpt = DEFAULT_USER,
    role: RoleOpt = None,
    db: DbOpt = None,
) -> None:
    """Remove a document, its chunks and (if orphaned) its source."""
    kb = build_kb(db)
    caller = make_caller(user, role)
    try:
        doc = kb.get_document(tenant, caller, document_id)
        if not yes and not typer.confirm(f"Remove '{doc.title}'?", default=False):
            console.print("[dim]Cancelled.[/]")
            raise typer.Exit(0)
        kb.delete_document(tenant, caller, document_id)
    except NotFound as exc:
        console.print(err_document_not_found(document_id))
        raise typer.Exit(1) from exc
    except KbError as exc:
        console.print(render_error(exc))
        raise typer.Exit(1) from exc
    console.print(f"[green]✓[/] Removed: {doc.title}")


def reingest_cmd(
    document_id: Annotated[str, typer.Argument(help="Document id (see: kbase docs).")],
    tenant: TenantOpt = DEFAULT_TENANT,
    user: UserOpt = DEFAULT_USER,
    role: RoleOpt = None,
    db: DbOpt = None,
) -> None:
    """Re-run ingestion for a document from its stored upload."""
    kb = build_kb(db)
    try:
        result = kb.reingest(tenant, make_caller(user, role), document_id)
    except NotFound as exc:
        console.print(err_document_not_found(document_id))
        raise typer.Exit(1) from exc
    except KbError as exc:
        console.print(render_error(exc))
        raise typer.Exit(1) from exc
    if _print_result(document_id, result):
        raise typer.Exit(1)


def recover_cmd(
    tenant: TenantOpt = DEFAULT_TENANT,
    user: UserOpt = DEFAULT_USER,
    role: RoleOpt = None,
    db: DbOpt = None,
) -> None:
    """Re-run documents left pending/processing by an interrupted run."""
    kb = build_kb(db)
    try:
        results = kb.recover(tenant, make_caller(user, role))
    except KbError as exc:
        console.print(render_error(exc))
        raise typer.Exit(1) from exc
    if not results:
        console.print("[dim]Nothing to recover.[/]")
        return
    failures = sum(_print_result(r.document_id, r) for r in results)
    if failures:
        raise typer.Exit(1)
