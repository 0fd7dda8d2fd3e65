"""kbase query commands: search (ranked chunks) and ask (cited answer)."""

from __future__ import annotations

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
from kbase.cli.errors import render_error
from kbase.errors import KbError


def search_cmd(
    query: Annotated[str, typer.Argument(help="Search query.")],
    k: Annotated[Optional[int], typer.Option("--k", "-k", help="Max results.")] = None,
    rerank: Annotated[bool, typer.Option("--rerank", help="Rerank the top candidates.")] = False,
    tenant: TenantOpt = DEFAULT_TENANT,
    user: UserOpt = DEFAULT_USER,
    role: RoleOpt = None,
    db: DbOpt = None,
) -> None:
    """Show the chunks most relevant to QUERY that the caller may see."""
    kb = build_kb(db)
    try:
        results = kb.search(tenant, make_caller(user, role), query, k=k, use_rerank=rerank)
    except KbError as exc:
        console.print(render_error(exc))
        raise typer.Exit(1) from exc

    if not results:
        console.print("[dim]No results.[/]")
        return

    table = Table(title=f"Results for: {query}")
    table.add_column("#", justify="right")
    table.add_column("Score", justify="right")
    table.add_column("Document")
    table.add_column("Chunk", justify="right")
    table.add_column("Snippet")
    for i, r in enumerate(results, start=1):
        table.add_row(str(i), f"{r.score:.3f}", r.title, str(r.chunk_idx), r.snippet)
    console.print(table)


def ask_cmd(
    question: Annotated[str, typer.Argument(help="Question to answer from the knowledge base.")],
    k: Annotated[Optional[int], typer.Option("--k", "-k", help="Max context chunks.")] = None,
    tenant: TenantOpt = DEFAULT_TENANT,
    user: UserOpt = DEFAULT_USER,
    role: RoleOpt = None,
    db: DbOpt = None,
) -> None:
    """Answer QUESTION with citations to the caller's visible documents."""
    kb = build_kb(db)
    try:
        answer = kb.ask(tenant, make_caller(user, role), question, k=k)
    except KbError as exc:
        console.print(render_error(exc))
        raise typer.Exit(1) from exc

    console.print(answer.text)
    if answer.fallback:
        console.print("\n[yellow]⚠[/] No completion provider available; showing source excerpts.")
    if answer.citations:
        console.print("\n[bold]Sources[/]")
        for c in answer.citations:
            marker = "[green]●[/]" if c.used else "[dim]○[/]"
            console.print(f"  {marker} [{c.index}] {c.title} (chunk {c.chunk_idx}, score {c.score:.2f})")
