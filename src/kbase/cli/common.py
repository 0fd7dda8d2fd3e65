"""Shared CLI plumbing: config + logging bootstrap, caller identity."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Optional

import typer
from rich.console import Console

from kbase.cli.errors import err_config
from kbase.config import ConfigError, load_config
from kbase.log import configure_logging
from kbase.service import Caller, KnowledgeBase

console = Console()

DEFAULT_TENANT = "default"
DEFAULT_USER = "cli"
DEFAULT_ROLES = ["admin"]


def build_kb(db: Path | None) -> KnowledgeBase:
    """Load config from the CWD, configure logging and build the facade.

    With ``ingest.recover_on_startup`` set, documents left pending or
    processing by an interrupted run are re-ingested first.
    """
    try:
        cfg = load_config()
    except ConfigError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1) from exc
    if db is not None:
        cfg.database.path = str(db)
    configure_logging(cfg.logging.level, cfg.logging.json)
    kb = KnowledgeBase.from_config(cfg)
    if cfg.ingest.recover_on_startup:
        results = kb.orchestrator.recover()
        if results:
            console.print(f"[dim]Recovered {len(results)} interrupted document(s).[/]")
    return kb


def make_caller(user: str, roles: list[str] | None) -> Caller:
    return Caller(user_id=user, roles=tuple(roles or DEFAULT_ROLES))


# ---------------------------------------------------------------------------
# Shared options
# ---------------------------------------------------------------------------

DbOpt = Annotated[
    Optional[Path],
    typer.Option("--db", help="Path to the knowledge base database (default: from config)."),
]
TenantOpt = Annotated[str, typer.Option("--tenant", "-t", help="Tenant id.")]
UserOpt = Annotated[str, typer.Option("--user", "-u", help="Acting user id.")]
RoleOpt = Annotated[
    Optional[list[str]],
    typer.Option("--role", "-r", help="Caller role (repeatable). Default: admin."),
]
