"""kbase CLI entry point."""

from __future__ import annotations

import importlib.metadata
from typing import Annotated

import typer

from kbase.cli.documents import docs_cmd, recover_cmd, reingest_cmd, remove_cmd, upload_cmd
from kbase.cli.query import ask_cmd, search_cmd


def _installed_version() -> str:
    try:
        return importlib.metadata.version("kbase")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"kbase {_installed_version()}")
        raise typer.Exit()


app = typer.Typer(
    name="kbase",
    help=(
        "kbase: multi-tenant knowledge base.\n\n"
        "  kbase upload  Ingest documents into a tenant's knowledge base.\n"
        "  kbase ask     Answer a question with citations."
    ),
    add_completion=False,
)


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
) -> None:
    """kbase: multi-tenant knowledge base."""


app.command("upload")(upload_cmd)
app.command("docs")(docs_cmd)
app.command("remove")(remove_cmd)
app.command("reingest")(reingest_cmd)
app.command("recover")(recover_cmd)
app.command("search")(search_cmd)
app.command("ask")(ask_cmd)


@app.command("version")
def version_cmd() -> None:
    """Show the installed kbase version."""
    typer.echo(f"kbase {_installed_version()}")


if __name__ == "__main__":
    app()
