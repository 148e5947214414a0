"""recall CLI entry point."""

from __future__ import annotations

import importlib.metadata
from typing import Annotated

import typer

from recall.cli.bridge import bridge_app
from recall.cli.contacts import contacts_app
from recall.cli.ingest import ingest_cmd
from recall.cli.init import init_cmd
from recall.cli.search import (
    annotate_cmd,
    conversations_cmd,
    delete_cmd,
    history_cmd,
    reindex_cmd,
    search_cmd,
)
from recall.cli.status import status_cmd
from recall.logging_config import configure_quiet_mode, enable_debug_mode


def _version_callback(value: bool) -> None:
    if value:
        try:
            ver = importlib.metadata.version("recall")
        except importlib.metadata.PackageNotFoundError:
            ver = "dev"
        typer.echo(f"recall {ver}")
        raise typer.Exit()


app = typer.Typer(
    name="recall",
    help=(
        "Recall — retrieval and identity memory for personal communications.\n\n"
        "  recall search     Hybrid semantic + keyword search over messages.\n"
        "  recall bridge     Ingest inbound channel events exactly once."
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
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Debug logging to stderr."),
    ] = False,
) -> None:
    """Recall — retrieval and identity memory for personal communications."""
    if verbose:
        enable_debug_mode()
    else:
        configure_quiet_mode()


app.command("init")(init_cmd)
app.command("ingest")(ingest_cmd)
app.command("search")(search_cmd)
app.command("history")(history_cmd)
app.command("conversations")(conversations_cmd)
app.command("annotate")(annotate_cmd)
app.command("delete")(delete_cmd)
app.command("reindex")(reindex_cmd)
app.command("status")(status_cmd)
app.add_typer(contacts_app, name="contacts")
app.add_typer(bridge_app, name="bridge")


@app.command("version")
def version_cmd() -> None:
    """Show the installed recall version."""
    try:
        ver = importlib.metadata.version("recall")
    except importlib.metadata.PackageNotFoundError:
        ver = "dev"
    typer.echo(f"recall {ver}")


if __name__ == "__main__":
    app()
