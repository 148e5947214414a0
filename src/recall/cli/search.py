"""recall document commands: search, history, conversations, annotate, delete, reindex."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from recall.cli.context import cli_errors, open_services
from recall.text import extract_date, history_prefix

console = Console()

_DbOption = Annotated[
    Path | None,
    typer.Option("--db", help="Path to the recall database (default: from config)."),
]


def _clip(text: str, width: int = 80) -> str:
    flat = " ".join(text.split())
    return escape(flat if len(flat) <= width else flat[: width - 1] + "…")


def search_cmd(
    query: Annotated[str, typer.Argument(help="Free-text query.")],
    limit: Annotated[int, typer.Option("--limit", "-n", help="Maximum results.")] = 5,
    db: _DbOption = None,
) -> None:
    """Hybrid (semantic + keyword) search over stored documents."""
    with cli_errors():
        services = open_services(db)
        results = services.store.search(query, limit=limit)

    if not results:
        console.print("[yellow]No matching documents.[/]")
        raise typer.Exit(0)

    table = Table(title=f"Results for “{query}”", show_header=True, header_style="bold")
    table.add_column("#", style="dim", width=3)
    table.add_column("Score", justify="right")
    table.add_column("Path", style="cyan", no_wrap=True)
    table.add_column("Text")
    for i, scored in enumerate(results, start=1):
        doc = scored.document
        table.add_row(str(i), f"{scored.rrf_score:.4f}", doc.path, _clip(doc.text))
    console.print(table)


def history_cmd(
    prefix: Annotated[
        str,
        typer.Argument(help="Path prefix (imessage://+1555…, mailto:a@b.c) or a bare handle."),
    ],
    db: _DbOption = None,
) -> None:
    """Show every document in a conversation, oldest first."""
    path_prefix = prefix if ":" in prefix else history_prefix(prefix)
    with cli_errors():
        services = open_services(db)
        docs = services.store.history_by_prefix(path_prefix)

    if not docs:
        console.print(f"[yellow]No history under[/] {path_prefix}")
        raise typer.Exit(0)

    docs.sort(key=lambda d: extract_date(d.text) or "")
    for doc in docs:
        marker = "[green]★[/] " if doc.annotated else ""
        console.print(f"{marker}{escape(doc.text)}")
    console.print(f"\n  [dim]{len(docs)} documents[/]")


def conversations_cmd(
    limit: Annotated[int, typer.Option("--limit", "-n", help="Maximum conversations.")] = 20,
    db: _DbOption = None,
) -> None:
    """List conversations, most recent first."""
    with cli_errors():
        services = open_services(db)
        index = services.store.conversation_index()

    if not index:
        console.print("[yellow]No conversations yet.[/]")
        raise typer.Exit(0)

    summaries = sorted(index.values(), key=lambda s: s.latest_timestamp, reverse=True)
    table = Table(title="Conversations", show_header=True, header_style="bold")
    table.add_column("Handle", style="bold", no_wrap=True)
    table.add_column("Channel", style="cyan")
    table.add_column("Messages", justify="right")
    table.add_column("Latest", style="dim", no_wrap=True)
    table.add_column("Preview")
    for summary in summaries[:limit]:
        table.add_row(
            summary.handle,
            summary.channel,
            str(summary.count),
            summary.latest_timestamp or "",
            _clip(summary.preview, 60),
        )
    console.print(table)


def annotate_cmd(
    doc_id: Annotated[str, typer.Argument(help="Document id.")],
    golden: Annotated[
        bool,
        typer.Option("--golden/--not-golden", help="Mark or unmark as a golden example."),
    ] = True,
    db: _DbOption = None,
) -> None:
    """Flag a document as a golden example (or clear the flag)."""
    with cli_errors():
        services = open_services(db)
        services.store.annotate(doc_id, golden)
    state = "golden" if golden else "not golden"
    console.print(f"[green]✓[/] {doc_id} marked {state}")


def delete_cmd(
    doc_id: Annotated[str, typer.Argument(help="Document id.")],
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation prompt.")] = False,
    db: _DbOption = None,
) -> None:
    """Delete a document with its lexical and vector entries."""
    with cli_errors():
        services = open_services(db)
        doc = services.store.get(doc_id)
        if doc is None:
            console.print(f"[yellow]Document not found:[/] '{doc_id}'")
            raise typer.Exit(0)

        console.print(f"\nDelete document: [bold]{doc_id}[/]\n  {_clip(doc.text)}")
        if not yes and not typer.confirm("Confirm deletion?", default=False):
            console.print("[dim]Cancelled.[/]")
            raise typer.Exit(0)

        services.store.delete(doc_id)
    console.print(f"[green]✓[/] Deleted: {doc_id}")


def reindex_cmd(db: _DbOption = None) -> None:
    """Rebuild the full-text index from the stored documents."""
    with cli_errors():
        services = open_services(db)
        count = services.store.rebuild_lexical_index()
    console.print(f"[green]✓[/] Lexical index rebuilt over {count} documents")
