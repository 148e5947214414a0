"""recall ingest: load documents from a JSONL file into the store.

Each line is one object ``{"id"?, "text", "source", "path"}``. Missing ids
are derived from (source, path, text), so re-running the same file is a no-op
apart from re-embedding.

Usage:
  recall ingest --file messages.jsonl
  recall ingest --file messages.jsonl --dry-run
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn

from recall.cli.context import cli_errors, open_services
from recall.cli.errors import err_file_not_found, err_invalid_json
from recall.store.document_store import document_id

console = Console()

_BATCH_SIZE = 64


def ingest_cmd(
    file: Annotated[
        Path,
        typer.Option("--file", "-f", help="JSONL file with one document per line."),
    ],
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to the recall database (default: from config)."),
    ] = None,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", help="Parse and show what would be ingested without writing."),
    ] = False,
) -> None:
    """Embed and store documents from a JSONL file."""
    if not file.exists():
        console.print(err_file_not_found(str(file)))
        raise typer.Exit(1)

    docs = _read_jsonl(file)
    if not docs:
        console.print("[yellow]No documents found to ingest.[/]")
        raise typer.Exit(0)

    console.print(f"\n[bold]→ {file}[/]  {len(docs)} documents")

    if dry_run:
        for doc in docs[:10]:
            doc_id = doc.get("id") or document_id(
                str(doc.get("source", "")), str(doc.get("path", "")), str(doc["text"])
            )
            console.print(f"  [dim]{doc_id}[/]  {doc.get('path', '')}")
        if len(docs) > 10:
            console.print(f"  [dim]… {len(docs) - 10} more[/]")
        console.print("  [dim]Dry run — nothing written to DB[/]")
        return

    with cli_errors():
        services = open_services(db)
        written = 0
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TaskProgressColumn(),
            transient=True,
            console=console,
        ) as prog:
            task = prog.add_task("Embedding…", total=len(docs))
            for start in range(0, len(docs), _BATCH_SIZE):
                batch = docs[start:start + _BATCH_SIZE]
                written += len(services.store.upsert(batch))
                prog.advance(task, len(batch))

    console.print(f"  [green]✓[/] {written} documents stored")


def _read_jsonl(path: Path) -> list[dict[str, Any]]:
    docs: list[dict[str, Any]] = []
    for lineno, line in enumerate(path.read_text(encoding="utf-8").splitlines(), start=1):
        if not line.strip():
            continue
        try:
            obj = json.loads(line)
        except json.JSONDecodeError as exc:
            console.print(err_invalid_json(str(path), exc.msg, lineno))
            raise typer.Exit(1) from exc
        if not isinstance(obj, dict) or not str(obj.get("text") or "").strip():
            console.print(f"  [yellow]↷ line {lineno}: no text — skipped[/]")
            continue
        docs.append(obj)
    return docs
