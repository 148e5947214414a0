"""recall bridge CLI commands.

Commands:
  recall bridge inbound --file event.json   — ingest one event or {"events": [...]}
  recall bridge events [--limit N]          — tail of the bridge event log
  recall bridge summary [--limit N]         — counts per status and channel, rollout modes
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from recall.cli.context import cli_errors, open_services
from recall.cli.errors import err_file_not_found, err_invalid_json
from recall.logging_config import configure_ops_log

console = Console()

bridge_app = typer.Typer(
    name="bridge",
    help="Channel bridge: inbound events, event log, rollout summary.",
    add_completion=False,
)

_DbOption = Annotated[
    Path | None,
    typer.Option("--db", help="Path to the recall database (default: from config)."),
]


@bridge_app.command("inbound")
def bridge_inbound_cmd(
    file: Annotated[
        Path | None,
        typer.Option("--file", "-f", help="JSON payload file. Reads stdin when omitted."),
    ] = None,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", help="Normalise and render documents without storing them."),
    ] = False,
    db: _DbOption = None,
) -> None:
    """Ingest an inbound channel event (or batch) and print the JSON result."""
    payload = _load_payload(file)

    with cli_errors():
        services = open_services(db)
        handler = configure_ops_log(services.db.db_path.parent)
        try:
            result = services.bridge.submit(payload, dry_run=dry_run)
        finally:
            logging.getLogger("recall").removeHandler(handler)
            handler.close()

    typer.echo(json.dumps(result, indent=2, ensure_ascii=False))


@bridge_app.command("events")
def bridge_events_cmd(
    limit: Annotated[int, typer.Option("--limit", "-n", help="Events to show (max 500).")] = 50,
    as_json: Annotated[bool, typer.Option("--json", help="Print raw JSON.")] = False,
    db: _DbOption = None,
) -> None:
    """Show the most recent bridge events, oldest first."""
    with cli_errors():
        events = open_services(db).bridge.read_bridge_event_log(limit)

    if as_json:
        typer.echo(json.dumps([e.to_dict() for e in events], indent=2, ensure_ascii=False))
        return

    if not events:
        console.print("[yellow]No bridge events recorded.[/]")
        raise typer.Exit(0)

    table = Table(title="Bridge events", show_header=True, header_style="bold")
    table.add_column("At", style="dim")
    table.add_column("Channel", style="cyan")
    table.add_column("Status")
    table.add_column("Ref")
    table.add_column("Detail")
    for event in events:
        payload = event.payload_dict
        detail = payload.get("reason") or payload.get("error") or ""
        table.add_row(event.at, event.channel, _status_label(event.status), event.event_ref, detail)
    console.print(table)


@bridge_app.command("summary")
def bridge_summary_cmd(
    limit: Annotated[int, typer.Option("--limit", "-n", help="Events sampled (max 2000).")] = 200,
    as_json: Annotated[bool, typer.Option("--json", help="Print raw JSON.")] = False,
    db: _DbOption = None,
) -> None:
    """Summarise recent bridge activity and per-channel inbound modes."""
    with cli_errors():
        summary = open_services(db).bridge.bridge_summary(limit)

    if as_json:
        typer.echo(json.dumps(summary, indent=2, ensure_ascii=False))
        return

    counts = summary["counts"]
    console.print(
        Panel(
            f"[bold]Sampled:[/]    {summary['sample_size']} of last {summary['limit']}\n"
            f"[bold]Ingested:[/]   {counts['ingested']}\n"
            f"[bold]Duplicate:[/]  {counts['duplicate']}\n"
            f"[bold]Errors:[/]     {counts['error']}\n"
            f"[bold]Last event:[/] {summary['last_event_at'] or '—'}\n"
            f"[bold]Last error:[/] {summary['last_error_at'] or '—'}",
            title="[bold]Bridge[/]",
            expand=False,
        )
    )

    table = Table(title="Channels", show_header=True, header_style="bold")
    table.add_column("Channel", style="cyan")
    table.add_column("Inbound mode")
    table.add_column("Ingested", justify="right")
    table.add_column("Duplicate", justify="right")
    table.add_column("Errors", justify="right")
    names = list(summary["rollout"]) + sorted(c for c in summary["channels"] if c not in summary["rollout"])
    for name in names:
        stats = summary["channels"].get(name, {})
        mode = summary["rollout"].get(name, "")
        mode_label = "[green]draft_only[/]" if mode == "draft_only" else f"[red]{mode}[/]" if mode else ""
        table.add_row(
            name,
            mode_label,
            str(stats.get("ingested", 0)),
            str(stats.get("duplicate", 0)),
            str(stats.get("error", 0)),
        )
    console.print(table)


def _load_payload(file: Path | None) -> Any:
    if file is not None and not file.exists():
        console.print(err_file_not_found(str(file)))
        raise typer.Exit(1)
    raw = file.read_text(encoding="utf-8") if file is not None else sys.stdin.read()
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        console.print(err_invalid_json(str(file or "<stdin>"), exc.msg, exc.lineno))
        raise typer.Exit(1) from exc


def _status_label(status: str) -> str:
    if status == "ingested":
        return "[green]ingested[/]"
    if status == "duplicate":
        return "[yellow]duplicate[/]"
    return f"[red]{status}[/]"
