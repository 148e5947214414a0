"""recall status command.

Shows store overview: database file, documents and vector tables, contacts,
bridge activity, and the configured embedding model.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.panel import Panel

from recall.cli.context import cli_errors, db_path_for, load_cli_config, open_services
from recall.cli.errors import err_no_db
from recall.db.repository import Repository

console = Console()


def status_cmd(
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to the recall database (default: from config)."),
    ] = None,
) -> None:
    """Show store status: documents, contacts, and bridge activity."""
    cfg = load_cli_config()
    db_path = db_path_for(db, cfg)

    if not db_path.exists():
        console.print(
            Panel(err_no_db(str(db_path)), title="[bold]Store[/]", expand=False)
        )
        raise typer.Exit(0)

    with cli_errors():
        services = open_services(db_path)
        doc_count = services.store.count()
        vec_tables = services.db.read(lambda conn: Repository(conn).list_vec_tables())
        stats = services.registry.channel_stats()
        summary = services.bridge.bridge_summary()

    size_kb = db_path.stat().st_size / 1024
    console.print(
        Panel(
            f"[bold]Database:[/]  {db_path}  ({size_kb:.0f} KB)\n"
            f"[bold]Documents:[/] {doc_count}\n"
            f"[bold]Vectors:[/]   {', '.join(vec_tables) if vec_tables else '[dim]none yet[/]'}\n"
            f"[bold]Model:[/]     {cfg.embedding.model}",
            title="[bold]Store[/]",
            expand=False,
        )
    )

    by_channel = ", ".join(
        f"{channel} {count}" for channel, count in sorted(stats["by_channel"].items())
    )
    console.print(
        Panel(
            f"[bold]Contacts:[/]  {stats['total']}\n"
            f"[bold]Channels:[/]  {by_channel or '[dim]—[/]'}",
            title="[bold]Identity[/]",
            expand=False,
        )
    )

    counts = summary["counts"]
    closed = [c for c, mode in summary["rollout"].items() if mode != "draft_only"]
    console.print(
        Panel(
            f"[bold]Events:[/]    {counts['total']}  "
            f"([green]{counts['ingested']} ingested[/], "
            f"[yellow]{counts['duplicate']} duplicate[/], "
            f"[red]{counts['error']} error[/])\n"
            f"[bold]Last event:[/] {summary['last_event_at'] or '—'}\n"
            f"[bold]Disabled:[/]  {', '.join(closed) if closed else '[dim]none[/]'}",
            title="[bold]Bridge[/]",
            expand=False,
        )
    )
