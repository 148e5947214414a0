"""recall init — create the global config and an empty store.

Creates:
  ~/.recall/config.yaml   — global config (created once, mode 0o600)
  <db path>               — SQLite store with the current schema
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from recall.cli.context import cli_errors, db_path_for, load_cli_config
from recall.config import ensure_global_config
from recall.db.connection import Database
from recall.db.schema import CURRENT_VERSION

console = Console()


def init_cmd(
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to the recall database (default: from config)."),
    ] = None,
    skip_config: Annotated[
        bool,
        typer.Option("--skip-config", hidden=True, help="Do not touch ~/.recall (for testing)."),
    ] = False,
) -> None:
    """Create the recall store (idempotent; existing data is preserved)."""
    if not skip_config:
        cfg_path = ensure_global_config()
        console.print(f"  [green]✓[/] {cfg_path}")

    cfg = load_cli_config()
    db_path = db_path_for(db, cfg)
    existed = db_path.exists()

    with cli_errors():
        Database(
            db_path,
            busy_timeout_ms=cfg.store.busy_timeout_ms,
            lock_retries=cfg.store.lock_retries,
        ).ensure_schema()

    verb = "up to date" if existed else "created"
    console.print(f"  [green]✓[/] {db_path} {verb} (schema v{CURRENT_VERSION})")
    if not existed:
        console.print(
            "\n[bold]Next:[/]\n"
            "  export OPENAI_API_KEY=sk-...\n"
            "  recall ingest --file messages.jsonl"
        )
