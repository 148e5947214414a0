"""Shared wiring for CLI commands: config → database → services."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

import typer
from rich.console import Console

from recall.bridge.event_log import BridgeEventLog
from recall.bridge.service import ChannelBridge
from recall.cli.errors import err_config, render_error
from recall.config import ConfigError, RecallConfig, load_config
from recall.db.connection import Database
from recall.embedding.provider import EmbeddingProvider
from recall.errors import RecallError
from recall.identity.registry import IdentityRegistry
from recall.store.document_store import DocumentStore

console = Console()


@dataclass
class Services:
    cfg: RecallConfig
    db: Database
    embedder: EmbeddingProvider
    registry: IdentityRegistry
    store: DocumentStore
    events: BridgeEventLog
    bridge: ChannelBridge


def load_cli_config() -> RecallConfig:
    try:
        return load_config()
    except ConfigError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1) from exc


def db_path_for(db: Path | None, cfg: RecallConfig) -> Path:
    """--db flag wins over config/env."""
    return Path(db) if db is not None else Path(cfg.store.path).expanduser()


def open_services(db: Path | None) -> Services:
    """Build every service against the database chosen by --db or the config."""
    cfg = load_cli_config()
    database = Database(
        db_path_for(db, cfg),
        busy_timeout_ms=cfg.store.busy_timeout_ms,
        lock_retries=cfg.store.lock_retries,
    )
    embedder = EmbeddingProvider.from_config(cfg.embedding)
    registry = IdentityRegistry(database)
    store = DocumentStore(database, embedder, cfg.retrieval, registry=registry)
    events = BridgeEventLog(database)
    bridge = ChannelBridge(store, registry, events, cfg.bridge)
    return Services(
        cfg=cfg,
        db=database,
        embedder=embedder,
        registry=registry,
        store=store,
        events=events,
        bridge=bridge,
    )


@contextmanager
def cli_errors() -> Iterator[None]:
    """Render recall errors (and rejected input) as actionable messages and exit 1."""
    try:
        yield
    except RecallError as exc:
        console.print(render_error(exc))
        raise typer.Exit(1) from exc
    except ValueError as exc:
        console.print(f"[red]Error:[/] {exc}")
        raise typer.Exit(1) from exc
