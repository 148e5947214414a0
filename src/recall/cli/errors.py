"""recall rich error messages: actionable feedback.

Every error shown to the user must contain:
  1. What went wrong (clear cause)
  2. The exact action the user should take to fix it

Usage:
    from recall.cli.errors import err_no_db
    console.print(err_no_db(path))
    raise typer.Exit(1)
"""

from __future__ import annotations

from recall.errors import (
    DeniedChannel,
    MalformedEvent,
    ModelUnavailable,
    NotFound,
    OperationTimeout,
    PolicyDenied,
    RecallError,
    StoreUnavailable,
)


def err_no_db(db_path: str) -> str:
    """No database at *db_path*."""
    return (
        f"[red]Error:[/] No database found at '{db_path}'.\n"
        "  Run:  recall init"
    )


def err_file_not_found(path: str) -> str:
    return f"[red]Error:[/] File not found: '{path}'"


def err_invalid_json(path: str, detail: str, line: int | None = None) -> str:
    """Input file is not valid JSON / JSONL."""
    where = f"{path}:{line}" if line is not None else path
    return (
        f"[red]Error:[/] Invalid JSON in '{where}': {detail}\n"
        "  Each line of a .jsonl file must be one object: "
        '{"text": "...", "source": "...", "path": "..."}'
    )


def err_config(detail: str) -> str:
    return f"[red]Config error:[/] {detail}"


def err_model_unavailable(detail: str) -> str:
    """Embedding model could not be loaded or called."""
    return (
        f"[red]Error:[/] Embedding model unavailable.\n"
        f"  {detail}\n"
        "  Check the provider API key (e.g. export OPENAI_API_KEY=sk-...)\n"
        "  or set embedding.model in ~/.recall/config.yaml."
    )


def err_store_unavailable(detail: str) -> str:
    return (
        f"[red]Error:[/] Store unavailable: {detail}\n"
        "  Another process may hold a long write lock. Retry, or check the --db path."
    )


def err_not_found(detail: str) -> str:
    return f"[yellow]Not found:[/] {detail}"


def err_timeout(detail: str) -> str:
    return (
        f"[red]Error:[/] Operation timed out: {detail}\n"
        "  Raise embedding.timeout in ~/.recall/config.yaml for slow providers."
    )


def err_malformed_event(detail: str) -> str:
    return (
        f"[red]Error:[/] Malformed inbound event: {detail}\n"
        "  Expected {channel, peer, text, messageId?, timestamp?} or {\"events\": [...]}."
    )


def err_policy_denied(denied: list[DeniedChannel]) -> str:
    """Bridge inbound disabled for one or more channels in the batch."""
    rows = "\n".join(
        f"    #{d.index}  {d.channel}  (inbound_mode: {d.inbound_mode})" for d in denied
    )
    return (
        "[red]Error:[/] Channel bridge inbound is disabled for one or more channels.\n"
        f"{rows}\n"
        "  Nothing was ingested. Enable a channel in recall.yaml:\n"
        "    bridge:\n"
        "      channels:\n"
        "        <channel>: {inbound_mode: draft_only}"
    )


def render_error(exc: RecallError) -> str:
    """Pick the message for a recall error."""
    if isinstance(exc, PolicyDenied):
        return err_policy_denied(exc.denied)
    if isinstance(exc, ModelUnavailable):
        return err_model_unavailable(exc.detail)
    if isinstance(exc, StoreUnavailable):
        return err_store_unavailable(exc.detail)
    if isinstance(exc, NotFound):
        return err_not_found(exc.detail)
    if isinstance(exc, OperationTimeout):
        return err_timeout(exc.detail)
    if isinstance(exc, MalformedEvent):
        return err_malformed_event(exc.detail)
    return f"[red]Error:[/] {exc.detail or exc}"
