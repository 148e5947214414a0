"""recall contacts CLI commands.

Commands:
  recall contacts list                      — every contact, most recently contacted first
  recall contacts show <identifier>         — one contact with aliases, notes, suggestions
  recall contacts merge <target> <source>   — fold one contact into another
  recall contacts note <identifier> <text>  — attach a note
  recall contacts accept/decline <identifier> <suggestion-id>
  recall contacts kyc --file profile.json   — stage extracted facts as suggestions
  recall contacts stats                     — contact counts per channel
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from recall.cli.context import cli_errors, open_services
from recall.cli.errors import err_file_not_found, err_invalid_json, err_not_found
from recall.db.models import Contact
from recall.identity.kyc import merge_profile
from recall.workqueue import WorkQueue

console = Console()

contacts_app = typer.Typer(
    name="contacts",
    help="Manage the contact registry (list, show, merge, notes, suggestions).",
    add_completion=False,
)

_DbOption = Annotated[
    Path | None,
    typer.Option("--db", help="Path to the recall database (default: from config)."),
]


@contacts_app.command("list")
def contacts_list_cmd(db: _DbOption = None) -> None:
    """List all contacts."""
    with cli_errors():
        contacts = open_services(db).registry.list_contacts()

    if not contacts:
        console.print("[yellow]No contacts yet.[/]")
        raise typer.Exit(0)

    table = Table(title="Contacts", show_header=True, header_style="bold")
    table.add_column("Name", style="bold")
    table.add_column("Handle", style="cyan")
    table.add_column("Aliases")
    table.add_column("Last contacted", style="dim")
    for contact in contacts:
        table.add_row(
            contact.display_name,
            contact.handle,
            str(len(contact.aliases())),
            contact.last_contacted or "",
        )
    console.print(table)


@contacts_app.command("show")
def contacts_show_cmd(
    identifier: Annotated[str, typer.Argument(help="Handle, alias or display name.")],
    db: _DbOption = None,
) -> None:
    """Show one contact."""
    with cli_errors():
        contact = open_services(db).registry.resolve(identifier)
    if contact is None:
        console.print(err_not_found(f"no contact matches '{identifier}'"))
        raise typer.Exit(1)
    console.print(_contact_panel(contact))


@contacts_app.command("merge")
def contacts_merge_cmd(
    target: Annotated[str, typer.Argument(help="Contact that survives.")],
    source: Annotated[str, typer.Argument(help="Contact folded in and deleted.")],
    yes: Annotated[bool, typer.Option("--yes", "-y", help="Skip confirmation prompt.")] = False,
    db: _DbOption = None,
) -> None:
    """Merge SOURCE into TARGET: aliases, notes and suggestions move over."""
    with cli_errors():
        registry = open_services(db).registry
        found = []
        for identifier in (target, source):
            contact = registry.resolve(identifier)
            if contact is None:
                console.print(err_not_found(f"no contact matches '{identifier}'"))
                raise typer.Exit(1)
            found.append(contact)
        keep, drop = found

        console.print(
            f"\nMerge [bold]{drop.display_name}[/] ({drop.handle}) "
            f"into [bold]{keep.display_name}[/] ({keep.handle})"
        )
        if not yes and not typer.confirm("Confirm merge?", default=False):
            console.print("[dim]Cancelled.[/]")
            raise typer.Exit(0)

        merged = registry.merge(keep.id, drop.id)
    console.print(f"[green]✓[/] Merged — {merged.display_name} now has {len(merged.aliases())} aliases")


@contacts_app.command("note")
def contacts_note_cmd(
    identifier: Annotated[str, typer.Argument(help="Handle, alias or display name.")],
    text: Annotated[str, typer.Argument(help="Note text.")],
    db: _DbOption = None,
) -> None:
    """Attach a free-text note to a contact."""
    with cli_errors():
        note = open_services(db).registry.add_note(identifier, text)
    console.print(f"[green]✓[/] Note added ({note.id})")


@contacts_app.command("accept")
def contacts_accept_cmd(
    identifier: Annotated[str, typer.Argument(help="Handle, alias or display name.")],
    suggestion_id: Annotated[str, typer.Argument(help="Pending suggestion id.")],
    db: _DbOption = None,
) -> None:
    """Accept a pending profile suggestion."""
    with cli_errors():
        open_services(db).registry.accept_suggestion(identifier, suggestion_id)
    console.print(f"[green]✓[/] Accepted {suggestion_id}")


@contacts_app.command("decline")
def contacts_decline_cmd(
    identifier: Annotated[str, typer.Argument(help="Handle, alias or display name.")],
    suggestion_id: Annotated[str, typer.Argument(help="Pending suggestion id.")],
    db: _DbOption = None,
) -> None:
    """Decline a pending profile suggestion; it will not be staged again."""
    with cli_errors():
        open_services(db).registry.decline_suggestion(identifier, suggestion_id)
    console.print(f"[green]✓[/] Declined {suggestion_id}")


@contacts_app.command("kyc")
def contacts_kyc_cmd(
    file: Annotated[
        Path,
        typer.Option("--file", "-f", help="JSON profile: {handle, emails, phones, links, ...}."),
    ],
    db: _DbOption = None,
) -> None:
    """Stage the facts of an extracted profile as pending suggestions."""
    if not file.exists():
        console.print(err_file_not_found(str(file)))
        raise typer.Exit(1)
    try:
        profile = json.loads(file.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        console.print(err_invalid_json(str(file), exc.msg, exc.lineno))
        raise typer.Exit(1) from exc
    if not isinstance(profile, dict):
        console.print(err_invalid_json(str(file), "expected a JSON object"))
        raise typer.Exit(1)
    handle = str(profile.get("handle") or "")

    with cli_errors():
        services = open_services(db)
        with WorkQueue(
            max_size=services.cfg.queue.max_size, workers=services.cfg.queue.workers
        ) as work:
            merge_profile(services.registry, profile, queue=work)
            work.join()
        contact = services.registry.resolve(handle)

    if contact is None:
        console.print(err_not_found(f"no contact matches '{handle}'"))
        raise typer.Exit(1)
    if work.failures:
        console.print(f"[yellow]⚠[/]  {work.failures} suggestions could not be staged (see log)")
    console.print(
        f"[green]✓[/] {len(contact.pending_suggestions)} pending suggestions for {contact.display_name}"
    )


@contacts_app.command("stats")
def contacts_stats_cmd(db: _DbOption = None) -> None:
    """Count contacts per channel."""
    with cli_errors():
        stats = open_services(db).registry.channel_stats()

    table = Table(title=f"Contacts: {stats['total']}", show_header=True, header_style="bold")
    table.add_column("Channel", style="cyan")
    table.add_column("Contacts", justify="right")
    for channel, count in sorted(stats["by_channel"].items(), key=lambda kv: (-kv[1], kv[0])):
        table.add_row(channel, str(count))
    console.print(table)


def _contact_panel(contact: Contact) -> Panel:
    lines = [f"[bold]Handle:[/]    {contact.handle}", f"[bold]Id:[/]        {contact.id}"]
    for label, value in (
        ("Profession", contact.profession),
        ("Relation", contact.relationship),
        ("Company", contact.company),
        ("LinkedIn", contact.linkedin_url),
        ("Last seen", contact.last_contacted),
    ):
        if value:
            lines.append(f"[bold]{label + ':':<10}[/] {value}")
    if contact.channels:
        lines.append("\n[bold]Aliases[/]")
        for kind, values in sorted(contact.channels.items()):
            lines.extend(f"  {kind:<6} {value}" for value in values)
    if contact.notes:
        lines.append("\n[bold]Notes[/]")
        lines.extend(f"  [dim]{n.id}[/]  {n.text}" for n in contact.notes)
    pending = contact.pending_suggestions
    if pending:
        lines.append("\n[bold]Pending suggestions[/]")
        lines.extend(f"  [dim]{s.id}[/]  {s.type}: {s.content}" for s in pending)
    return Panel("\n".join(lines), title=f"[bold]{contact.display_name}[/]", expand=False)
