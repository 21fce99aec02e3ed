"""concierge session: public chat sessions from the terminal."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from concierge.cli.runtime import DEFAULT_DB, open_concierge
from concierge.db.models import Lead

console = Console()

session_app = typer.Typer(help="Open chat sessions and send messages.", no_args_is_help=True)

_DbOption = Annotated[Path, typer.Option("--db", help="Path to concierge.db.")]
_CallerOption = Annotated[str, typer.Option("--caller", help="Caller identity (session owner).")]


@session_app.command("new")
def session_new_cmd(
    tenant_id: Annotated[str, typer.Argument(help="Tenant id.")],
    caller: _CallerOption,
    db: _DbOption = DEFAULT_DB,
) -> None:
    """Open an anonymous public session owned by --caller."""
    with open_concierge(db) as app:
        new = app.create_chat_session(tenant_id, caller, anonymous=True)
    console.print(new.greeting)
    console.print(f"\n[dim]session: {new.session.id}[/]")


@session_app.command("send")
def session_send_cmd(
    tenant_id: Annotated[str, typer.Argument(help="Tenant id.")],
    session_id: Annotated[str, typer.Argument(help="Session id.")],
    text: Annotated[str, typer.Argument(help="Message text.")],
    caller: _CallerOption,
    db: _DbOption = DEFAULT_DB,
    verbose: Annotated[bool, typer.Option("--verbose", "-v")] = False,
) -> None:
    """Send one message and print the assistant's reply."""
    with open_concierge(db, llm=True, verbose=verbose) as app:
        result = app.process_chat_message(tenant_id, session_id, caller, text)
        cap = app.config.limits.max_messages_per_session
    console.print(result.text)
    style = "yellow" if result.limit_reached else "dim"
    console.print(f"\n[{style}]{result.message_count}/{cap} messages · {result.latency_ms} ms[/]")


@session_app.command("lead")
def session_lead_cmd(
    tenant_id: Annotated[str, typer.Argument(help="Tenant id.")],
    session_id: Annotated[str, typer.Argument(help="Session id.")],
    caller: _CallerOption,
    name: Annotated[str, typer.Option("--name")],
    phone: Annotated[str, typer.Option("--phone", help="E.164 phone number.")],
    email: Annotated[str | None, typer.Option("--email")] = None,
    message: Annotated[str | None, typer.Option("--message")] = None,
    db: _DbOption = DEFAULT_DB,
) -> None:
    """Leave contact details on a session."""
    with open_concierge(db) as app:
        lead_id = app.capture_lead(
            tenant_id,
            session_id,
            caller,
            Lead(
                id="",
                tenant_id=tenant_id,
                session_id=session_id,
                name=name,
                phone_e164=phone,
                email=email,
                message=message,
            ),
        )
    console.print(f"[green]✓[/] Lead {lead_id} captured.")


@session_app.command("list")
def session_list_cmd(
    tenant_id: Annotated[str, typer.Argument(help="Tenant id.")],
    kind: Annotated[str | None, typer.Option("--kind", help="public or whatsapp.")] = None,
    limit: Annotated[int, typer.Option("--limit", help="Most recent sessions to show.")] = 20,
    db: _DbOption = DEFAULT_DB,
) -> None:
    """List a tenant's sessions, most recently active first."""
    with open_concierge(db) as app:
        sessions = app.list_chat_sessions(tenant_id, kind=kind, limit=limit)
    if not sessions:
        console.print("[dim]No sessions.[/]")
        return
    table = Table(show_header=True, header_style="bold")
    table.add_column("ID")
    table.add_column("Kind")
    table.add_column("Owner")
    table.add_column("Messages", justify="right")
    table.add_column("Lead")
    table.add_column("Last message")
    for s in sessions:
        table.add_row(
            s.id,
            s.kind,
            s.owner,
            str(s.message_count),
            "yes" if s.lead_captured else "",
            s.last_message or "",
        )
    console.print(table)
