"""Messaging commands: simulate provider callbacks and send idempotent messages."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from concierge.cli.runtime import DEFAULT_DB, open_concierge
from concierge.messaging.service import OutboundPayload, StatusCallback
from concierge.messaging.store import InboundPayload

console = Console()

_DbOption = Annotated[Path, typer.Option("--db", help="Path to concierge.db.")]
_DryRunOption = Annotated[
    bool, typer.Option("--dry-run", help="Log outbound messages instead of sending them.")
]


def inbound_cmd(
    message_sid: Annotated[str, typer.Argument(help="Provider message sid.")],
    from_e164: Annotated[str, typer.Option("--from", help="Sender E.164 number.")],
    to_e164: Annotated[str, typer.Option("--to", help="Tenant channel E.164 number.")],
    body: Annotated[str, typer.Option("--body", help="Message text.")] = "",
    media: Annotated[
        list[str] | None, typer.Option("--media", help="Attachment URL. Repeatable.")
    ] = None,
    db: _DbOption = DEFAULT_DB,
    dry_run: _DryRunOption = False,
    verbose: Annotated[bool, typer.Option("--verbose", "-v")] = False,
) -> None:
    """Deliver an inbound provider callback. Redelivering a sid is a no-op."""
    with open_concierge(db, llm=True, sends=True, dry_run=dry_run, verbose=verbose) as app:
        payload = InboundPayload(
            from_e164=from_e164, to_e164=to_e164, body=body, media_urls=media or []
        )
        outcome = app.handle_inbound_provider_callback(message_sid, payload)
        reply = app.messages.get_outbound_by_idempotency(f"reply:{message_sid}")
    if not outcome.created:
        console.print(f"[yellow]Duplicate:[/] {message_sid} was already received.")
        return
    console.print(f"[green]✓[/] Processed into session {outcome.thread_id}.")
    if reply is not None:
        console.print(f"\n{reply.body}\n\n[dim]reply {reply.id}: {reply.status}[/]")


def retry_inbound_cmd(
    message_sid: Annotated[str, typer.Argument(help="Provider message sid.")],
    db: _DbOption = DEFAULT_DB,
    dry_run: _DryRunOption = False,
) -> None:
    """Requeue a failed inbound message and process it again."""
    with open_concierge(db, llm=True, sends=True, dry_run=dry_run) as app:
        outcome = app.retry_inbound(message_sid)
    if not outcome.processed:
        console.print(f"[yellow]Not retried:[/] {message_sid} is not in the failed state.")
        raise typer.Exit(1)
    console.print(f"[green]✓[/] Processed into session {outcome.thread_id}.")


def send_cmd(
    to_e164: Annotated[str, typer.Argument(help="Recipient E.164 number.")],
    body: Annotated[str, typer.Argument(help="Message text.")],
    key: Annotated[
        str | None,
        typer.Option("--key", help="Idempotency key. Derived from recipient and hour if omitted."),
    ] = None,
    correlation_id: Annotated[str | None, typer.Option("--correlation-id")] = None,
    template: Annotated[str | None, typer.Option("--template")] = None,
    db: _DbOption = DEFAULT_DB,
    dry_run: _DryRunOption = False,
) -> None:
    """Send an outbound message at most once per idempotency key."""
    with open_concierge(db, sends=True, dry_run=dry_run) as app:
        result = app.send_outbound_message(
            key,
            OutboundPayload(
                to_e164=to_e164,
                body=body,
                correlation_id=correlation_id,
                template_key=template,
            ),
        )
    message = result.message
    if result.dispatched:
        console.print(f"[green]✓[/] Sent {message.id} ({message.provider_sid}).")
    else:
        console.print(
            f"[yellow]Already sent:[/] key {message.idempotency_key} → {message.id} ({message.status})."
        )


def delivery_status_cmd(
    provider_sid: Annotated[str, typer.Argument(help="Provider message sid.")],
    status: Annotated[str, typer.Argument(help="Provider delivery status.")],
    error_code: Annotated[str | None, typer.Option("--error-code")] = None,
    error_message: Annotated[str | None, typer.Option("--error-message")] = None,
    db: _DbOption = DEFAULT_DB,
) -> None:
    """Apply a provider delivery-status callback."""
    with open_concierge(db) as app:
        changed = app.handle_status_callback(
            StatusCallback(
                provider_sid=provider_sid,
                status=status,
                error_code=error_code,
                error_message=error_message,
            )
        )
    console.print("[green]✓[/] Status applied." if changed else "[dim]No change.[/]")
