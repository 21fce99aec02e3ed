"""concierge catalog: extract and list structured products and services."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from concierge.cli.runtime import DEFAULT_DB, open_concierge
from concierge.db.models import CatalogItem

console = Console()

catalog_app = typer.Typer(
    help="Extract and list catalog items from a tenant's knowledge.", no_args_is_help=True
)

_DbOption = Annotated[Path, typer.Option("--db", help="Path to concierge.db.")]


@catalog_app.command("extract")
def catalog_extract_cmd(
    tenant_id: Annotated[str, typer.Argument(help="Tenant id.")],
    document: Annotated[
        list[str] | None,
        typer.Option("--doc", help="Only this document id. Repeatable; default all active."),
    ] = None,
    db: _DbOption = DEFAULT_DB,
    verbose: Annotated[bool, typer.Option("--verbose", "-v")] = False,
) -> None:
    """Extract catalog items from active documents. Re-running updates the same items."""
    with open_concierge(db, llm=True, verbose=verbose) as app:
        with Progress(SpinnerColumn(), TextColumn("{task.description}"), console=console) as progress:
            progress.add_task("Extracting catalog items…", total=None)
            run = app.extract_catalog_items(tenant_id, document or None)
    if run.document_count == 0:
        console.print("[dim]No active knowledge documents to extract from.[/]")
        return
    console.print(
        f"[green]✓[/] {len(run.items)} item(s) from {run.document_count} document(s) "
        f"[dim]({run.run_id})[/]"
    )
    if run.deactivated:
        console.print(f"[dim]{run.deactivated} item(s) no longer found were deactivated.[/]")


@catalog_app.command("list")
def catalog_list_cmd(
    tenant_id: Annotated[str, typer.Argument(help="Tenant id.")],
    all_items: Annotated[bool, typer.Option("--all", help="Include inactive items.")] = False,
    db: _DbOption = DEFAULT_DB,
) -> None:
    """List a tenant's catalog items by section."""
    with open_concierge(db) as app:
        items = app.list_catalog_items(tenant_id, include_inactive=all_items)
    if not items:
        console.print("[dim]No catalog items.[/]")
        return
    table = Table(show_header=True, header_style="bold")
    table.add_column("Section")
    table.add_column("Name")
    table.add_column("Price", justify="right")
    table.add_column("Status")
    for item in items:
        table.add_row(item.section, item.name, _format_price(item), item.status)
    console.print(table)


def _format_price(item: CatalogItem) -> str:
    if item.price_type == "free":
        return "free"
    if item.price is None:
        return "-"
    amount = f"{item.price:g}" + (f" {item.currency}" if item.currency else "")
    if item.price_type == "from":
        return f"from {amount}"
    return amount + {"hourly": "/h", "per_person": "/person"}.get(item.price_type, "")
