"""Concierge CLI entry point."""

from __future__ import annotations

import importlib.metadata
from typing import Annotated

import typer

from concierge.cli.catalog import catalog_app
from concierge.cli.chat import session_app
from concierge.cli.init import init_cmd
from concierge.cli.knowledge import (
    ask_cmd,
    doc_status_cmd,
    docs_cmd,
    ingest_cmd,
    reingest_cmd,
    tenant_app,
)
from concierge.cli.messaging import (
    delivery_status_cmd,
    inbound_cmd,
    retry_inbound_cmd,
    send_cmd,
)


def _installed_version() -> str:
    try:
        return importlib.metadata.version("concierge")
    except importlib.metadata.PackageNotFoundError:
        return "dev"


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"concierge {_installed_version()}")
        raise typer.Exit()


app = typer.Typer(
    name="concierge",
    help=(
        "Concierge: multi-tenant business assistant backend.\n\n"
        "  concierge ingest   Add knowledge for a tenant.\n"
        "  concierge ask      Preview an answer from the knowledge base.\n"
        "  concierge inbound  Process a messaging-provider callback."
    ),
    add_completion=False,
)


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
) -> None:
    """Concierge: multi-tenant business assistant backend."""


app.command("init")(init_cmd)
app.add_typer(tenant_app, name="tenant")
app.command("ingest")(ingest_cmd)
app.command("reingest")(reingest_cmd)
app.command("docs")(docs_cmd)
app.command("doc-status")(doc_status_cmd)
app.command("ask")(ask_cmd)
app.add_typer(session_app, name="session")
app.add_typer(catalog_app, name="catalog")
app.command("inbound")(inbound_cmd)
app.command("retry-inbound")(retry_inbound_cmd)
app.command("send")(send_cmd)
app.command("delivery-status")(delivery_status_cmd)


@app.command("version")
def version_cmd() -> None:
    """Show the installed Concierge version."""
    typer.echo(f"concierge {_installed_version()}")


if __name__ == "__main__":
    app()
