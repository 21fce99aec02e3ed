"""Knowledge base commands: tenants, ingestion, document status and answer preview."""

from __future__ import annotations

import mimetypes
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from concierge.cli.runtime import DEFAULT_DB, open_concierge
from concierge.db.models import Tenant
from concierge.errors import AlreadyExistsError
from concierge.ingest.extract import KnowledgeSource

console = Console()

tenant_app = typer.Typer(help="Register and list tenants.", no_args_is_help=True)

_DbOption = Annotated[Path, typer.Option("--db", help="Path to concierge.db.")]
_VerboseOption = Annotated[bool, typer.Option("--verbose", "-v", help="Show pipeline logs.")]

_IMAGE_EXTS = {".png", ".jpg", ".jpeg", ".webp", ".gif"}


# ------------------------------------------------------------------
# Tenants
# ------------------------------------------------------------------


@tenant_app.command("add")
def tenant_add_cmd(
    tenant_id: Annotated[str, typer.Argument(help="Tenant id.")],
    name: Annotated[str, typer.Option("--name", help="Business name.")],
    category: Annotated[str | None, typer.Option("--category", help="e.g. restaurants, hotels_stays.")] = None,
    description: Annotated[str | None, typer.Option("--description")] = None,
    location: Annotated[str | None, typer.Option("--location")] = None,
    channel: Annotated[
        str | None, typer.Option("--channel", help="E.164 number that receives this tenant's messages.")
    ] = None,
    db: _DbOption = DEFAULT_DB,
) -> None:
    """Register a tenant business profile."""
    with open_concierge(db) as app:
        try:
            app.repo.add_tenant(
                Tenant(
                    id=tenant_id,
                    name=name,
                    category=category,
                    description=description,
                    location=location,
                    channel_number=channel,
                )
            )
        except AlreadyExistsError:
            console.print(
                f"[red]Error:[/] Tenant '{tenant_id}' or channel '{channel}' already exists.\n"
                "  Run:  concierge tenant list"
            )
            raise typer.Exit(1)
    console.print(f"[green]✓[/] Tenant '{tenant_id}' added.")


@tenant_app.command("list")
def tenant_list_cmd(db: _DbOption = DEFAULT_DB) -> None:
    """List registered tenants."""
    with open_concierge(db) as app:
        tenants = app.repo.list_tenants()
    if not tenants:
        console.print("[dim]No tenants.[/]")
        return
    table = Table(show_header=True, header_style="bold")
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Category")
    table.add_column("Channel")
    for t in tenants:
        table.add_row(t.id, t.name, t.category or "", t.channel_number or "")
    console.print(table)


# ------------------------------------------------------------------
# Ingestion
# ------------------------------------------------------------------


def _build_source(name: str | None, text: str | None, url: str | None, file: Path | None) -> KnowledgeSource:
    given = [v for v in (text, url, file) if v]
    if len(given) != 1:
        console.print("[red]Error:[/] Pass exactly one of --text, --url or --file.")
        raise typer.Exit(1)
    if text:
        return KnowledgeSource("text", name or text[:40], text=text)
    if url:
        return KnowledgeSource("url", name or url, url=url)
    assert file is not None
    suffix = file.suffix.lower()
    if suffix == ".pdf":
        source_type = "pdf"
    elif suffix in _IMAGE_EXTS:
        source_type = "image"
    else:
        console.print(
            f"[red]Error:[/] Unsupported file type {suffix!r}.\n"
            "  Use a .pdf or an image (.png, .jpg, .webp, .gif), or pass text with --text."
        )
        raise typer.Exit(1)
    return KnowledgeSource(
        source_type,
        name or file.name,
        file_path=str(file),
        mime_type=mimetypes.guess_type(file.name)[0],
    )


def ingest_cmd(
    tenant_id: Annotated[str, typer.Argument(help="Tenant id.")],
    text: Annotated[str | None, typer.Option("--text", help="Inline text to ingest.")] = None,
    url: Annotated[str | None, typer.Option("--url", help="Public web page to ingest.")] = None,
    file: Annotated[Path | None, typer.Option("--file", help="PDF or image file.")] = None,
    name: Annotated[str | None, typer.Option("--name", help="Display name of the source.")] = None,
    db: _DbOption = DEFAULT_DB,
    verbose: _VerboseOption = False,
) -> None:
    """Ingest one knowledge source for a tenant."""
    source = _build_source(name, text, url, file)
    with open_concierge(db, llm=True, verbose=verbose) as app:
        with Progress(SpinnerColumn(), TextColumn("{task.description}"), console=console) as progress:
            progress.add_task(f"Ingesting {source.source_name}…", total=None)
            doc_id = app.ingest_knowledge_source(tenant_id, source)
        doc = app.repo.get_document(tenant_id, doc_id)
    console.print(f"[green]✓[/] Document {doc_id} active ({doc.chunk_count if doc else 0} chunks).")


def reingest_cmd(
    tenant_id: Annotated[str, typer.Argument(help="Tenant id.")],
    document_id: Annotated[str, typer.Argument(help="Document id.")],
    db: _DbOption = DEFAULT_DB,
    verbose: _VerboseOption = False,
) -> None:
    """Re-run ingestion of an active or failed document from its stored source."""
    with open_concierge(db, llm=True, verbose=verbose) as app:
        app.reingest_document(tenant_id, document_id)
        doc = app.repo.get_document(tenant_id, document_id)
    console.print(
        f"[green]✓[/] Document {document_id} re-ingested ({doc.chunk_count if doc else 0} chunks)."
    )


def docs_cmd(
    tenant_id: Annotated[str, typer.Argument(help="Tenant id.")],
    preview: Annotated[bool, typer.Option("--preview", help="Show preview chunks.")] = False,
    db: _DbOption = DEFAULT_DB,
) -> None:
    """List a tenant's knowledge documents, newest first."""
    with open_concierge(db) as app:
        views = app.list_knowledge_documents(tenant_id)
    if not views:
        console.print("[dim]No documents.[/]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Chunks", justify="right")
    table.add_column("Error")
    for view in views:
        d = view.document
        table.add_row(
            d.id,
            d.source_name,
            d.source_type,
            d.status,
            str(d.chunk_count),
            f"{d.error_code}: {d.error_message}" if d.error_code else "",
        )
    console.print(table)

    if preview:
        for view in views:
            if not view.preview_chunks:
                continue
            console.print(f"\n[bold]{view.document.source_name}[/]")
            for chunk in view.preview_chunks:
                console.print(f"  [{chunk.chunk_index}] {chunk.text[:120]}")


def doc_status_cmd(
    tenant_id: Annotated[str, typer.Argument(help="Tenant id.")],
    document_id: Annotated[str, typer.Argument(help="Document id.")],
    status: Annotated[str, typer.Argument(help="active or disabled.")],
    db: _DbOption = DEFAULT_DB,
) -> None:
    """Enable or disable a document; all of its chunks follow."""

    def _progress(commit: int, ops: int) -> None:
        console.print(f"  [dim]commit {commit}: {ops} chunk(s)[/]")

    with open_concierge(db) as app:
        changed = app.set_document_status(tenant_id, document_id, status, on_commit=_progress)
    console.print(f"[green]✓[/] Document {document_id} is {status} ({changed} chunk(s) updated).")


def ask_cmd(
    tenant_id: Annotated[str, typer.Argument(help="Tenant id.")],
    question: Annotated[str, typer.Argument(help="Question to answer from the knowledge base.")],
    db: _DbOption = DEFAULT_DB,
    verbose: _VerboseOption = False,
) -> None:
    """Preview how the assistant answers from a tenant's knowledge."""
    with open_concierge(db, llm=True, verbose=verbose) as app:
        result = app.retrieve_answer(tenant_id, question)
    console.print(result.answer)
    console.print(f"\n[dim]{result.chunk_count} chunk(s) used[/]")
    for source in result.sources:
        console.print(f"  [dim]· {source.source_name} ({source.score:.3f})[/]")
