"""Shared wiring for CLI commands: open the database, build the app, report errors."""

from __future__ import annotations

import os
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import typer
from rich.console import Console

from concierge.app import Concierge
from concierge.cli.errors import (
    err_dimension_mismatch,
    err_document_limit,
    err_generic,
    err_ingestion_failed,
    err_messaging_credentials,
    err_no_api_key,
    err_no_db,
    err_session_access_denied,
    err_tenant_not_found,
)
from concierge.config import ConciergeConfig, load_config
from concierge.db.connection import Database
from concierge.db.schema import initialize
from concierge.errors import (
    AccessDeniedError,
    ConciergeError,
    DimensionMismatchError,
    DocumentLimitError,
    IngestionError,
    ProviderError,
    TenantNotFoundError,
)
from concierge.log import setup_logging
from concierge.messaging.gateway import ConsoleGateway, MessageGateway, TwilioGateway
from concierge.providers import (
    EmbeddingProvider,
    GenerationProvider,
    build_providers,
    validate_api_key,
)

console = Console()

DEFAULT_DB = Path("concierge.db")


def make_providers(
    config: ConciergeConfig, llm: bool
) -> tuple[EmbeddingProvider, GenerationProvider]:
    """Build the configured providers; with *llm*, require their API keys up front."""
    if llm:
        for model in (config.embedding.model, config.generation.model):
            try:
                validate_api_key(model)
            except ProviderError:
                provider = model.split("/")[0] if "/" in model else "openai"
                console.print(err_no_api_key(provider))
                raise typer.Exit(1)
    return build_providers(config)


def make_gateway(config: ConciergeConfig, sends: bool, dry_run: bool) -> MessageGateway:
    if dry_run:
        return ConsoleGateway()
    gateway = TwilioGateway(
        account_sid=config.messaging.account_sid,
        timeout=config.messaging.timeout,
        status_callback_url=config.messaging.status_callback_url,
    )
    if sends and not (gateway.account_sid and os.getenv("TWILIO_AUTH_TOKEN")):
        console.print(err_messaging_credentials())
        raise typer.Exit(1)
    return gateway


@contextmanager
def open_concierge(
    db: Path,
    *,
    llm: bool = False,
    sends: bool = False,
    dry_run: bool = False,
    verbose: bool = False,
) -> Iterator[Concierge]:
    """Yield a ``Concierge`` over *db*; Concierge errors become actionable messages + exit 1."""
    if not db.exists():
        console.print(err_no_db(str(db)))
        raise typer.Exit(1)
    setup_logging("INFO" if verbose else "WARNING", console=Console(stderr=True))
    config = load_config(db.resolve().parent)
    embedder, generator = make_providers(config, llm)
    gateway = make_gateway(config, sends, dry_run)

    conn = Database(db).connect()
    try:
        initialize(conn)
        yield Concierge(config, conn, embedder, generator, gateway)
    except ConciergeError as exc:
        report_error(exc)
        raise typer.Exit(1) from exc
    finally:
        conn.close()


def report_error(exc: ConciergeError) -> None:
    if isinstance(exc, IngestionError):
        console.print(err_ingestion_failed(exc.document_id, exc.code, str(exc)))
    elif isinstance(exc, DocumentLimitError):
        console.print(err_document_limit(exc.current, exc.limit))
    elif isinstance(exc, TenantNotFoundError):
        console.print(err_tenant_not_found(str(exc)))
    elif isinstance(exc, DimensionMismatchError):
        console.print(err_dimension_mismatch(exc.expected, exc.actual))
    elif isinstance(exc, AccessDeniedError):
        console.print(err_session_access_denied())
    else:
        console.print(err_generic(exc))
