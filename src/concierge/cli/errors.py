"""Concierge rich error messages with actionable feedback.

Every error shown to the user must contain:
  1. What went wrong (clear cause)
  2. The exact action the user should take to fix it

Usage:
    from concierge.cli.errors import err_no_db
    console.print(err_no_db(str(db)))
    raise typer.Exit(1)
"""

from __future__ import annotations

from concierge.errors import ConciergeError


def err_no_api_key(provider: str) -> str:
    """No API key for *provider*."""
    env_map = {
        "openai": "OPENAI_API_KEY",
        "anthropic": "ANTHROPIC_API_KEY",
        "cohere": "COHERE_API_KEY",
        "gemini": "GEMINI_API_KEY",
        "mistral": "MISTRAL_API_KEY",
        "azure": "AZURE_API_KEY",
    }
    env_var = env_map.get(provider.lower(), f"{provider.upper()}_API_KEY")
    return (
        f"[red]Error:[/] No API key for '{provider}'.\n"
        f"  Set:  export {env_var}=..."
    )


def err_no_db(db_path: str = "concierge.db") -> str:
    """No database at *db_path*."""
    return (
        f"[red]Error:[/] No database found at '{db_path}'.\n"
        "  Run:  concierge init"
    )


def err_tenant_not_found(detail: str) -> str:
    return (
        f"[red]Error:[/] {detail}\n"
        "  Run:  concierge tenant list  to see registered tenants, or\n"
        "        concierge tenant add <id> --name <business name>"
    )


def err_document_limit(current: int, limit: int) -> str:
    return (
        f"[red]Error:[/] Document limit reached ({current}/{limit}).\n"
        "  Disable or remove a document, or raise limits.max_docs in concierge.yaml."
    )


def err_ingestion_failed(document_id: str, code: str, message: str) -> str:
    """Ingestion ran but the document ended up ``failed``."""
    return (
        f"[red]Error:[/] Ingestion failed ({code}): {message}\n"
        f"  Document '{document_id}' is marked failed.\n"
        f"  Fix the source, then run:  concierge reingest <tenant> {document_id}"
    )


def err_dimension_mismatch(expected: int, actual: int) -> str:
    return (
        f"[red]Error:[/] Embedding dimension mismatch.\n"
        f"  Index expects:  {expected}\n"
        f"  Model returns:  {actual}\n"
        "  Set embedding.dimensions in concierge.yaml to match the embedding model."
    )


def err_session_access_denied() -> str:
    return (
        "[red]Error:[/] You are not the owner of this session.\n"
        "  Pass the same --caller used with:  concierge session new"
    )


def err_messaging_credentials() -> str:
    return (
        "[red]Error:[/] Twilio credentials not found.\n"
        "  Set:  export TWILIO_ACCOUNT_SID=AC...\n"
        "        export TWILIO_AUTH_TOKEN=...\n"
        "  Or pass --dry-run to log messages instead of sending them."
    )


def err_generic(exc: ConciergeError) -> str:
    """Fallback for any other Concierge error: show its code and message."""
    return f"[red]Error ({exc.code}):[/] {exc}"
