"""Logging setup: stdlib loggers rendered through rich.

Modules log with ``logging.getLogger(__name__)`` and pass identifiers via
``extra=``; the formatter appends any known context fields as ``key=value``.
"""

from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler

CONTEXT_FIELDS: tuple[str, ...] = (
    "tenant_id",
    "document_id",
    "session_id",
    "message_sid",
    "idempotency_key",
    "outbound_id",
    "chunk_count",
    "latency_ms",
    "error_code",
)


class ContextFormatter(logging.Formatter):
    """Append structured context attributes present on the record."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        pairs = [
            f"{name}={getattr(record, name)}"
            for name in CONTEXT_FIELDS
            if getattr(record, name, None) is not None
        ]
        return f"{base} [{' '.join(pairs)}]" if pairs else base


def setup_logging(level: int | str = logging.WARNING, console: Console | None = None) -> None:
    """Attach a single RichHandler to the ``concierge`` logger (idempotent)."""
    logger = logging.getLogger("concierge")
    logger.setLevel(level)
    for existing in list(logger.handlers):
        if isinstance(existing, RichHandler):
            logger.removeHandler(existing)
    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
    )
    handler.setFormatter(ContextFormatter("%(message)s"))
    logger.addHandler(handler)
    logger.propagate = False
