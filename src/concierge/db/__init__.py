"""Concierge database layer."""

from concierge.db.batch import ChunkedWriter
from concierge.db.connection import Database
from concierge.db.migrations import MIGRATIONS, run_migrations
from concierge.db.repository import KnowledgeRepository
from concierge.db.schema import initialize
from concierge.db.transaction import Transaction, run_transaction
from concierge.db.vectors import ensure_vec_table, model_to_slug, vec_table_name

__all__ = [
    "ChunkedWriter",
    "Database",
    "KnowledgeRepository",
    "initialize",
    "run_migrations",
    "MIGRATIONS",
    "Transaction",
    "run_transaction",
    "ensure_vec_table",
    "model_to_slug",
    "vec_table_name",
]
