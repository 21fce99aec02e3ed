"""Per-model sqlite-vec index management.

One ``vec0`` table per embedding model, partitioned by tenant id and using
cosine distance. The index holds exactly the chunks whose status is
``active``; disabling a chunk removes its row, enabling re-inserts it from
the embedding stored on ``knowledge_chunks``.
"""

from __future__ import annotations

import re
import sqlite3

import sqlite_vec

from concierge.errors import DimensionMismatchError

_DIM_RE = re.compile(r"float\[(\d+)\]")


def model_to_slug(model: str) -> str:
    """Convert a provider/model string to a valid table name suffix.

    Examples:
        "gemini/text-embedding-004" -> "gemini_text_embedding_004"
        "openai/text-embedding-3-small" -> "openai_text_embedding_3_small"
    """
    return re.sub(r"[^a-z0-9]", "_", model.lower())


def vec_table_name(model_slug: str) -> str:
    """Return the full vec table name for a model slug."""
    return f"vec_chunks_{model_slug}"


def vec_table_dimensions(conn: sqlite3.Connection, table: str) -> int | None:
    """Return the vector dimension declared for *table*, or None if it doesn't exist."""
    row = conn.execute(
        "SELECT sql FROM sqlite_master WHERE type='table' AND name=?", (table,)
    ).fetchone()
    if row is None:
        return None
    match = _DIM_RE.search(row[0] or "")
    return int(match.group(1)) if match else None


def ensure_vec_table(conn: sqlite3.Connection, model_slug: str, dimensions: int) -> str:
    """Create vec_chunks_{model_slug} virtual table if it doesn't already exist.

    Args:
        conn: Active database connection (sqlite-vec must be loaded).
        model_slug: Sanitized model identifier (use model_to_slug() to generate).
        dimensions: Embedding vector dimensions (e.g. 768 for text-embedding-004).

    Returns:
        The table name (vec_chunks_{model_slug}).

    Raises:
        DimensionMismatchError: If the table exists with a different dimension.
    """
    if not re.fullmatch(r"[a-z0-9_]+", model_slug):
        raise ValueError(
            f"Invalid model_slug '{model_slug}'; use model_to_slug() to sanitize."
        )
    if dimensions < 1:
        raise ValueError(f"dimensions must be >= 1, got {dimensions}")

    table = vec_table_name(model_slug)
    existing = vec_table_dimensions(conn, table)

    if existing is None:
        conn.execute(
            f"CREATE VIRTUAL TABLE IF NOT EXISTS {table} USING vec0("
            f"tenant_id text partition key, "
            f"embedding float[{dimensions}] distance_metric=cosine)"
        )
    elif existing != dimensions:
        raise DimensionMismatchError(expected=existing, actual=dimensions)

    return table


def check_dimensions(vector: list[float], expected: int) -> None:
    """Raise DimensionMismatchError unless ``len(vector) == expected``."""
    if len(vector) != expected:
        raise DimensionMismatchError(expected=expected, actual=len(vector))


def serialize(vector: list[float]) -> bytes:
    """Pack a vector into the compact float32 blob sqlite-vec reads natively."""
    return sqlite_vec.serialize_float32(vector)
