"""Tests for vec table management."""

from __future__ import annotations

import pytest

from concierge.db.vectors import (
    check_dimensions,
    ensure_vec_table,
    model_to_slug,
    serialize,
    vec_table_dimensions,
    vec_table_name,
)
from concierge.errors import DimensionMismatchError


def test_model_to_slug():
    assert model_to_slug("gemini/text-embedding-004") == "gemini_text_embedding_004"
    assert model_to_slug("openai/text-embedding-3-small") == "openai_text_embedding_3_small"


def test_vec_table_name():
    assert vec_table_name("gemini_text_embedding_004") == "vec_chunks_gemini_text_embedding_004"


def test_ensure_vec_table_creates_with_dimension(tmp_db):
    table = ensure_vec_table(tmp_db, "test_model", 4)
    assert table == "vec_chunks_test_model"
    assert vec_table_dimensions(tmp_db, table) == 4


def test_ensure_vec_table_idempotent(tmp_db):
    ensure_vec_table(tmp_db, "test_model", 4)
    assert ensure_vec_table(tmp_db, "test_model", 4) == "vec_chunks_test_model"


def test_ensure_vec_table_rejects_other_dimension(tmp_db):
    ensure_vec_table(tmp_db, "test_model", 4)
    with pytest.raises(DimensionMismatchError) as excinfo:
        ensure_vec_table(tmp_db, "test_model", 8)
    assert excinfo.value.expected == 4
    assert excinfo.value.actual == 8


def test_ensure_vec_table_rejects_unsafe_slug(tmp_db):
    with pytest.raises(ValueError, match="model_slug"):
        ensure_vec_table(tmp_db, "bad; DROP TABLE tenants", 4)


def test_vec_table_dimensions_missing_table(tmp_db):
    assert vec_table_dimensions(tmp_db, "vec_chunks_nope") is None


def test_check_dimensions():
    check_dimensions([0.1, 0.2, 0.3, 0.4], 4)
    with pytest.raises(DimensionMismatchError, match="3 dimensions"):
        check_dimensions([0.1, 0.2, 0.3], 4)


def test_knn_query_rejects_wrong_length(tmp_db):
    """sqlite-vec itself refuses a query vector of another length."""
    table = ensure_vec_table(tmp_db, "test_model", 4)
    tmp_db.execute(
        f"INSERT INTO {table} (rowid, tenant_id, embedding) VALUES (1, 't1', ?)",
        (serialize([1.0, 0.0, 0.0, 0.0]),),
    )
    with pytest.raises(Exception):
        tmp_db.execute(
            f"SELECT rowid FROM {table} WHERE embedding MATCH ? AND k = 1 AND tenant_id = 't1'",
            (serialize([1.0, 0.0]),),
        ).fetchall()
