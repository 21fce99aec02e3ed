"""Tests for run_transaction and the bounded-batch ChunkedWriter."""

from __future__ import annotations

import pytest

from concierge.db.batch import ChunkedWriter
from concierge.db.transaction import run_transaction
from concierge.errors import (
    AlreadyExistsError,
    StoreError,
    TransactionPhaseError,
    ValidationError,
)


@pytest.fixture
def conn(tmp_db):
    tmp_db.execute("CREATE TABLE kv (k TEXT PRIMARY KEY, v INTEGER NOT NULL)")
    return tmp_db


def _count(conn) -> int:
    return conn.execute("SELECT COUNT(*) FROM kv").fetchone()[0]


# ------------------------------------------------------------------
# run_transaction
# ------------------------------------------------------------------


def test_commits_and_returns_result(conn):
    def body(tx):
        tx.insert("kv", {"k": "a", "v": 1})
        return "done"

    assert run_transaction(conn, body) == "done"
    assert _count(conn) == 1
    assert not conn.in_transaction


def test_read_then_write(conn):
    conn.execute("INSERT INTO kv VALUES ('a', 1)")

    def body(tx):
        row = tx.get("SELECT v FROM kv WHERE k = 'a'")
        tx.execute("UPDATE kv SET v = ? WHERE k = 'a'", (row["v"] + 1,))

    run_transaction(conn, body)
    assert conn.execute("SELECT v FROM kv").fetchone()[0] == 2


def test_read_after_write_raises_phase_error(conn):
    def body(tx):
        tx.insert("kv", {"k": "a", "v": 1})
        tx.query("SELECT * FROM kv")

    with pytest.raises(TransactionPhaseError):
        run_transaction(conn, body)
    assert _count(conn) == 0


def test_concierge_error_rolls_back_and_propagates(conn):
    def body(tx):
        tx.insert("kv", {"k": "a", "v": 1})
        raise ValidationError("nope")

    with pytest.raises(ValidationError, match="nope"):
        run_transaction(conn, body)
    assert _count(conn) == 0
    assert not conn.in_transaction


def test_duplicate_insert_raises_already_exists(conn):
    run_transaction(conn, lambda tx: tx.insert("kv", {"k": "a", "v": 1}))
    with pytest.raises(AlreadyExistsError):
        run_transaction(conn, lambda tx: tx.insert("kv", {"k": "a", "v": 2}))
    assert conn.execute("SELECT v FROM kv").fetchone()[0] == 1


def test_sqlite_error_wrapped_as_store_error(conn):
    with pytest.raises(StoreError):
        run_transaction(conn, lambda tx: tx.insert("kv", {"k": "a", "v": None}))
    assert not conn.in_transaction


def test_other_exception_rolls_back(conn):
    def body(tx):
        tx.insert("kv", {"k": "a", "v": 1})
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        run_transaction(conn, body)
    assert _count(conn) == 0


# ------------------------------------------------------------------
# ChunkedWriter
# ------------------------------------------------------------------


def _insert_op(key: str):
    return lambda tx: tx.insert("kv", {"k": key, "v": 0})


def test_writer_commits_at_ceiling(conn):
    checkpoints = []
    writer = ChunkedWriter(conn, 3, on_commit=lambda n, ops: checkpoints.append((n, ops)))
    for i in range(7):
        writer.add(_insert_op(f"k{i}"))

    assert checkpoints == [(1, 3), (2, 3)]
    assert writer.pending == 1
    assert _count(conn) == 6

    writer.flush()
    assert checkpoints[-1] == (3, 1)
    assert writer.commits == 3
    assert writer.ops_committed == 7
    assert _count(conn) == 7


def test_writer_flush_empty_is_noop(conn):
    writer = ChunkedWriter(conn, 3)
    assert writer.flush() == 0
    assert writer.commits == 0


def test_writer_context_manager_flushes_tail(conn):
    with ChunkedWriter(conn, 10) as writer:
        writer.add(_insert_op("a"))
        writer.add(_insert_op("b"))
    assert _count(conn) == 2
    assert writer.commits == 1


def test_writer_context_manager_discards_on_error(conn):
    with pytest.raises(RuntimeError):
        with ChunkedWriter(conn, 2) as writer:
            for key in ("a", "b", "c"):
                writer.add(_insert_op(key))
            raise RuntimeError("interrupted")
    # The first full commit survives; the buffered tail does not.
    assert _count(conn) == 2


def test_writer_failed_commit_is_atomic(conn):
    conn.execute("INSERT INTO kv VALUES ('dup', 1)")
    writer = ChunkedWriter(conn, 3)
    writer.add(_insert_op("x"))
    writer.add(_insert_op("dup"))
    with pytest.raises(AlreadyExistsError):
        writer.add(_insert_op("y"))
    assert conn.execute("SELECT COUNT(*) FROM kv WHERE k IN ('x', 'y')").fetchone()[0] == 0


def test_writer_rejects_zero_ceiling(conn):
    with pytest.raises(ValueError):
        ChunkedWriter(conn, 0)
