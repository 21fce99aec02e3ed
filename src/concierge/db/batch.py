"""Bounded-batch writer: large write sets spill into sequential atomic commits."""

from __future__ import annotations

import sqlite3
from typing import Callable

from concierge.db.transaction import Transaction, run_transaction

WriteOp = Callable[[Transaction], None]


class ChunkedWriter:
    """Buffer write operations and commit them at most *max_ops_per_commit* at a time.

    Every commit is its own ``run_transaction``, so an interrupted run leaves a
    prefix of whole commits behind and never a torn one. Operations must be
    write-only; a read inside an op would land in the write phase.

    Usable as a context manager: a clean exit flushes the tail, an exception
    discards it.

    Args:
        conn: Open connection in autocommit mode.
        max_ops_per_commit: Hard ceiling on operations per commit (>= 1).
        on_commit: Optional checkpoint callback ``(commit_number, ops_in_commit)``
            invoked after each successful commit.
    """

    def __init__(
        self,
        conn: sqlite3.Connection,
        max_ops_per_commit: int,
        on_commit: Callable[[int, int], None] | None = None,
    ) -> None:
        if max_ops_per_commit < 1:
            raise ValueError("max_ops_per_commit must be >= 1")
        self._conn = conn
        self._max_ops = max_ops_per_commit
        self._on_commit = on_commit
        self._pending: list[WriteOp] = []
        self.commits = 0
        self.ops_committed = 0

    @property
    def pending(self) -> int:
        return len(self._pending)

    def add(self, op: WriteOp) -> None:
        """Queue *op*; commits automatically once the ceiling is reached."""
        self._pending.append(op)
        if len(self._pending) >= self._max_ops:
            self.flush()

    def flush(self) -> int:
        """Commit everything buffered. Returns the number of ops committed."""
        if not self._pending:
            return 0
        ops, self._pending = self._pending, []

        def _apply(tx: Transaction) -> None:
            for op in ops:
                op(tx)

        run_transaction(self._conn, _apply)
        self.commits += 1
        self.ops_committed += len(ops)
        if self._on_commit is not None:
            self._on_commit(self.commits, len(ops))
        return len(ops)

    def __enter__(self) -> ChunkedWriter:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None:
            self.flush()
        else:
            self._pending.clear()
