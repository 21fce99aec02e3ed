"""Serializable read-then-write transactions on a shared SQLite connection.

``run_transaction`` opens ``BEGIN IMMEDIATE`` so the write lock is taken up
front: two callers racing on the same session counter or idempotency key are
serialized by SQLite rather than by application-level check-then-write.

A ``Transaction`` is two-phase. All reads happen first; the first write
switches it into the write phase, after which any read raises
``TransactionPhaseError``. Decisions are therefore always made on a snapshot
that no write in the same transaction has touched.
"""

from __future__ import annotations

import logging
import sqlite3
from typing import Any, Callable, TypeVar

from concierge.errors import AlreadyExistsError, ConciergeError, StoreError, TransactionPhaseError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Transaction:
    """Handle passed to the body of ``run_transaction``."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        self._writing = False

    @property
    def writing(self) -> bool:
        """True once the first write has been issued."""
        return self._writing

    # ------------------------------------------------------------------
    # Phase 1: reads
    # ------------------------------------------------------------------

    def get(self, sql: str, params: tuple | list = ()) -> sqlite3.Row | None:
        """Return the first row of *sql*, or None."""
        self._check_read_phase()
        return self._conn.execute(sql, params).fetchone()

    def query(self, sql: str, params: tuple | list = ()) -> list[sqlite3.Row]:
        """Return all rows of *sql*."""
        self._check_read_phase()
        return self._conn.execute(sql, params).fetchall()

    # ------------------------------------------------------------------
    # Phase 2: writes
    # ------------------------------------------------------------------

    def insert(self, table: str, values: dict[str, Any]) -> int:
        """Insert-only write. Never overwrites.

        Raises:
            AlreadyExistsError: If the primary key (or a unique key) is taken.

        Returns:
            The rowid of the inserted row.
        """
        self._writing = True
        columns = ", ".join(values)
        placeholders = ", ".join("?" * len(values))
        try:
            cur = self._conn.execute(
                f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
                tuple(values.values()),
            )
        except sqlite3.IntegrityError as exc:
            message = str(exc)
            if "UNIQUE" in message or "PRIMARY KEY" in message:
                raise AlreadyExistsError(f"{table}: {message}") from exc
            raise
        return cur.lastrowid

    def execute(self, sql: str, params: tuple | list = ()) -> sqlite3.Cursor:
        """Issue a write statement (UPDATE, DELETE, upsert).

        The returned cursor may be used to read the statement's own
        ``RETURNING`` rows or ``rowcount``.
        """
        self._writing = True
        return self._conn.execute(sql, params)

    def _check_read_phase(self) -> None:
        if self._writing:
            raise TransactionPhaseError(
                "Read issued after the transaction started writing; "
                "collect all reads before the first write."
            )


def run_transaction(conn: sqlite3.Connection, fn: Callable[[Transaction], T]) -> T:
    """Run *fn* inside ``BEGIN IMMEDIATE`` and commit, or roll back on any error.

    Concierge errors raised by *fn* propagate unchanged after rollback.
    Raw ``sqlite3`` errors are logged and re-raised as ``StoreError``.
    """
    try:
        conn.execute("BEGIN IMMEDIATE")
    except sqlite3.Error as exc:
        logger.error("Could not open transaction: %s", exc)
        raise StoreError(f"Could not open transaction: {exc}") from exc

    try:
        result = fn(Transaction(conn))
        conn.execute("COMMIT")
    except ConciergeError:
        _rollback(conn)
        raise
    except sqlite3.Error as exc:
        _rollback(conn)
        logger.error("Transaction aborted: %s", exc)
        raise StoreError(f"Transaction aborted: {exc}") from exc
    except BaseException:
        _rollback(conn)
        raise
    return result


def _rollback(conn: sqlite3.Connection) -> None:
    if conn.in_transaction:
        conn.execute("ROLLBACK")
