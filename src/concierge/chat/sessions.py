"""Chat session store: per-tenant sessions and their append-only messages.

``append_user_message`` is the only writer of ``message_count``. It reads
the session, checks ownership and the cap, then writes the message and the
incremented count in one ``BEGIN IMMEDIATE`` transaction, so concurrent
appends can never push the count past the cap or increment it without a
stored message.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass

from concierge.db.models import SESSION_KINDS, ChatMessage, ChatSession, Lead, row_to_model
from concierge.db.transaction import Transaction, run_transaction
from concierge.errors import (
    AccessDeniedError,
    SessionClosedError,
    SessionNotFoundError,
    ValidationError,
)

logger = logging.getLogger(__name__)

_NOW = "strftime('%Y-%m-%dT%H:%M:%fZ', 'now')"
_PREVIEW_CHARS = 100


@dataclass
class AppendResult:
    allowed: bool
    new_count: int
    message_id: str | None = None
    replayed: bool = False


class SessionStore:
    """Data access for chat sessions, messages and leads."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def create_session(
        self,
        tenant_id: str,
        kind: str,
        anon_uid: str | None = None,
        user_id: str | None = None,
    ) -> ChatSession:
        """Open a new session owned by exactly one of *anon_uid* / *user_id*."""
        if kind not in SESSION_KINDS:
            raise ValidationError(f"Unknown session kind '{kind}'.")
        if (anon_uid is None) == (user_id is None):
            raise ValidationError("Exactly one of anon_uid or user_id must be set.")
        session_id = uuid.uuid4().hex
        run_transaction(
            self._conn,
            lambda tx: tx.insert(
                "chat_sessions",
                {
                    "id": session_id,
                    "tenant_id": tenant_id,
                    "kind": kind,
                    "anon_uid": anon_uid,
                    "user_id": user_id,
                },
            ),
        )
        logger.info("Session created", extra={"tenant_id": tenant_id, "session_id": session_id})
        return self.get_session(tenant_id, session_id)  # type: ignore[return-value]

    def get_or_create_session(self, tenant_id: str, kind: str, user_id: str) -> ChatSession:
        """Return the open *kind* session owned by *user_id*, creating one if none exists."""

        def _body(tx: Transaction) -> str:
            row = tx.get(
                "SELECT id FROM chat_sessions WHERE tenant_id = ? AND kind = ? "
                "AND user_id = ? AND status = 'open' ORDER BY created_at DESC LIMIT 1",
                (tenant_id, kind, user_id),
            )
            if row is not None:
                return row["id"]
            session_id = uuid.uuid4().hex
            tx.insert(
                "chat_sessions",
                {"id": session_id, "tenant_id": tenant_id, "kind": kind, "user_id": user_id},
            )
            return session_id

        session_id = run_transaction(self._conn, _body)
        return self.get_session(tenant_id, session_id)  # type: ignore[return-value]

    def get_session(self, tenant_id: str, session_id: str) -> ChatSession | None:
        """Return the session, or None if missing or owned by another tenant."""
        row = self._conn.execute(
            "SELECT * FROM chat_sessions WHERE id = ? AND tenant_id = ?",
            (session_id, tenant_id),
        ).fetchone()
        return row_to_model(ChatSession, row) if row else None

    def list_sessions(
        self, tenant_id: str, kind: str | None = None, limit: int | None = None
    ) -> list[ChatSession]:
        """Sessions of *tenant_id*, most recently active first."""
        sql = "SELECT * FROM chat_sessions WHERE tenant_id = ?"
        params: list = [tenant_id]
        if kind is not None:
            sql += " AND kind = ?"
            params.append(kind)
        sql += " ORDER BY COALESCE(last_message_at, created_at) DESC, rowid DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [row_to_model(ChatSession, r) for r in self._conn.execute(sql, params).fetchall()]

    def close_session(self, tenant_id: str, session_id: str) -> bool:
        """``open → closed``. Returns False if the session was already closed."""

        def _body(tx: Transaction) -> bool:
            row = _read_session(tx, tenant_id, session_id)
            if row["status"] == "closed":
                return False
            tx.execute("UPDATE chat_sessions SET status = 'closed' WHERE id = ?", (session_id,))
            return True

        return run_transaction(self._conn, _body)

    def mark_lead_captured(self, tenant_id: str, session_id: str, lead_id: str) -> bool:
        """Flip ``lead_captured`` to true. Returns False if it already was (no change)."""

        def _body(tx: Transaction) -> bool:
            row = _read_session(tx, tenant_id, session_id)
            if row["lead_captured"]:
                return False
            tx.execute(
                "UPDATE chat_sessions SET lead_captured = 1, lead_id = ? WHERE id = ?",
                (lead_id, session_id),
            )
            return True

        return run_transaction(self._conn, _body)

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    def append_user_message(
        self,
        tenant_id: str,
        session_id: str,
        caller_id: str,
        text: str,
        capacity_limit: int,
        message_id: str | None = None,
    ) -> AppendResult:
        """Append a user message under the per-session cap, atomically.

        A caller-supplied *message_id* makes the append idempotent: if that
        message is already stored in the session, nothing is written and
        the result is ``replayed`` with the current count.

        Raises:
            SessionNotFoundError: No such session for this tenant.
            AccessDeniedError: *caller_id* is not the session owner.
            SessionClosedError: The session is closed.

        Returns:
            ``allowed=False`` with the unchanged count when the cap is reached
            (nothing written); otherwise the new count and message id.
        """
        if not text or not text.strip():
            raise ValidationError("Message text is required.")
        keyed = message_id is not None
        message_id = message_id or uuid.uuid4().hex

        def _body(tx: Transaction) -> AppendResult:
            row = _read_session(tx, tenant_id, session_id)
            _check_owner(row, caller_id)
            if keyed and _message_exists(tx, session_id, message_id):
                return AppendResult(
                    allowed=True,
                    new_count=row["message_count"],
                    message_id=message_id,
                    replayed=True,
                )
            if row["status"] == "closed":
                raise SessionClosedError(f"Session '{session_id}' is closed.")
            count = row["message_count"]
            if count >= capacity_limit:
                return AppendResult(allowed=False, new_count=count)

            tx.insert(
                "chat_messages",
                {"id": message_id, "session_id": session_id, "role": "user", "text": text},
            )
            tx.execute(
                f"UPDATE chat_sessions SET message_count = ?, last_message = ?, "
                f"last_message_at = {_NOW} WHERE id = ?",
                (count + 1, text[:_PREVIEW_CHARS], session_id),
            )
            return AppendResult(allowed=True, new_count=count + 1, message_id=message_id)

        result = run_transaction(self._conn, _body)
        if not result.allowed:
            logger.info(
                "Session message cap reached",
                extra={"tenant_id": tenant_id, "session_id": session_id},
            )
        return result

    def append_assistant_message(
        self,
        tenant_id: str,
        session_id: str,
        text: str,
        sources: list[dict] | None = None,
        meta: dict | None = None,
        message_id: str | None = None,
    ) -> str:
        """Store an assistant reply and refresh the preview. Does not touch ``message_count``.

        A *message_id* already stored in the session is left as is.
        """
        keyed = message_id is not None
        message_id = message_id or uuid.uuid4().hex

        def _body(tx: Transaction) -> None:
            _read_session(tx, tenant_id, session_id)
            if keyed and _message_exists(tx, session_id, message_id):
                return
            tx.insert(
                "chat_messages",
                {
                    "id": message_id,
                    "session_id": session_id,
                    "role": "assistant",
                    "text": text,
                    "sources": json.dumps(sources or []),
                    "meta": json.dumps(meta or {}),
                },
            )
            tx.execute(
                f"UPDATE chat_sessions SET last_message = ?, last_message_at = {_NOW} WHERE id = ?",
                (text[:_PREVIEW_CHARS], session_id),
            )

        run_transaction(self._conn, _body)
        return message_id

    def get_history(self, tenant_id: str, session_id: str, limit: int = 10) -> list[ChatMessage]:
        """The last *limit* messages, oldest first."""
        rows = self._conn.execute(
            """
            SELECT m.* FROM chat_messages m
            JOIN chat_sessions s ON s.id = m.session_id
            WHERE m.session_id = ? AND s.tenant_id = ?
            ORDER BY m.rowid DESC LIMIT ?
            """,
            (session_id, tenant_id, limit),
        ).fetchall()
        return [row_to_model(ChatMessage, r) for r in reversed(rows)]

    def get_message(self, tenant_id: str, session_id: str, message_id: str) -> ChatMessage | None:
        row = self._conn.execute(
            """
            SELECT m.* FROM chat_messages m
            JOIN chat_sessions s ON s.id = m.session_id
            WHERE m.id = ? AND m.session_id = ? AND s.tenant_id = ?
            """,
            (message_id, session_id, tenant_id),
        ).fetchone()
        return row_to_model(ChatMessage, row) if row else None

    def count_messages(self, session_id: str, role: str | None = None) -> int:
        sql = "SELECT COUNT(*) FROM chat_messages WHERE session_id = ?"
        params: list = [session_id]
        if role is not None:
            sql += " AND role = ?"
            params.append(role)
        return self._conn.execute(sql, params).fetchone()[0]

    # ------------------------------------------------------------------
    # Leads
    # ------------------------------------------------------------------

    def capture_lead(self, tenant_id: str, session_id: str, caller_id: str, lead: Lead) -> str:
        """Store *lead* and flag the session, in one owner-checked transaction.

        The session keeps the id of the first captured lead.
        """
        if not lead.name.strip() or not lead.phone_e164.strip():
            raise ValidationError("Lead name and phone number are required.")
        lead_id = lead.id or uuid.uuid4().hex

        def _body(tx: Transaction) -> None:
            row = _read_session(tx, tenant_id, session_id)
            _check_owner(row, caller_id)
            tx.insert(
                "leads",
                {
                    "id": lead_id,
                    "tenant_id": tenant_id,
                    "session_id": session_id,
                    "name": lead.name.strip(),
                    "phone_e164": lead.phone_e164.strip(),
                    "email": lead.email,
                    "message": lead.message,
                },
            )
            if not row["lead_captured"]:
                tx.execute(
                    "UPDATE chat_sessions SET lead_captured = 1, lead_id = ? WHERE id = ?",
                    (lead_id, session_id),
                )

        run_transaction(self._conn, _body)
        logger.info("Lead captured", extra={"tenant_id": tenant_id, "session_id": session_id})
        return lead_id


def _read_session(tx: Transaction, tenant_id: str, session_id: str) -> sqlite3.Row:
    row = tx.get(
        "SELECT * FROM chat_sessions WHERE id = ? AND tenant_id = ?", (session_id, tenant_id)
    )
    if row is None:
        raise SessionNotFoundError(f"Session '{session_id}' not found.")
    return row


def _message_exists(tx: Transaction, session_id: str, message_id: str) -> bool:
    return (
        tx.get(
            "SELECT 1 FROM chat_messages WHERE id = ? AND session_id = ?",
            (message_id, session_id),
        )
        is not None
    )


def _check_owner(row: sqlite3.Row, caller_id: str) -> None:
    """Fail closed unless *caller_id* is the recorded owner."""
    owner = row["anon_uid"] if row["anon_uid"] is not None else row["user_id"]
    if owner is None or owner != caller_id:
        raise AccessDeniedError("Session access denied.")
