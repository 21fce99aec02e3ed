"""Messaging idempotency store.

Inbound receipts are keyed by the provider message sid and outbound
reservations by the idempotency key; uniqueness of both comes from the
primary key via insert-only writes, never from a check-then-write. A
duplicate is an expected outcome and is reported, not raised.

Receipt lifecycle::

    queued → processing → processed
                       ↘ failed → (requeue_failed) → queued
"""

from __future__ import annotations

import json
import logging
import sqlite3
import time
import uuid
from dataclasses import dataclass, field

from concierge.db.models import InboundReceipt, OutboundMessage, OutboundReservation, row_to_model
from concierge.db.transaction import Transaction, run_transaction
from concierge.errors import AlreadyExistsError, ReceiptNotFoundError, ValidationError

logger = logging.getLogger(__name__)

_NOW = "strftime('%Y-%m-%dT%H:%M:%fZ', 'now')"

TERMINAL_STATUSES = frozenset({"delivered", "failed", "undelivered"})
_PROVIDER_STATUSES = frozenset({"queued", "sending", "sent", "delivered", "undelivered", "failed"})


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def derive_outbound_idempotency_key(
    to: str,
    correlation_id: str | None = None,
    template_key: str | None = None,
    now: float | None = None,
) -> str:
    """Key for callers that do not supply one: channel, recipient, correlation,
    template and a one-hour time bucket.
    """
    hour_bucket = int((time.time() if now is None else now) // 3600)
    return ":".join(
        [
            "whatsapp",
            to.replace("whatsapp:", "").replace("+", ""),
            correlation_id or "general",
            template_key or "freeform",
            str(hour_bucket),
        ]
    )


def map_provider_status(status: str) -> str:
    """Map a provider delivery status onto ours; unknown values become ``pending``."""
    lowered = (status or "").lower()
    return lowered if lowered in _PROVIDER_STATUSES else "pending"


def is_terminal_status(status: str) -> bool:
    return status in TERMINAL_STATUSES


# ------------------------------------------------------------------
# Value objects
# ------------------------------------------------------------------


@dataclass
class InboundPayload:
    from_e164: str
    to_e164: str | None = None
    body: str = ""
    media_urls: list[str] = field(default_factory=list)


@dataclass
class ReceiptResult:
    created: bool
    receipt: InboundReceipt


@dataclass
class Reservation:
    reserved: bool
    existing_message_id: str | None = None


class MessagingStore:
    """Data access for inbound receipts, outbound reservations and messages."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    # ------------------------------------------------------------------
    # Inbound receipts
    # ------------------------------------------------------------------

    def create_receipt_idempotent(self, message_sid: str, payload: InboundPayload) -> ReceiptResult:
        """Create the receipt in ``queued``; a repeat sid returns the stored receipt untouched."""
        if not message_sid:
            raise ValidationError("message_sid is required.")
        values = {
            "message_sid": message_sid,
            "from_e164": payload.from_e164,
            "to_e164": payload.to_e164,
            "body": payload.body,
            "media_urls": json.dumps(payload.media_urls),
            "status": "queued",
        }
        try:
            run_transaction(self._conn, lambda tx: tx.insert("inbound_receipts", values))
            created = True
        except AlreadyExistsError:
            created = False
            logger.info("Duplicate inbound receipt", extra={"message_sid": message_sid})
        return ReceiptResult(created=created, receipt=self.get_receipt(message_sid))  # type: ignore[arg-type]

    def get_receipt(self, message_sid: str) -> InboundReceipt | None:
        row = self._conn.execute(
            "SELECT * FROM inbound_receipts WHERE message_sid = ?", (message_sid,)
        ).fetchone()
        return row_to_model(InboundReceipt, row) if row else None

    def mark_processing(self, message_sid: str) -> bool:
        """``queued → processing``. True for exactly one caller per queued receipt."""
        return self._transition(
            message_sid,
            from_status="queued",
            sql="UPDATE inbound_receipts SET status = 'processing', "
            "attempts = attempts + 1 WHERE message_sid = ?",
            params=(message_sid,),
        )

    def mark_processed(self, message_sid: str, thread_id: str | None) -> bool:
        """``processing → processed``, recording the conversation thread."""
        return self._transition(
            message_sid,
            from_status="processing",
            sql=f"UPDATE inbound_receipts SET status = 'processed', thread_id = ?, "
            f"last_error = NULL, processed_at = {_NOW} WHERE message_sid = ?",
            params=(thread_id, message_sid),
        )

    def mark_failed(self, message_sid: str, reason: str) -> bool:
        """``processing → failed`` with the (truncated) reason."""
        return self._transition(
            message_sid,
            from_status="processing",
            sql="UPDATE inbound_receipts SET status = 'failed', last_error = ? WHERE message_sid = ?",
            params=(reason[:500], message_sid),
        )

    def requeue_failed(self, message_sid: str) -> bool:
        """Operator reset ``failed → queued``; the only backwards transition."""
        return self._transition(
            message_sid,
            from_status="failed",
            sql="UPDATE inbound_receipts SET status = 'queued' WHERE message_sid = ?",
            params=(message_sid,),
        )

    def _transition(self, message_sid: str, from_status: str, sql: str, params: tuple) -> bool:
        def _body(tx: Transaction) -> bool:
            row = tx.get(
                "SELECT status FROM inbound_receipts WHERE message_sid = ?", (message_sid,)
            )
            if row is None:
                raise ReceiptNotFoundError(f"Inbound receipt '{message_sid}' not found.")
            if row["status"] != from_status:
                return False
            tx.execute(sql, params)
            return True

        return run_transaction(self._conn, _body)

    # ------------------------------------------------------------------
    # Outbound idempotency
    # ------------------------------------------------------------------

    def reserve_idempotency(self, key: str) -> Reservation:
        """Insert-only reservation of *key*. At most one caller ever gets ``reserved=True``."""
        if not key:
            raise ValidationError("idempotency key is required.")
        try:
            run_transaction(
                self._conn,
                lambda tx: tx.insert(
                    "outbound_reservations", {"idempotency_key": key, "state": "reserved"}
                ),
            )
            return Reservation(reserved=True)
        except AlreadyExistsError:
            existing = self.get_reservation(key)
            logger.info("Idempotency key already reserved", extra={"idempotency_key": key})
            return Reservation(
                reserved=False,
                existing_message_id=existing.outbound_message_id if existing else None,
            )

    def get_reservation(self, key: str) -> OutboundReservation | None:
        row = self._conn.execute(
            "SELECT * FROM outbound_reservations WHERE idempotency_key = ?", (key,)
        ).fetchone()
        return row_to_model(OutboundReservation, row) if row else None

    def create_outbound_pending(
        self,
        key: str,
        to_e164: str,
        body: str,
        from_e164: str = "",
        correlation_id: str | None = None,
    ) -> OutboundMessage:
        """Create the ``pending`` outbound message for a reserved *key*.

        Idempotent: once a message exists for the key it is returned as is,
        so every caller under one key sees the same message id.

        Raises:
            ValidationError: *key* was never reserved.
        """
        message_id = uuid.uuid4().hex

        def _body(tx: Transaction) -> str:
            reservation = tx.get(
                "SELECT outbound_message_id FROM outbound_reservations WHERE idempotency_key = ?",
                (key,),
            )
            if reservation is None:
                raise ValidationError(f"Idempotency key '{key}' has not been reserved.")
            if reservation["outbound_message_id"] is not None:
                return reservation["outbound_message_id"]
            tx.insert(
                "outbound_messages",
                {
                    "id": message_id,
                    "idempotency_key": key,
                    "from_e164": from_e164,
                    "to_e164": to_e164,
                    "body": body,
                    "status": "pending",
                    "correlation_id": correlation_id,
                },
            )
            tx.execute(
                "UPDATE outbound_reservations SET state = 'created', outbound_message_id = ? "
                "WHERE idempotency_key = ?",
                (message_id, key),
            )
            return message_id

        return self.get_outbound(run_transaction(self._conn, _body))  # type: ignore[return-value]

    def claim_redispatch(self, key: str) -> OutboundMessage | None:
        """Hand the ``pending`` or ``failed`` message under *key* back for another send.

        Only for the caller that owns the work behind *key*, such as the
        retry of the inbound message a reply answers. A ``failed`` message
        goes back to ``pending`` with its error cleared. Returns None when
        there is no message or it already left the gateway.
        """

        def _body(tx: Transaction) -> str | None:
            row = tx.get(
                "SELECT m.id, m.status FROM outbound_reservations r "
                "JOIN outbound_messages m ON m.id = r.outbound_message_id "
                "WHERE r.idempotency_key = ?",
                (key,),
            )
            if row is None or row["status"] not in ("pending", "failed"):
                return None
            tx.execute(
                "UPDATE outbound_messages SET status = 'pending', error_code = NULL, "
                "error_message = NULL, failed_at = NULL WHERE id = ?",
                (row["id"],),
            )
            return row["id"]

        message_id = run_transaction(self._conn, _body)
        return self.get_outbound(message_id) if message_id else None

    def get_outbound(self, outbound_id: str) -> OutboundMessage | None:
        row = self._conn.execute(
            "SELECT * FROM outbound_messages WHERE id = ?", (outbound_id,)
        ).fetchone()
        return row_to_model(OutboundMessage, row) if row else None

    def get_outbound_by_idempotency(self, key: str) -> OutboundMessage | None:
        row = self._conn.execute(
            "SELECT m.* FROM outbound_reservations r "
            "JOIN outbound_messages m ON m.id = r.outbound_message_id "
            "WHERE r.idempotency_key = ?",
            (key,),
        ).fetchone()
        return row_to_model(OutboundMessage, row) if row else None

    def mark_outbound_sent(self, outbound_id: str, provider_sid: str) -> None:
        run_transaction(
            self._conn,
            lambda tx: tx.execute(
                f"UPDATE outbound_messages SET status = 'sent', provider_sid = ?, "
                f"sent_at = {_NOW} WHERE id = ?",
                (provider_sid, outbound_id),
            ),
        )

    def mark_outbound_failed(
        self, outbound_id: str, error_code: str | None = None, error_message: str | None = None
    ) -> None:
        run_transaction(
            self._conn,
            lambda tx: tx.execute(
                f"UPDATE outbound_messages SET status = 'failed', error_code = ?, "
                f"error_message = ?, failed_at = {_NOW} WHERE id = ?",
                (error_code, (error_message or "")[:500] or None, outbound_id),
            ),
        )

    def update_outbound_status(
        self,
        provider_sid: str,
        status: str,
        error_code: str | None = None,
        error_message: str | None = None,
    ) -> bool:
        """Apply a delivery status reported by the provider.

        Unknown sids are ignored. A message already in a terminal status
        keeps it, since callbacks may arrive out of order.

        Returns:
            True if a stored message changed.
        """

        def _body(tx: Transaction) -> bool:
            row = tx.get(
                "SELECT id, status FROM outbound_messages WHERE provider_sid = ? LIMIT 1",
                (provider_sid,),
            )
            if row is None or is_terminal_status(row["status"]):
                return False
            if status == "delivered":
                tx.execute(
                    f"UPDATE outbound_messages SET status = ?, delivered_at = {_NOW} WHERE id = ?",
                    (status, row["id"]),
                )
            elif status in ("failed", "undelivered"):
                tx.execute(
                    f"UPDATE outbound_messages SET status = ?, failed_at = {_NOW}, "
                    f"error_code = COALESCE(?, error_code), "
                    f"error_message = COALESCE(?, error_message) WHERE id = ?",
                    (status, error_code, error_message, row["id"]),
                )
            else:
                tx.execute(
                    "UPDATE outbound_messages SET status = ? WHERE id = ?", (status, row["id"])
                )
            return True

        return run_transaction(self._conn, _body)

    def log_status_callback(
        self,
        provider_sid: str,
        status: str,
        to_e164: str | None = None,
        error_code: str | None = None,
        error_message: str | None = None,
    ) -> None:
        """Append to the status-callback audit log. Best effort: failures are logged only."""
        try:
            run_transaction(
                self._conn,
                lambda tx: tx.insert(
                    "status_callbacks",
                    {
                        "provider_sid": provider_sid,
                        "status": status,
                        "to_e164": to_e164,
                        "error_code": error_code,
                        "error_message": error_message,
                    },
                ),
            )
        except Exception as exc:  # noqa: BLE001
            logger.warning(
                "Could not log status callback: %s", exc, extra={"message_sid": provider_sid}
            )
