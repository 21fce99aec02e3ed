"""Messaging flows on top of ``MessagingStore``.

Inbound: a provider callback creates its receipt idempotently; only the
callback that created it goes on to process, and processing itself is
entered through ``mark_processing`` so it happens once per receipt even if
two workers race.

Outbound: the caller that wins ``reserve_idempotency`` dispatches through
the gateway. Every other caller under the same key gets the stored message
back, unless it resumes work it owns and the stored message never left
(``pending``) or failed at the gateway.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from concierge.db.models import InboundReceipt, OutboundMessage
from concierge.errors import ProviderError
from concierge.messaging.gateway import MessageGateway
from concierge.messaging.store import (
    InboundPayload,
    MessagingStore,
    derive_outbound_idempotency_key,
    map_provider_status,
)

logger = logging.getLogger(__name__)

# Receives the claimed receipt, returns the thread (session) id it was routed to.
InboundHandler = Callable[[InboundReceipt], "str | None"]


@dataclass
class InboundOutcome:
    created: bool
    processed: bool
    thread_id: str | None = None


@dataclass
class OutboundPayload:
    to_e164: str
    body: str
    from_e164: str = ""
    correlation_id: str | None = None
    template_key: str | None = None


@dataclass
class SendResult:
    message: OutboundMessage
    dispatched: bool


@dataclass
class StatusCallback:
    provider_sid: str
    status: str
    to_e164: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class MessagingService:
    def __init__(self, store: MessagingStore, gateway: MessageGateway, from_e164: str = "") -> None:
        self._store = store
        self._gateway = gateway
        self._from = from_e164

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    def handle_inbound_callback(
        self, message_sid: str, payload: InboundPayload, handler: InboundHandler
    ) -> InboundOutcome:
        """Record the callback and process it if this delivery created the receipt.

        A redelivered sid is acknowledged without side effects.
        """
        result = self._store.create_receipt_idempotent(message_sid, payload)
        if not result.created:
            return InboundOutcome(created=False, processed=False, thread_id=result.receipt.thread_id)
        outcome = self.process_receipt(message_sid, handler)
        outcome.created = True
        return outcome

    def process_receipt(self, message_sid: str, handler: InboundHandler) -> InboundOutcome:
        """Claim a queued receipt and run *handler* on it.

        Returns ``processed=False`` without calling *handler* when another
        worker already claimed it. A handler exception marks the receipt
        ``failed`` and propagates.
        """
        if not self._store.mark_processing(message_sid):
            logger.info("Receipt already claimed", extra={"message_sid": message_sid})
            return InboundOutcome(created=False, processed=False)

        receipt = self._store.get_receipt(message_sid)
        try:
            thread_id = handler(receipt)  # type: ignore[arg-type]
        except Exception as exc:
            logger.warning(
                "Inbound processing failed: %s",
                exc,
                extra={"message_sid": message_sid, "error_code": getattr(exc, "code", None)},
            )
            self._store.mark_failed(message_sid, str(exc) or type(exc).__name__)
            raise
        self._store.mark_processed(message_sid, thread_id)
        return InboundOutcome(created=False, processed=True, thread_id=thread_id)

    def retry_failed(self, message_sid: str, handler: InboundHandler) -> InboundOutcome:
        """Requeue a ``failed`` receipt and process it again."""
        if not self._store.requeue_failed(message_sid):
            return InboundOutcome(created=False, processed=False)
        return self.process_receipt(message_sid, handler)

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    def send_outbound_message(
        self, idempotency_key: str | None, payload: OutboundPayload, resume: bool = False
    ) -> SendResult:
        """Send *payload* at most once per idempotency key.

        Without a key one is derived from the recipient, correlation id,
        template and the current hour. With *resume* the caller owns the
        work behind the key, and a ``pending`` or ``failed`` message already
        stored under it is dispatched again; a message that reached the
        gateway is never sent twice.

        Raises:
            ProviderError: The gateway failed; the message is stored as ``failed``.
        """
        key = idempotency_key or derive_outbound_idempotency_key(
            payload.to_e164, payload.correlation_id, payload.template_key
        )
        from_e164 = payload.from_e164 or self._from
        reservation = self._store.reserve_idempotency(key)

        if not reservation.reserved:
            existing = self._store.get_outbound_by_idempotency(key)
            if existing is None:
                # Reserver has not recorded its message yet; record it without dispatching.
                existing = self._store.create_outbound_pending(
                    key, payload.to_e164, payload.body, from_e164, payload.correlation_id
                )
            if resume:
                claimed = self._store.claim_redispatch(key)
                if claimed is not None:
                    logger.info(
                        "Resuming outbound send",
                        extra={"idempotency_key": key, "outbound_id": claimed.id},
                    )
                    return self._dispatch(claimed)
            return SendResult(message=existing, dispatched=False)

        message = self._store.create_outbound_pending(
            key, payload.to_e164, payload.body, from_e164, payload.correlation_id
        )
        return self._dispatch(message)

    def _dispatch(self, message: OutboundMessage) -> SendResult:
        key = message.idempotency_key
        try:
            provider_sid = self._gateway.send(message.from_e164, message.to_e164, message.body)
        except ProviderError as exc:
            self._store.mark_outbound_failed(message.id, exc.code, str(exc))
            logger.warning(
                "Outbound send failed: %s",
                exc,
                extra={"idempotency_key": key, "outbound_id": message.id, "error_code": exc.code},
            )
            raise

        self._store.mark_outbound_sent(message.id, provider_sid)
        logger.info("Outbound sent", extra={"idempotency_key": key, "outbound_id": message.id})
        return SendResult(message=self._store.get_outbound(message.id), dispatched=True)  # type: ignore[arg-type]

    # ------------------------------------------------------------------
    # Delivery status
    # ------------------------------------------------------------------

    def handle_status_callback(self, callback: StatusCallback) -> bool:
        """Log the callback, then apply the mapped status. Returns True if a message changed."""
        self._store.log_status_callback(
            callback.provider_sid,
            callback.status,
            callback.to_e164,
            callback.error_code,
            callback.error_message,
        )
        return self._store.update_outbound_status(
            callback.provider_sid,
            map_provider_status(callback.status),
            callback.error_code,
            callback.error_message,
        )
