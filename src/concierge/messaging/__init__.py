"""Concierge messaging: inbound receipt dedup and outbound idempotent sends."""

from concierge.messaging.gateway import ConsoleGateway, MessageGateway, TwilioGateway
from concierge.messaging.service import (
    InboundOutcome,
    MessagingService,
    OutboundPayload,
    SendResult,
    StatusCallback,
)
from concierge.messaging.store import InboundPayload, MessagingStore, Reservation

__all__ = [
    "ConsoleGateway",
    "InboundOutcome",
    "InboundPayload",
    "MessageGateway",
    "MessagingService",
    "MessagingStore",
    "OutboundPayload",
    "Reservation",
    "SendResult",
    "StatusCallback",
    "TwilioGateway",
]
