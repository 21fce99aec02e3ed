"""Tests for the messaging idempotency store."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from concierge.db.connection import Database
from concierge.errors import ReceiptNotFoundError, ValidationError
from concierge.messaging.store import (
    InboundPayload,
    MessagingStore,
    derive_outbound_idempotency_key,
    is_terminal_status,
    map_provider_status,
)

_PAYLOAD = InboundPayload(from_e164="+35799123456", to_e164="+35790000001", body="Hi")


@pytest.fixture
def store(tmp_db):
    return MessagingStore(tmp_db)


def _sent_message(store, key: str = "k1", provider_sid: str = "SM1"):
    store.reserve_idempotency(key)
    message = store.create_outbound_pending(key, "+35799123456", "Hello")
    store.mark_outbound_sent(message.id, provider_sid)
    return message


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def test_derived_key_shape():
    key = derive_outbound_idempotency_key("whatsapp:+35799123456", now=7200.0)
    assert key == "whatsapp:35799123456:general:freeform:2"


def test_derived_key_includes_correlation_and_template():
    key = derive_outbound_idempotency_key("+357991", "booking-7", "reminder", now=3599.0)
    assert key == "whatsapp:357991:booking-7:reminder:0"


def test_derived_key_changes_with_hour():
    first = derive_outbound_idempotency_key("+357991", now=3599.0)
    second = derive_outbound_idempotency_key("+357991", now=3600.0)
    assert first != second


@pytest.mark.parametrize(
    "raw, mapped",
    [("delivered", "delivered"), ("SENT", "sent"), ("undelivered", "undelivered"), ("read", "pending"), ("", "pending")],
)
def test_map_provider_status(raw, mapped):
    assert map_provider_status(raw) == mapped


def test_terminal_statuses():
    assert is_terminal_status("delivered")
    assert is_terminal_status("undelivered")
    assert not is_terminal_status("sent")


# ------------------------------------------------------------------
# Inbound receipts
# ------------------------------------------------------------------


def test_receipt_created_once(store):
    first = store.create_receipt_idempotent("SM100", _PAYLOAD)
    second = store.create_receipt_idempotent(
        "SM100", InboundPayload(from_e164="+1", body="different")
    )

    assert first.created is True
    assert first.receipt.status == "queued"
    assert second.created is False
    assert second.receipt.body == "Hi"


def test_receipt_requires_sid(store):
    with pytest.raises(ValidationError):
        store.create_receipt_idempotent("", _PAYLOAD)


def test_mark_processing_wins_once(store):
    store.create_receipt_idempotent("SM100", _PAYLOAD)
    assert store.mark_processing("SM100") is True
    assert store.mark_processing("SM100") is False
    assert store.get_receipt("SM100").attempts == 1


def test_mark_processing_unknown_sid(store):
    with pytest.raises(ReceiptNotFoundError):
        store.mark_processing("missing")


def test_concurrent_mark_processing(store, db_path):
    store.create_receipt_idempotent("SM100", _PAYLOAD)

    def _claim(_: int) -> bool:
        conn = Database(db_path).connect()
        try:
            return MessagingStore(conn).mark_processing("SM100")
        finally:
            conn.close()

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(_claim, range(8)))
    assert outcomes.count(True) == 1


def test_processed_records_thread(store):
    store.create_receipt_idempotent("SM100", _PAYLOAD)
    store.mark_processing("SM100")
    assert store.mark_processed("SM100", "session-1") is True

    receipt = store.get_receipt("SM100")
    assert receipt.status == "processed"
    assert receipt.thread_id == "session-1"
    assert receipt.processed_at is not None


def test_processed_requires_processing(store):
    store.create_receipt_idempotent("SM100", _PAYLOAD)
    assert store.mark_processed("SM100", "session-1") is False
    assert store.get_receipt("SM100").status == "queued"


def test_failed_and_requeued(store):
    store.create_receipt_idempotent("SM100", _PAYLOAD)
    store.mark_processing("SM100")
    assert store.mark_failed("SM100", "x" * 600) is True

    receipt = store.get_receipt("SM100")
    assert receipt.status == "failed"
    assert len(receipt.last_error) == 500

    assert store.requeue_failed("SM100") is True
    assert store.get_receipt("SM100").status == "queued"
    assert store.mark_processing("SM100") is True
    assert store.get_receipt("SM100").attempts == 2


def test_requeue_only_from_failed(store):
    store.create_receipt_idempotent("SM100", _PAYLOAD)
    assert store.requeue_failed("SM100") is False


# ------------------------------------------------------------------
# Outbound reservations
# ------------------------------------------------------------------


def test_reserve_once(store):
    assert store.reserve_idempotency("k1").reserved is True
    second = store.reserve_idempotency("k1")
    assert second.reserved is False
    assert second.existing_message_id is None
    assert store.get_reservation("k1").state == "reserved"


def test_concurrent_reserve(store, db_path):
    def _reserve(_: int) -> bool:
        conn = Database(db_path).connect()
        try:
            return MessagingStore(conn).reserve_idempotency("k1").reserved
        finally:
            conn.close()

    with ThreadPoolExecutor(max_workers=8) as pool:
        outcomes = list(pool.map(_reserve, range(8)))
    assert outcomes.count(True) == 1


def test_pending_requires_reservation(store):
    with pytest.raises(ValidationError, match="not been reserved"):
        store.create_outbound_pending("unreserved", "+357991", "Hello")


def test_pending_is_idempotent(store):
    store.reserve_idempotency("k1")
    first = store.create_outbound_pending("k1", "+357991", "Hello", correlation_id="c1")
    second = store.create_outbound_pending("k1", "+357991", "Hello again")

    assert first.id == second.id
    assert second.body == "Hello"
    assert first.status == "pending"
    reservation = store.get_reservation("k1")
    assert reservation.state == "created"
    assert reservation.outbound_message_id == first.id
    assert store.reserve_idempotency("k1").existing_message_id == first.id
    assert store.get_outbound_by_idempotency("k1").id == first.id


def test_mark_sent_and_failed(store):
    message = _sent_message(store)
    sent = store.get_outbound(message.id)
    assert sent.status == "sent"
    assert sent.provider_sid == "SM1"
    assert sent.sent_at is not None

    store.reserve_idempotency("k2")
    other = store.create_outbound_pending("k2", "+357991", "Hello")
    store.mark_outbound_failed(other.id, "PROVIDER_FAILED", "boom")
    failed = store.get_outbound(other.id)
    assert failed.status == "failed"
    assert failed.error_code == "PROVIDER_FAILED"
    assert failed.failed_at is not None


def test_claim_redispatch_reopens_failed_message(store):
    store.reserve_idempotency("k1")
    message = store.create_outbound_pending("k1", "+357991", "Hello")
    store.mark_outbound_failed(message.id, "PROVIDER_FAILED", "boom")

    claimed = store.claim_redispatch("k1")

    assert claimed.id == message.id
    assert claimed.status == "pending"
    assert claimed.error_code is None
    assert claimed.error_message is None
    assert claimed.failed_at is None


def test_claim_redispatch_leaves_sent_message(store):
    message = _sent_message(store)

    assert store.claim_redispatch("k1") is None
    assert store.claim_redispatch("never-reserved") is None
    assert store.get_outbound(message.id).status == "sent"


# ------------------------------------------------------------------
# Delivery status
# ------------------------------------------------------------------


def test_status_update_delivered(store):
    message = _sent_message(store)
    assert store.update_outbound_status("SM1", "delivered") is True
    delivered = store.get_outbound(message.id)
    assert delivered.status == "delivered"
    assert delivered.delivered_at is not None


def test_terminal_status_is_kept(store):
    message = _sent_message(store)
    store.update_outbound_status("SM1", "delivered")
    assert store.update_outbound_status("SM1", "sent") is False
    assert store.update_outbound_status("SM1", "failed", "30008") is False
    assert store.get_outbound(message.id).status == "delivered"


def test_undelivered_records_error(store):
    message = _sent_message(store)
    store.update_outbound_status("SM1", "undelivered", "63016", "Outside session window")
    stored = store.get_outbound(message.id)
    assert stored.status == "undelivered"
    assert stored.error_code == "63016"
    assert stored.failed_at is not None


def test_unknown_provider_sid_ignored(store):
    assert store.update_outbound_status("SM-unknown", "delivered") is False


def test_status_callback_logged(store, tmp_db):
    store.log_status_callback("SM1", "delivered", "+357991")
    row = tmp_db.execute("SELECT provider_sid, status FROM status_callbacks").fetchone()
    assert tuple(row) == ("SM1", "delivered")
