"""Domain models for the Concierge database layer."""

from __future__ import annotations

import json
from dataclasses import dataclass, field

SOURCE_TYPES = ("text", "url", "pdf", "image")
DOCUMENT_STATUSES = ("processing", "active", "disabled", "failed")
CHUNK_STATUSES = ("active", "disabled")
SESSION_KINDS = ("public", "whatsapp")
RECEIPT_STATUSES = ("queued", "processing", "processed", "failed")
OUTBOUND_STATUSES = (
    "pending",
    "queued",
    "sending",
    "sent",
    "delivered",
    "undelivered",
    "failed",
)
PRICE_TYPES = ("fixed", "from", "hourly", "per_person", "free", "unknown")
CURRENCIES = ("EUR", "GBP", "USD", "TRY")


@dataclass
class Tenant:
    id: str
    name: str
    category: str | None = None
    description: str | None = None
    location: str | None = None
    channel_number: str | None = None
    created_at: str | None = None


@dataclass
class KnowledgeDocument:
    id: str
    tenant_id: str
    source_type: str
    source_name: str
    status: str = "processing"
    chunk_count: int = 0
    content_hash: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    source_text: str | None = None
    source_url: str | None = None
    file_path: str | None = None
    mime_type: str | None = None
    page_count: int | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class KnowledgeChunk:
    chunk_id: str
    tenant_id: str
    document_id: str
    chunk_index: int
    text: str
    embedding: list[float] = field(default_factory=list)
    source_name: str = ""
    status: str = "active"
    created_at: str | None = None
    rowid: int | None = None  # set after upsert; doubles as the vec index rowid


@dataclass
class ChatSession:
    id: str
    tenant_id: str
    kind: str
    status: str = "open"
    anon_uid: str | None = None
    user_id: str | None = None
    message_count: int = 0
    last_message: str | None = None
    last_message_at: str | None = None
    lead_captured: bool = False
    lead_id: str | None = None
    created_at: str | None = None

    @property
    def owner(self) -> str:
        """The single recorded owner identity (anonymous or authenticated)."""
        return self.anon_uid if self.anon_uid is not None else self.user_id  # type: ignore[return-value]


@dataclass
class ChatMessage:
    id: str
    session_id: str
    role: str
    text: str
    sources: str = field(default_factory=lambda: "[]")
    meta: str = field(default_factory=lambda: "{}")
    created_at: str | None = None

    @property
    def sources_list(self) -> list[dict]:
        return json.loads(self.sources)

    @property
    def meta_dict(self) -> dict:
        return json.loads(self.meta)


@dataclass
class Lead:
    id: str
    tenant_id: str
    session_id: str
    name: str
    phone_e164: str
    email: str | None = None
    message: str | None = None
    created_at: str | None = None


@dataclass
class InboundReceipt:
    message_sid: str
    from_e164: str
    to_e164: str | None = None
    body: str = ""
    media_urls: str = field(default_factory=lambda: "[]")
    status: str = "queued"
    attempts: int = 0
    thread_id: str | None = None
    last_error: str | None = None
    received_at: str | None = None
    processed_at: str | None = None

    @property
    def media_list(self) -> list[str]:
        return json.loads(self.media_urls)


@dataclass
class OutboundReservation:
    idempotency_key: str
    state: str = "reserved"
    outbound_message_id: str | None = None
    reserved_at: str | None = None


@dataclass
class OutboundMessage:
    id: str
    idempotency_key: str
    to_e164: str
    body: str
    from_e164: str = ""
    status: str = "pending"
    provider_sid: str | None = None
    correlation_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    created_at: str | None = None
    sent_at: str | None = None
    delivered_at: str | None = None
    failed_at: str | None = None


@dataclass
class CatalogItem:
    id: str
    tenant_id: str
    document_id: str
    section: str
    name: str
    description: str | None = None
    price: float | None = None
    currency: str | None = None
    price_type: str = "unknown"
    tags: str = field(default_factory=lambda: "[]")
    status: str = "active"
    extraction_run_id: str = ""
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def tags_list(self) -> list[str]:
        return json.loads(self.tags)


# ------------------------------------------------------------------
# Row → model helpers
# ------------------------------------------------------------------


def row_to_model(model: type, row) -> object:
    """Build *model* from a sqlite3.Row, reading only the dataclass columns present.

    Embedding blobs are never decoded here; the chunk repository does that.
    """
    keys = row.keys()
    values = {
        name: row[name]
        for name in model.__dataclass_fields__
        if name in keys and name != "embedding"
    }
    if model is ChatSession and "lead_captured" in values:
        values["lead_captured"] = bool(values["lead_captured"])
    return model(**values)
