"""Forward-only migration runner for the Concierge schema.

Vec tables (vec_chunks_*) are NOT migration-managed; use ensure_vec_table().
"""

from __future__ import annotations

import sqlite3

# schema_version is the bootstrap table, created before migrations run.
_CREATE_SCHEMA_VERSION = """
CREATE TABLE IF NOT EXISTS schema_version (
    version     INTEGER NOT NULL,
    applied_at  DATETIME NOT NULL DEFAULT (datetime('now'))
)
"""

_NOW = "(strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))"

_V1_SQL = f"""
CREATE TABLE IF NOT EXISTS tenants (
    id              TEXT PRIMARY KEY,
    name            TEXT NOT NULL,
    category        TEXT,
    description     TEXT,
    location        TEXT,
    channel_number  TEXT UNIQUE,
    created_at      TEXT NOT NULL DEFAULT {_NOW}
);

CREATE TABLE IF NOT EXISTS knowledge_documents (
    id              TEXT PRIMARY KEY,
    tenant_id       TEXT NOT NULL REFERENCES tenants(id),
    source_type     TEXT NOT NULL CHECK (source_type IN ('text', 'url', 'pdf', 'image')),
    source_name     TEXT NOT NULL,
    status          TEXT NOT NULL CHECK (status IN ('processing', 'active', 'disabled', 'failed')),
    chunk_count     INTEGER NOT NULL DEFAULT 0,
    content_hash    TEXT,
    error_code      TEXT,
    error_message   TEXT,
    source_text     TEXT,
    source_url      TEXT,
    file_path       TEXT,
    mime_type       TEXT,
    page_count      INTEGER,
    created_at      TEXT NOT NULL DEFAULT {_NOW},
    updated_at      TEXT NOT NULL DEFAULT {_NOW}
);
CREATE INDEX IF NOT EXISTS idx_documents_tenant ON knowledge_documents (tenant_id, created_at);

CREATE TABLE IF NOT EXISTS knowledge_chunks (
    id              INTEGER PRIMARY KEY,
    chunk_id        TEXT NOT NULL,
    tenant_id       TEXT NOT NULL,
    document_id     TEXT NOT NULL REFERENCES knowledge_documents(id),
    source_name     TEXT NOT NULL DEFAULT '',
    chunk_index     INTEGER NOT NULL,
    text            TEXT NOT NULL,
    embedding       BLOB NOT NULL,
    status          TEXT NOT NULL CHECK (status IN ('active', 'disabled')),
    created_at      TEXT NOT NULL DEFAULT {_NOW},
    UNIQUE (document_id, chunk_id)
);
CREATE INDEX IF NOT EXISTS idx_chunks_tenant_status ON knowledge_chunks (tenant_id, status);

CREATE TABLE IF NOT EXISTS chat_sessions (
    id              TEXT PRIMARY KEY,
    tenant_id       TEXT NOT NULL REFERENCES tenants(id),
    kind            TEXT NOT NULL,
    status          TEXT NOT NULL DEFAULT 'open' CHECK (status IN ('open', 'closed')),
    anon_uid        TEXT,
    user_id         TEXT,
    message_count   INTEGER NOT NULL DEFAULT 0,
    last_message    TEXT,
    last_message_at TEXT,
    lead_captured   INTEGER NOT NULL DEFAULT 0,
    lead_id         TEXT,
    created_at      TEXT NOT NULL DEFAULT {_NOW},
    CHECK ((anon_uid IS NULL) <> (user_id IS NULL))
);
CREATE INDEX IF NOT EXISTS idx_sessions_tenant ON chat_sessions (tenant_id, last_message_at);

CREATE TABLE IF NOT EXISTS chat_messages (
    id              TEXT PRIMARY KEY,
    session_id      TEXT NOT NULL REFERENCES chat_sessions(id),
    role            TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
    text            TEXT NOT NULL,
    sources         TEXT NOT NULL DEFAULT '[]',
    meta            TEXT NOT NULL DEFAULT '{{}}',
    created_at      TEXT NOT NULL DEFAULT {_NOW}
);
CREATE INDEX IF NOT EXISTS idx_messages_session ON chat_messages (session_id);

CREATE TABLE IF NOT EXISTS leads (
    id              TEXT PRIMARY KEY,
    tenant_id       TEXT NOT NULL REFERENCES tenants(id),
    session_id      TEXT NOT NULL REFERENCES chat_sessions(id),
    name            TEXT NOT NULL,
    phone_e164      TEXT NOT NULL,
    email           TEXT,
    message         TEXT,
    created_at      TEXT NOT NULL DEFAULT {_NOW}
);

CREATE TABLE IF NOT EXISTS inbound_receipts (
    message_sid     TEXT PRIMARY KEY,
    from_e164       TEXT NOT NULL,
    to_e164         TEXT,
    body            TEXT NOT NULL DEFAULT '',
    media_urls      TEXT NOT NULL DEFAULT '[]',
    status          TEXT NOT NULL CHECK (status IN ('queued', 'processing', 'processed', 'failed')),
    attempts        INTEGER NOT NULL DEFAULT 0,
    thread_id       TEXT,
    last_error      TEXT,
    received_at     TEXT NOT NULL DEFAULT {_NOW},
    processed_at    TEXT
);

CREATE TABLE IF NOT EXISTS outbound_reservations (
    idempotency_key     TEXT PRIMARY KEY,
    state               TEXT NOT NULL CHECK (state IN ('reserved', 'created')),
    outbound_message_id TEXT,
    reserved_at         TEXT NOT NULL DEFAULT {_NOW}
);

CREATE TABLE IF NOT EXISTS outbound_messages (
    id              TEXT PRIMARY KEY,
    idempotency_key TEXT NOT NULL UNIQUE REFERENCES outbound_reservations(idempotency_key),
    from_e164       TEXT NOT NULL DEFAULT '',
    to_e164         TEXT NOT NULL,
    body            TEXT NOT NULL,
    status          TEXT NOT NULL,
    provider_sid    TEXT,
    correlation_id  TEXT,
    error_code      TEXT,
    error_message   TEXT,
    created_at      TEXT NOT NULL DEFAULT {_NOW},
    sent_at         TEXT,
    delivered_at    TEXT,
    failed_at       TEXT
);
CREATE INDEX IF NOT EXISTS idx_outbound_provider_sid ON outbound_messages (provider_sid);

CREATE TABLE IF NOT EXISTS status_callbacks (
    id              INTEGER PRIMARY KEY,
    provider_sid    TEXT NOT NULL,
    status          TEXT NOT NULL,
    to_e164         TEXT,
    error_code      TEXT,
    error_message   TEXT,
    received_at     TEXT NOT NULL DEFAULT {_NOW}
);
"""

_V2_SQL = f"""
CREATE TABLE IF NOT EXISTS catalog_items (
    id                  TEXT PRIMARY KEY,
    tenant_id           TEXT NOT NULL REFERENCES tenants(id),
    document_id         TEXT NOT NULL REFERENCES knowledge_documents(id),
    section             TEXT NOT NULL,
    name                TEXT NOT NULL,
    description         TEXT,
    price               REAL,
    currency            TEXT,
    price_type          TEXT NOT NULL CHECK (price_type IN
                            ('fixed', 'from', 'hourly', 'per_person', 'free', 'unknown')),
    tags                TEXT NOT NULL DEFAULT '[]',
    status              TEXT NOT NULL DEFAULT 'active' CHECK (status IN ('active', 'inactive')),
    extraction_run_id   TEXT NOT NULL,
    created_at          TEXT NOT NULL DEFAULT {_NOW},
    updated_at          TEXT NOT NULL DEFAULT {_NOW}
);
CREATE INDEX IF NOT EXISTS idx_catalog_tenant ON catalog_items (tenant_id, status);
CREATE INDEX IF NOT EXISTS idx_catalog_document ON catalog_items (document_id);
"""

# Append-only. Each entry: (version: int, sql: str).
# executescript() issues an implicit COMMIT before running.
MIGRATIONS: list[tuple[int, str]] = [
    (1, _V1_SQL),
    (2, _V2_SQL),
]


def run_migrations(conn: sqlite3.Connection) -> None:
    """Apply all pending migrations in ascending version order.

    Idempotent: safe to call on a database at any version.
    Vec tables are NOT managed here; use ensure_vec_table() instead.
    """
    conn.execute(_CREATE_SCHEMA_VERSION)

    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    current = row[0] if row[0] is not None else 0

    for version, sql in MIGRATIONS:
        if version > current:
            conn.executescript(sql)
            conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (version,)
            )
