"""Repository for tenants, knowledge documents, chunks and the vec index.

Single interface for the Chunk Store. Vec tables are created by
``ensure_vec_table``; the repository keeps the index in sync with chunk
status: a chunk has a vec row exactly while it and its document are
``active``. Chunks written during ingestion only enter the index when the
document is finalized.
"""

from __future__ import annotations

import logging
import sqlite3
import struct
from collections.abc import Callable

from concierge.db.batch import ChunkedWriter, WriteOp
from concierge.db.models import (
    KnowledgeChunk,
    KnowledgeDocument,
    Tenant,
    row_to_model,
)
from concierge.db.transaction import Transaction, run_transaction
from concierge.db.vectors import serialize
from concierge.errors import DocumentNotFoundError, StoreError, ValidationError

logger = logging.getLogger(__name__)

_NOW = "strftime('%Y-%m-%dT%H:%M:%fZ', 'now')"

_SETTABLE_STATUSES = ("active", "disabled")


class KnowledgeRepository:
    """Data access layer for the knowledge base.

    Wraps an open sqlite3.Connection (owned by the caller) and the name of
    the vec table for the configured embedding model.
    """

    def __init__(self, conn: sqlite3.Connection, vec_table: str) -> None:
        self._conn = conn
        self._vec_table = vec_table

    @property
    def vec_table(self) -> str:
        return self._vec_table

    # ------------------------------------------------------------------
    # Tenants
    # ------------------------------------------------------------------

    def add_tenant(self, tenant: Tenant) -> Tenant:
        """Insert a tenant. Raises AlreadyExistsError on a duplicate id or channel number."""
        values = {
            "id": tenant.id,
            "name": tenant.name,
            "category": tenant.category,
            "description": tenant.description,
            "location": tenant.location,
            "channel_number": tenant.channel_number,
        }
        run_transaction(self._conn, lambda tx: tx.insert("tenants", values))
        return self.get_tenant(tenant.id)  # type: ignore[return-value]

    def get_tenant(self, tenant_id: str) -> Tenant | None:
        row = self._conn.execute("SELECT * FROM tenants WHERE id = ?", (tenant_id,)).fetchone()
        return row_to_model(Tenant, row) if row else None

    def get_tenant_by_channel(self, channel_number: str) -> Tenant | None:
        """Return the tenant whose messaging number is *channel_number*."""
        row = self._conn.execute(
            "SELECT * FROM tenants WHERE channel_number = ?", (channel_number,)
        ).fetchone()
        return row_to_model(Tenant, row) if row else None

    def list_tenants(self) -> list[Tenant]:
        rows = self._conn.execute("SELECT * FROM tenants ORDER BY created_at, id").fetchall()
        return [row_to_model(Tenant, r) for r in rows]

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def count_documents(self, tenant_id: str) -> int:
        """Number of documents the tenant holds, in any status."""
        return self._conn.execute(
            "SELECT COUNT(*) FROM knowledge_documents WHERE tenant_id = ?", (tenant_id,)
        ).fetchone()[0]

    def create_document(self, doc: KnowledgeDocument) -> KnowledgeDocument:
        """Insert *doc* (normally in ``processing``) and return the stored row."""
        values = {
            "id": doc.id,
            "tenant_id": doc.tenant_id,
            "source_type": doc.source_type,
            "source_name": doc.source_name,
            "status": doc.status,
            "source_text": doc.source_text,
            "source_url": doc.source_url,
            "file_path": doc.file_path,
            "mime_type": doc.mime_type,
        }
        run_transaction(self._conn, lambda tx: tx.insert("knowledge_documents", values))
        return self.get_document(doc.tenant_id, doc.id)  # type: ignore[return-value]

    def get_document(self, tenant_id: str, document_id: str) -> KnowledgeDocument | None:
        """Return the document, or None if missing or owned by another tenant."""
        row = self._conn.execute(
            "SELECT * FROM knowledge_documents WHERE id = ? AND tenant_id = ?",
            (document_id, tenant_id),
        ).fetchone()
        return row_to_model(KnowledgeDocument, row) if row else None

    def list_documents(self, tenant_id: str) -> list[KnowledgeDocument]:
        """All documents of *tenant_id*, newest first."""
        rows = self._conn.execute(
            "SELECT * FROM knowledge_documents WHERE tenant_id = ? "
            "ORDER BY created_at DESC, rowid DESC",
            (tenant_id,),
        ).fetchall()
        return [row_to_model(KnowledgeDocument, r) for r in rows]

    def begin_reingest(self, tenant_id: str, document_id: str) -> KnowledgeDocument:
        """Move an ``active`` or ``failed`` document back to ``processing``.

        Raises:
            DocumentNotFoundError: Unknown document or wrong tenant.
            ValidationError: Document is processing or disabled.
        """

        def _body(tx: Transaction) -> None:
            row = tx.get(
                "SELECT status FROM knowledge_documents WHERE id = ? AND tenant_id = ?",
                (document_id, tenant_id),
            )
            if row is None:
                raise DocumentNotFoundError(f"Document '{document_id}' not found.")
            if row["status"] not in ("active", "failed"):
                raise ValidationError(
                    f"Document '{document_id}' is {row['status']}; "
                    "only active or failed documents can be re-ingested."
                )
            self._drop_vec_rows(tx, document_id)
            tx.execute(
                f"UPDATE knowledge_documents SET status = 'processing', "
                f"error_code = NULL, error_message = NULL, updated_at = {_NOW} WHERE id = ?",
                (document_id,),
            )

        run_transaction(self._conn, _body)
        return self.get_document(tenant_id, document_id)  # type: ignore[return-value]

    def mark_document_failed(self, document_id: str, code: str, message: str) -> bool:
        """Best-effort flip to ``failed``, dropping the document's vec rows.

        Returns False (and logs) if the write fails.
        """

        def _body(tx: Transaction) -> None:
            self._drop_vec_rows(tx, document_id)
            tx.execute(
                f"UPDATE knowledge_documents SET status = 'failed', error_code = ?, "
                f"error_message = ?, updated_at = {_NOW} WHERE id = ?",
                (code, message[:500], document_id),
            )

        try:
            run_transaction(self._conn, _body)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "Could not mark document failed: %s",
                exc,
                extra={"document_id": document_id, "error_code": code},
            )
            return False
        return True

    def finalize_document(
        self,
        document_id: str,
        chunk_ids: list[str],
        content_hash: str,
        mime_type: str | None = None,
        page_count: int | None = None,
    ) -> int:
        """Atomically reconcile chunks and flip the document to ``active``.

        Chunks of this document that the current run did not produce are
        removed together with their vec rows; the produced chunks enter the
        vec index in the same transaction. The stored count must equal
        ``len(chunk_ids)`` or the transaction aborts.

        Returns:
            The final chunk count.
        """
        produced = set(chunk_ids)

        def _body(tx: Transaction) -> int:
            rows = tx.query(
                "SELECT id, chunk_id FROM knowledge_chunks WHERE document_id = ?",
                (document_id,),
            )
            stale = [r["id"] for r in rows if r["chunk_id"] not in produced]
            live = [r["id"] for r in rows if r["chunk_id"] in produced]
            stored = len(live)
            if stored != len(produced):
                raise StoreError(
                    f"Chunk rollup mismatch for document '{document_id}': "
                    f"stored {stored}, produced {len(produced)}."
                )
            for rowid in stale:
                tx.execute(f"DELETE FROM {self._vec_table} WHERE rowid = ?", (rowid,))
                tx.execute("DELETE FROM knowledge_chunks WHERE id = ?", (rowid,))
            for rowid in live:
                tx.execute(f"DELETE FROM {self._vec_table} WHERE rowid = ?", (rowid,))
                tx.execute(
                    f"INSERT INTO {self._vec_table} (rowid, tenant_id, embedding) "
                    "SELECT id, tenant_id, embedding FROM knowledge_chunks WHERE id = ?",
                    (rowid,),
                )
            tx.execute(
                f"UPDATE knowledge_documents SET status = 'active', chunk_count = ?, "
                f"content_hash = ?, mime_type = COALESCE(?, mime_type), page_count = ?, "
                f"error_code = NULL, error_message = NULL, updated_at = {_NOW} WHERE id = ?",
                (stored, content_hash, mime_type, page_count, document_id),
            )
            return stored

        return run_transaction(self._conn, _body)

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    def count_active_chunks(self, tenant_id: str, exclude_document_id: str | None = None) -> int:
        """Active chunks of the tenant's active documents, optionally excluding one document."""
        sql = (
            "SELECT COUNT(*) FROM knowledge_chunks c "
            "JOIN knowledge_documents d ON d.id = c.document_id "
            "WHERE c.tenant_id = ? AND c.status = 'active' AND d.status = 'active'"
        )
        params: list = [tenant_id]
        if exclude_document_id is not None:
            sql += " AND c.document_id != ?"
            params.append(exclude_document_id)
        return self._conn.execute(sql, params).fetchone()[0]

    def upsert_chunk_op(self, chunk: KnowledgeChunk) -> WriteOp:
        """Return a write op that upserts *chunk* keyed by ``(document_id, chunk_id)``.

        An existing row keeps its embedding; only index and status are
        refreshed. The chunk stays out of the vec index until
        ``finalize_document``.
        """
        table = self._vec_table
        blob = serialize(chunk.embedding)

        def _op(tx: Transaction) -> None:
            row = tx.execute(
                """
                INSERT INTO knowledge_chunks
                    (chunk_id, tenant_id, document_id, source_name, chunk_index,
                     text, embedding, status)
                VALUES (?, ?, ?, ?, ?, ?, ?, 'active')
                ON CONFLICT (document_id, chunk_id) DO UPDATE SET
                    chunk_index = excluded.chunk_index,
                    source_name = excluded.source_name,
                    status = 'active'
                RETURNING id
                """,
                (
                    chunk.chunk_id,
                    chunk.tenant_id,
                    chunk.document_id,
                    chunk.source_name,
                    chunk.chunk_index,
                    chunk.text,
                    blob,
                ),
            ).fetchone()
            chunk.rowid = row[0]
            tx.execute(f"DELETE FROM {table} WHERE rowid = ?", (chunk.rowid,))

        return _op

    def _drop_vec_rows(self, tx: Transaction, document_id: str) -> None:
        rowids = [
            r["id"]
            for r in tx.query(
                "SELECT id FROM knowledge_chunks WHERE document_id = ?", (document_id,)
            )
        ]
        for rowid in rowids:
            tx.execute(f"DELETE FROM {self._vec_table} WHERE rowid = ?", (rowid,))

    def list_chunks(self, document_id: str, limit: int | None = None) -> list[KnowledgeChunk]:
        """Chunks of *document_id* in ordinal order."""
        sql = "SELECT * FROM knowledge_chunks WHERE document_id = ? ORDER BY chunk_index"
        params: list = [document_id]
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [_row_to_chunk(r) for r in self._conn.execute(sql, params).fetchall()]

    def chunk_writer(
        self, max_ops_per_commit: int, on_commit: Callable[[int, int], None] | None = None
    ) -> ChunkedWriter:
        """Bounded-commit writer over this repository's connection."""
        return ChunkedWriter(self._conn, max_ops_per_commit, on_commit)

    def count_vec_rows(self, tenant_id: str) -> int:
        """Number of vec index rows in the tenant's partition."""
        return self._conn.execute(
            f"SELECT COUNT(*) FROM {self._vec_table} WHERE tenant_id = ?", (tenant_id,)
        ).fetchone()[0]

    # ------------------------------------------------------------------
    # Status cascade
    # ------------------------------------------------------------------

    def set_document_status(
        self,
        tenant_id: str,
        document_id: str,
        status: str,
        max_ops_per_commit: int,
        on_commit: Callable[[int, int], None] | None = None,
    ) -> int:
        """Set an ``active``/``disabled`` document's status and cascade it to every chunk.

        Disabling flips the document first so retrieval stops immediately,
        then chunks follow in bounded commits. Enabling restores chunks
        first and flips the document last. Either way, once this returns,
        every chunk mirrors the document status.

        Returns:
            Number of chunks whose status changed.
        """
        if status not in _SETTABLE_STATUSES:
            raise ValidationError(
                f"Invalid status '{status}'. Expected one of: {', '.join(_SETTABLE_STATUSES)}."
            )
        doc = self.get_document(tenant_id, document_id)
        if doc is None:
            raise DocumentNotFoundError(f"Document '{document_id}' not found.")
        if doc.status not in _SETTABLE_STATUSES:
            raise ValidationError(
                f"Document '{document_id}' is {doc.status}; status can only be set "
                "on active or disabled documents."
            )

        if status == "disabled":
            self._set_document_row_status(document_id, status)
        changed = self._cascade_chunk_status(document_id, status, max_ops_per_commit, on_commit)
        if status == "active":
            self._set_document_row_status(document_id, status)
        logger.info(
            "Document status set to %s",
            status,
            extra={"tenant_id": tenant_id, "document_id": document_id, "chunk_count": changed},
        )
        return changed

    def _set_document_row_status(self, document_id: str, status: str) -> None:
        run_transaction(
            self._conn,
            lambda tx: tx.execute(
                f"UPDATE knowledge_documents SET status = ?, updated_at = {_NOW} WHERE id = ?",
                (status, document_id),
            ),
        )

    def _cascade_chunk_status(
        self,
        document_id: str,
        status: str,
        max_ops_per_commit: int,
        on_commit: Callable[[int, int], None] | None,
    ) -> int:
        rowids = [
            r[0]
            for r in self._conn.execute(
                "SELECT id FROM knowledge_chunks WHERE document_id = ? AND status != ? "
                "ORDER BY chunk_index",
                (document_id, status),
            ).fetchall()
        ]
        with ChunkedWriter(self._conn, max_ops_per_commit, on_commit) as writer:
            for rowid in rowids:
                writer.add(self._chunk_status_op(rowid, status))
        return len(rowids)

    def _chunk_status_op(self, rowid: int, status: str) -> WriteOp:
        table = self._vec_table

        def _op(tx: Transaction) -> None:
            tx.execute("UPDATE knowledge_chunks SET status = ? WHERE id = ?", (status, rowid))
            tx.execute(f"DELETE FROM {table} WHERE rowid = ?", (rowid,))
            if status == "active":
                tx.execute(
                    f"INSERT INTO {table} (rowid, tenant_id, embedding) "
                    "SELECT id, tenant_id, embedding FROM knowledge_chunks WHERE id = ?",
                    (rowid,),
                )

        return _op

    # ------------------------------------------------------------------
    # Vector search
    # ------------------------------------------------------------------

    def search(
        self, tenant_id: str, embedding: list[float], k: int
    ) -> list[tuple[KnowledgeChunk, float]]:
        """Nearest neighbours in the tenant's partition, in search order.

        Only chunks that are active and belong to an active document are
        returned. Distance is cosine distance (lower is better).
        """
        knn = self._conn.execute(
            f"SELECT rowid, distance FROM {self._vec_table} "
            "WHERE embedding MATCH ? AND k = ? AND tenant_id = ?",
            (serialize(embedding), k, tenant_id),
        ).fetchall()
        if not knn:
            return []

        rowids = [r["rowid"] for r in knn]
        placeholders = ",".join("?" * len(rowids))
        rows = self._conn.execute(
            f"""
            SELECT c.* FROM knowledge_chunks c
            JOIN knowledge_documents d ON d.id = c.document_id
            WHERE c.id IN ({placeholders})
              AND c.tenant_id = ? AND c.status = 'active' AND d.status = 'active'
            """,  # noqa: S608
            (*rowids, tenant_id),
        ).fetchall()
        by_rowid = {r["id"]: r for r in rows}

        results: list[tuple[KnowledgeChunk, float]] = []
        for vec_row in knn:
            row = by_rowid.get(vec_row["rowid"])
            if row is not None:
                results.append((_row_to_chunk(row, with_embedding=False), vec_row["distance"]))
        return results


# ------------------------------------------------------------------
# Row → model helpers
# ------------------------------------------------------------------


def _row_to_chunk(row: sqlite3.Row, with_embedding: bool = True) -> KnowledgeChunk:
    chunk = row_to_model(KnowledgeChunk, row)
    chunk.rowid = row["id"]
    if with_embedding:
        chunk.embedding = _deserialize(row["embedding"])
    return chunk


def _deserialize(blob: bytes) -> list[float]:
    return list(struct.unpack(f"{len(blob) // 4}f", blob))
