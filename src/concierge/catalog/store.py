"""Catalog item storage.

Items extracted from one document are replaced as a set: every item of the
current run is upserted under its deterministic id, then the document's
other active items are set ``inactive``. Rows are never deleted, so an item
that comes back in a later run keeps its ``created_at``.
"""

from __future__ import annotations

import logging
import sqlite3

from concierge.db.models import CatalogItem, row_to_model
from concierge.db.transaction import Transaction, run_transaction

logger = logging.getLogger(__name__)

_NOW = "strftime('%Y-%m-%dT%H:%M:%fZ', 'now')"

_UPSERT_SQL = f"""
INSERT INTO catalog_items (
    id, tenant_id, document_id, section, name, description,
    price, currency, price_type, tags, status, extraction_run_id
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 'active', ?)
ON CONFLICT (id) DO UPDATE SET
    section = excluded.section,
    name = excluded.name,
    description = excluded.description,
    price = excluded.price,
    currency = excluded.currency,
    price_type = excluded.price_type,
    tags = excluded.tags,
    status = 'active',
    extraction_run_id = excluded.extraction_run_id,
    updated_at = {_NOW}
"""


class CatalogStore:
    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn

    def replace_document_items(
        self, tenant_id: str, document_id: str, items: list[CatalogItem], run_id: str
    ) -> int:
        """Make *items* the active catalog of *document_id*, in one transaction.

        Returns:
            Number of previously active items of the document set ``inactive``.
        """

        def _body(tx: Transaction) -> int:
            for item in items:
                tx.execute(
                    _UPSERT_SQL,
                    (
                        item.id,
                        tenant_id,
                        document_id,
                        item.section,
                        item.name,
                        item.description,
                        item.price,
                        item.currency,
                        item.price_type,
                        item.tags,
                        run_id,
                    ),
                )
            cursor = tx.execute(
                f"UPDATE catalog_items SET status = 'inactive', updated_at = {_NOW} "
                "WHERE tenant_id = ? AND document_id = ? AND status = 'active' "
                "AND extraction_run_id != ?",
                (tenant_id, document_id, run_id),
            )
            return cursor.rowcount

        deactivated = run_transaction(self._conn, _body)
        if deactivated:
            logger.info(
                "Deactivated previous catalog items",
                extra={"tenant_id": tenant_id, "document_id": document_id, "count": deactivated},
            )
        return deactivated

    def list_items(
        self,
        tenant_id: str,
        document_id: str | None = None,
        include_inactive: bool = False,
    ) -> list[CatalogItem]:
        """Items of *tenant_id* grouped by section, in name order."""
        sql = "SELECT * FROM catalog_items WHERE tenant_id = ?"
        params: list = [tenant_id]
        if document_id is not None:
            sql += " AND document_id = ?"
            params.append(document_id)
        if not include_inactive:
            sql += " AND status = 'active'"
        sql += " ORDER BY section, name, id"
        return [row_to_model(CatalogItem, r) for r in self._conn.execute(sql, params).fetchall()]

    def get_item(self, tenant_id: str, item_id: str) -> CatalogItem | None:
        row = self._conn.execute(
            "SELECT * FROM catalog_items WHERE id = ? AND tenant_id = ?", (item_id, tenant_id)
        ).fetchone()
        return row_to_model(CatalogItem, row) if row else None
