"""Ingestion pipeline: source → text → chunks → embeddings → Chunk Store.

A document is created in ``processing`` and only reaches ``active`` inside
the finalize transaction, after every chunk is durably written and the stored
count matches. Any failure flips it to ``failed`` (best effort) with a
structured code and raises ``IngestionError``.

Chunk writes are keyed by ``(document_id, sha256(text))`` so a retried or
re-ingested document never duplicates a chunk, and a chunk's embedding is
never recomputed once stored.
"""

from __future__ import annotations

import logging
import time
import uuid

from concierge.config import ConciergeConfig
from concierge.db.models import KnowledgeChunk, KnowledgeDocument
from concierge.db.repository import KnowledgeRepository
from concierge.errors import (
    DimensionMismatchError,
    DocumentLimitError,
    IngestionError,
    ProviderError,
    ProviderTimeoutError,
    StoreError,
    TenantNotFoundError,
)
from concierge.ingest.extract import ExtractionError, KnowledgeSource, extract_text
from concierge.ingest.splitter import TextSplitter, dedupe_segments, sha256_hex
from concierge.providers import EmbeddingProvider, GenerationProvider

logger = logging.getLogger(__name__)

EXTRACTION_FAILED = "EXTRACTION_FAILED"
CONTENT_TOO_SHORT = "CONTENT_TOO_SHORT"
CHUNK_LIMIT_EXCEEDED = "CHUNK_LIMIT_EXCEEDED"
EMBEDDING_FAILED = "EMBEDDING_FAILED"
STORE_FAILED = "STORE_FAILED"
INGEST_FAILED = "INGEST_FAILED"


class _StageFailure(Exception):
    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class IngestionPipeline:
    """Run ingestion for one tenant's knowledge sources.

    Args:
        repo: Knowledge repository bound to the configured vec table.
        embedder: Embedding provider whose ``dimensions`` match the vec table.
        config: Process-wide configuration.
        vision: Generation provider used to read image sources (optional).
    """

    def __init__(
        self,
        repo: KnowledgeRepository,
        embedder: EmbeddingProvider,
        config: ConciergeConfig,
        vision: GenerationProvider | None = None,
    ) -> None:
        self._repo = repo
        self._embedder = embedder
        self._config = config
        self._vision = vision
        ing = config.ingestion
        self._splitter = TextSplitter(
            chunk_size=ing.chunk_size,
            boundary_slack=ing.boundary_slack,
            min_chunk_chars=ing.min_chunk_chars,
        )

    def ingest(
        self, tenant_id: str, source: KnowledgeSource, deadline: float | None = None
    ) -> str:
        """Create a document for *source* and ingest it. Returns the document id.

        Args:
            deadline: Absolute ``time.monotonic()`` value after which no further
                embedding call is started.

        Raises:
            ValidationError: Bad source; nothing was written.
            TenantNotFoundError: Unknown tenant; nothing was written.
            DocumentLimitError: Tenant already holds ``limits.max_docs`` documents.
            IngestionError: Processing failed; the document is marked ``failed``.
        """
        source.validate()
        if self._repo.get_tenant(tenant_id) is None:
            raise TenantNotFoundError(f"Tenant '{tenant_id}' not found.")

        # Check-then-create: two racing requests may both pass at max_docs - 1.
        current = self._repo.count_documents(tenant_id)
        limit = self._config.limits.max_docs
        if current >= limit:
            raise DocumentLimitError(
                f"Document limit reached ({current}/{limit}).", current=current, limit=limit
            )

        doc = self._repo.create_document(
            KnowledgeDocument(
                id=uuid.uuid4().hex,
                tenant_id=tenant_id,
                source_type=source.source_type,
                source_name=source.source_name.strip(),
                status="processing",
                source_text=source.text,
                source_url=source.url,
                file_path=source.file_path,
                mime_type=source.mime_type,
            )
        )
        logger.info(
            "Document created",
            extra={"tenant_id": tenant_id, "document_id": doc.id},
        )
        self._run(doc, source, deadline)
        return doc.id

    def reingest(self, tenant_id: str, document_id: str, deadline: float | None = None) -> str:
        """Re-run ingestion of an existing ``active`` or ``failed`` document from its stored payload."""
        doc = self._repo.begin_reingest(tenant_id, document_id)
        source = KnowledgeSource(
            source_type=doc.source_type,
            source_name=doc.source_name,
            text=doc.source_text,
            url=doc.source_url,
            file_path=doc.file_path,
            mime_type=doc.mime_type,
        )
        self._run(doc, source, deadline)
        return doc.id

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def _run(self, doc: KnowledgeDocument, source: KnowledgeSource, deadline: float | None) -> None:
        try:
            self._process(doc, source, deadline)
        except _StageFailure as exc:
            raise self._fail(doc, exc.code, str(exc)) from exc
        except StoreError as exc:
            raise self._fail(doc, STORE_FAILED, str(exc)) from exc
        except Exception as exc:
            raise self._fail(doc, INGEST_FAILED, str(exc) or type(exc).__name__) from exc

    def _process(
        self, doc: KnowledgeDocument, source: KnowledgeSource, deadline: float | None
    ) -> None:
        limits = self._config.limits
        try:
            extracted = extract_text(
                source,
                max_upload_mb=limits.max_upload_mb,
                max_pdf_pages=limits.max_pdf_pages,
                vision=self._vision,
            )
        except (ExtractionError, ProviderError, OSError) as exc:
            raise _StageFailure(EXTRACTION_FAILED, str(exc)) from exc

        text = extracted.text
        min_chars = self._config.ingestion.min_chunk_chars
        if len(text) < min_chars:
            raise _StageFailure(
                CONTENT_TOO_SHORT,
                f"Extracted text too short to ingest ({len(text)} < {min_chars} characters).",
            )

        unique = dedupe_segments(self._splitter.split(text))
        other_active = self._repo.count_active_chunks(doc.tenant_id, exclude_document_id=doc.id)
        if other_active + len(unique) > limits.max_chunks:
            raise _StageFailure(
                CHUNK_LIMIT_EXCEEDED,
                f"Chunk limit exceeded: {other_active}+{len(unique)} > {limits.max_chunks}.",
            )

        stored = {c.chunk_id: c.embedding for c in self._repo.list_chunks(doc.id)}
        started = time.monotonic()

        def _checkpoint(commit: int, ops: int) -> None:
            logger.debug(
                "Chunk batch %d committed (%d ops)",
                commit,
                ops,
                extra={"document_id": doc.id, "chunk_count": ops},
            )

        writer = self._repo.chunk_writer(self._config.ingestion.write_batch_size, _checkpoint)
        with writer:
            for index, (chunk_id, segment) in enumerate(unique):
                embedding = stored.get(chunk_id)
                if embedding is None:
                    embedding = self._embed(segment, deadline)
                writer.add(
                    self._repo.upsert_chunk_op(
                        KnowledgeChunk(
                            chunk_id=chunk_id,
                            tenant_id=doc.tenant_id,
                            document_id=doc.id,
                            chunk_index=index,
                            text=segment,
                            embedding=embedding,
                            source_name=doc.source_name,
                        )
                    )
                )

        count = self._repo.finalize_document(
            doc.id,
            [chunk_id for chunk_id, _ in unique],
            content_hash=sha256_hex(text),
            mime_type=extracted.mime_type,
            page_count=extracted.page_count,
        )
        logger.info(
            "Document ingested",
            extra={
                "tenant_id": doc.tenant_id,
                "document_id": doc.id,
                "chunk_count": count,
                "latency_ms": int((time.monotonic() - started) * 1000),
            },
        )

    def _embed(self, text: str, deadline: float | None) -> list[float]:
        timeout = self._config.embedding.timeout
        try:
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise ProviderTimeoutError("Ingestion deadline exceeded before embedding.")
                timeout = min(timeout, remaining)
            return self._embedder.embed(text, timeout=timeout)
        except (ProviderError, DimensionMismatchError) as exc:
            raise _StageFailure(EMBEDDING_FAILED, str(exc)) from exc

    def _fail(self, doc: KnowledgeDocument, code: str, message: str) -> IngestionError:
        logger.error(
            "Ingestion failed: %s",
            message,
            extra={"tenant_id": doc.tenant_id, "document_id": doc.id, "error_code": code},
        )
        self._repo.mark_document_failed(doc.id, code, message)
        return IngestionError(message, document_id=doc.id, code=code)
