"""Tests for the ingestion pipeline: lifecycle, idempotency, failure codes."""

from __future__ import annotations

import time

import pytest

from concierge.errors import (
    DocumentLimitError,
    IngestionError,
    TenantNotFoundError,
    ValidationError,
)
from concierge.ingest.extract import KnowledgeSource
from concierge.ingest.pipeline import (
    CHUNK_LIMIT_EXCEEDED,
    CONTENT_TOO_SHORT,
    EMBEDDING_FAILED,
    EXTRACTION_FAILED,
    IngestionPipeline,
)

KNOWLEDGE = "\n".join(
    [
        "We open every day from 8am to 6pm and serve breakfast until 11am. " * 2,
        "Our espresso is roasted locally and we offer oat, soy and almond milk. " * 2,
        "Parking is available behind the building and dogs are welcome on the terrace. " * 2,
    ]
)


def _text(name: str = "About us", text: str = KNOWLEDGE) -> KnowledgeSource:
    return KnowledgeSource("text", name, text=text)


@pytest.fixture
def pipeline(repo, embedder, config, generator):
    return IngestionPipeline(repo, embedder, config, vision=generator)


def test_ingest_activates_document(pipeline, repo, tenant):
    doc_id = pipeline.ingest("t1", _text())

    doc = repo.get_document("t1", doc_id)
    assert doc.status == "active"
    assert doc.chunk_count > 1
    assert doc.content_hash is not None
    assert doc.mime_type == "text/plain"
    chunks = repo.list_chunks(doc_id)
    assert [c.chunk_index for c in chunks] == list(range(len(chunks)))
    assert repo.count_vec_rows("t1") == doc.chunk_count


def test_reingest_reuses_stored_embeddings(pipeline, repo, embedder, tenant):
    doc_id = pipeline.ingest("t1", _text())
    calls_after_first = len(embedder.calls)
    count = repo.get_document("t1", doc_id).chunk_count

    pipeline.reingest("t1", doc_id)

    assert len(embedder.calls) == calls_after_first
    doc = repo.get_document("t1", doc_id)
    assert doc.status == "active"
    assert doc.chunk_count == count
    assert len(repo.list_chunks(doc_id)) == count
    assert repo.count_vec_rows("t1") == count


def test_duplicate_segments_stored_once(pipeline, repo, tenant):
    paragraph = "x" * 199 + "\n"
    doc_id = pipeline.ingest("t1", _text(text=paragraph * 3))
    assert repo.get_document("t1", doc_id).chunk_count == 1


def test_unknown_tenant_writes_nothing(pipeline, repo):
    with pytest.raises(TenantNotFoundError):
        pipeline.ingest("ghost", _text())
    assert repo.count_documents("ghost") == 0


def test_invalid_source_writes_nothing(pipeline, repo, tenant):
    with pytest.raises(ValidationError):
        pipeline.ingest("t1", KnowledgeSource("docx", "x", file_path="x.docx"))
    assert repo.count_documents("t1") == 0


def test_document_limit(pipeline, repo, config, tenant):
    config.limits.max_docs = 1
    pipeline.ingest("t1", _text())
    with pytest.raises(DocumentLimitError) as exc_info:
        pipeline.ingest("t1", _text("Second"))
    assert exc_info.value.current == 1
    assert exc_info.value.limit == 1
    assert repo.count_documents("t1") == 1


def _assert_failed(repo, exc_info, code):
    assert exc_info.value.code == code
    doc = repo.get_document("t1", exc_info.value.document_id)
    assert doc.status == "failed"
    assert doc.error_code == code
    assert doc.error_message


def test_content_too_short(pipeline, repo, tenant):
    with pytest.raises(IngestionError) as exc_info:
        pipeline.ingest("t1", _text(text="Too short"))
    _assert_failed(repo, exc_info, CONTENT_TOO_SHORT)


def test_chunk_limit_exceeded(pipeline, repo, config, tenant):
    config.limits.max_chunks = 1
    with pytest.raises(IngestionError) as exc_info:
        pipeline.ingest("t1", _text())
    _assert_failed(repo, exc_info, CHUNK_LIMIT_EXCEEDED)
    assert repo.count_vec_rows("t1") == 0


def test_embedding_failure(pipeline, repo, embedder, tenant):
    embedder.fail_on = "Parking"
    with pytest.raises(IngestionError) as exc_info:
        pipeline.ingest("t1", _text())
    _assert_failed(repo, exc_info, EMBEDDING_FAILED)
    assert repo.count_active_chunks("t1") == 0


def test_deadline_exceeded(pipeline, repo, tenant):
    with pytest.raises(IngestionError) as exc_info:
        pipeline.ingest("t1", _text(), deadline=time.monotonic() - 1)
    _assert_failed(repo, exc_info, EMBEDDING_FAILED)
    assert "deadline" in exc_info.value.args[0]


def test_missing_file_is_extraction_failure(pipeline, repo, tenant, tmp_path):
    source = KnowledgeSource("pdf", "Menu", file_path=str(tmp_path / "missing.pdf"))
    with pytest.raises(IngestionError) as exc_info:
        pipeline.ingest("t1", source)
    _assert_failed(repo, exc_info, EXTRACTION_FAILED)


def test_failed_document_can_be_reingested(pipeline, repo, embedder, tenant):
    embedder.fail_on = "Parking"
    with pytest.raises(IngestionError) as exc_info:
        pipeline.ingest("t1", _text())
    doc_id = exc_info.value.document_id

    embedder.fail_on = None
    pipeline.reingest("t1", doc_id)

    doc = repo.get_document("t1", doc_id)
    assert doc.status == "active"
    assert doc.error_code is None


def test_image_source_uses_vision(pipeline, repo, tenant, tmp_path):
    path = tmp_path / "menu.jpg"
    path.write_bytes(b"\xff\xd8")
    doc_id = pipeline.ingest("t1", KnowledgeSource("image", "Menu", file_path=str(path)))

    doc = repo.get_document("t1", doc_id)
    assert doc.status == "active"
    assert doc.mime_type == "image/jpeg"
    assert "espresso" in repo.list_chunks(doc_id)[0].text
