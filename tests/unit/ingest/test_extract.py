"""Tests for source validation and text extraction."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from concierge.errors import ValidationError
from concierge.ingest.extract import ExtractionError, KnowledgeSource, extract_text
from concierge.ingest.pdf import PdfTooLongError, extract_pdf_text


def _extract(source, vision=None, max_upload_mb=10, max_pdf_pages=50):
    return extract_text(
        source, max_upload_mb=max_upload_mb, max_pdf_pages=max_pdf_pages, vision=vision
    )


def _mock_reader(page_texts: list[str]):
    pages = []
    for text in page_texts:
        page = MagicMock()
        page.extract_text.return_value = text
        pages.append(page)
    reader = MagicMock()
    reader.pages = pages
    return reader


# ------------------------------------------------------------------
# Validation
# ------------------------------------------------------------------


def test_validate_rejects_unknown_type():
    with pytest.raises(ValidationError, match="Unsupported source type"):
        KnowledgeSource("docx", "menu.docx", file_path="menu.docx").validate()


def test_validate_requires_name():
    with pytest.raises(ValidationError, match="source_name"):
        KnowledgeSource("text", "  ", text="hello").validate()


@pytest.mark.parametrize(
    "source_type, field",
    [("text", "text"), ("url", "url"), ("pdf", "file_path"), ("image", "file_path")],
)
def test_validate_requires_payload(source_type, field):
    with pytest.raises(ValidationError, match=field):
        KnowledgeSource(source_type, "name").validate()


# ------------------------------------------------------------------
# Extraction
# ------------------------------------------------------------------


def test_text_is_normalized():
    result = _extract(KnowledgeSource("text", "t", text="  line one\r\nline two  "))
    assert result.text == "line one\nline two"
    assert result.mime_type == "text/plain"


def test_url_fetch_failure_becomes_extraction_error():
    with patch("concierge.ingest.extract.fetch_url_text", side_effect=ValueError("blocked")):
        with pytest.raises(ExtractionError, match="blocked"):
            _extract(KnowledgeSource("url", "site", url="http://10.0.0.1/"))


def test_url_text_returned():
    with patch("concierge.ingest.extract.fetch_url_text", return_value="Opening hours 9-5"):
        result = _extract(KnowledgeSource("url", "site", url="https://example.com"))
    assert result.text == "Opening hours 9-5"


def test_missing_file_raises(tmp_path):
    source = KnowledgeSource("pdf", "menu", file_path=str(tmp_path / "missing.pdf"))
    with pytest.raises(ExtractionError, match="not found"):
        _extract(source)


def test_upload_size_cap(tmp_path):
    path = tmp_path / "big.pdf"
    path.write_bytes(b"0" * (1024 * 1024 + 1))
    with pytest.raises(ExtractionError, match="too large"):
        _extract(KnowledgeSource("pdf", "big", file_path=str(path)), max_upload_mb=1)


def test_pdf_text_and_page_count(tmp_path):
    path = tmp_path / "menu.pdf"
    path.write_bytes(b"%PDF-1.4")
    with patch("concierge.ingest.pdf.pypdf.PdfReader", return_value=_mock_reader(["Page one", "", "Page three"])):
        result = _extract(KnowledgeSource("pdf", "menu", file_path=str(path)))
    assert result.text == "Page one\n\nPage three"
    assert result.page_count == 3
    assert result.mime_type == "application/pdf"


def test_pdf_page_cap(tmp_path):
    with patch("concierge.ingest.pdf.pypdf.PdfReader", return_value=_mock_reader(["p"] * 4)):
        with pytest.raises(PdfTooLongError, match="4 pages"):
            extract_pdf_text(tmp_path / "x.pdf", max_pages=3)


def test_pdf_page_cap_surfaces_as_extraction_error(tmp_path):
    path = tmp_path / "long.pdf"
    path.write_bytes(b"%PDF-1.4")
    with patch("concierge.ingest.pdf.pypdf.PdfReader", return_value=_mock_reader(["p"] * 4)):
        with pytest.raises(ExtractionError, match="too long"):
            _extract(KnowledgeSource("pdf", "long", file_path=str(path)), max_pdf_pages=3)


def test_image_uses_vision_provider(tmp_path):
    path = tmp_path / "menu.png"
    path.write_bytes(b"\x89PNG")
    vision = MagicMock()
    vision.extract_image_text.return_value = "Espresso 2 EUR\n"
    result = _extract(KnowledgeSource("image", "menu", file_path=str(path)), vision=vision)

    assert result.text == "Espresso 2 EUR"
    assert result.mime_type == "image/png"
    vision.extract_image_text.assert_called_once_with(b"\x89PNG", "image/png")


def test_image_without_vision_provider(tmp_path):
    path = tmp_path / "menu.png"
    path.write_bytes(b"\x89PNG")
    with pytest.raises(ExtractionError, match="vision"):
        _extract(KnowledgeSource("image", "menu", file_path=str(path)))
