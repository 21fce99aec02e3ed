"""Knowledge sources and per-type text extraction."""

from __future__ import annotations

import mimetypes
from dataclasses import dataclass
from pathlib import Path

from concierge.db.models import SOURCE_TYPES
from concierge.errors import ValidationError
from concierge.ingest.pdf import extract_pdf_text
from concierge.ingest.splitter import normalize_text
from concierge.ingest.web import fetch_url_text
from concierge.providers import GenerationProvider


class ExtractionError(RuntimeError):
    """Raised when a source cannot be turned into text."""


@dataclass
class KnowledgeSource:
    """Raw input to ingestion: a type plus its type-specific payload.

    ``text`` for ``text``; ``url`` for ``url``; ``file_path`` for ``pdf``
    and ``image`` (``mime_type`` optional, guessed from the file name).
    """

    source_type: str
    source_name: str
    text: str | None = None
    url: str | None = None
    file_path: str | None = None
    mime_type: str | None = None

    def validate(self) -> None:
        """Reject unsupported types and missing payload before any write."""
        if self.source_type not in SOURCE_TYPES:
            raise ValidationError(
                f"Unsupported source type '{self.source_type}'. "
                f"Expected one of: {', '.join(SOURCE_TYPES)}."
            )
        if not (self.source_name or "").strip():
            raise ValidationError("source_name is required.")
        required = {"text": "text", "url": "url", "pdf": "file_path", "image": "file_path"}
        field_name = required[self.source_type]
        value = getattr(self, field_name)
        if not (value or "").strip():
            raise ValidationError(
                f"'{field_name}' is required for {self.source_type} sources."
            )


@dataclass
class Extracted:
    text: str
    mime_type: str
    page_count: int | None = None


def extract_text(
    source: KnowledgeSource,
    *,
    max_upload_mb: int,
    max_pdf_pages: int,
    vision: GenerationProvider | None = None,
) -> Extracted:
    """Turn *source* into normalized plain text.

    Raises:
        ExtractionError: For any failure reading, fetching or converting the source.
        ProviderError: When the vision model fails on an image.
    """
    if source.source_type == "text":
        return Extracted(text=normalize_text(source.text or ""), mime_type="text/plain")

    if source.source_type == "url":
        try:
            text = fetch_url_text(source.url or "")
        except (ValueError, RuntimeError) as exc:
            raise ExtractionError(str(exc)) from exc
        return Extracted(text=normalize_text(text), mime_type="text/plain")

    path = Path(source.file_path or "")
    _check_upload(path, max_upload_mb)

    if source.source_type == "pdf":
        try:
            text, page_count = extract_pdf_text(path, max_pdf_pages)
        except Exception as exc:
            raise ExtractionError(f"Could not read PDF '{path.name}': {exc}") from exc
        return Extracted(
            text=normalize_text(text), mime_type="application/pdf", page_count=page_count
        )

    # image
    if vision is None:
        raise ExtractionError("No vision model is configured for image sources.")
    mime_type = source.mime_type or mimetypes.guess_type(path.name)[0] or "image/jpeg"
    text = vision.extract_image_text(path.read_bytes(), mime_type)
    return Extracted(text=normalize_text(text), mime_type=mime_type)


def _check_upload(path: Path, max_upload_mb: int) -> None:
    if not path.is_file():
        raise ExtractionError(f"File not found: {path}")
    size = path.stat().st_size
    max_bytes = max_upload_mb * 1024 * 1024
    if size > max_bytes:
        raise ExtractionError(f"Upload too large ({size} bytes), max {max_bytes} bytes.")
