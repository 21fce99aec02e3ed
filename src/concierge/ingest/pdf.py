"""PDF text extraction via pypdf."""

from __future__ import annotations

from pathlib import Path

import pypdf


class PdfTooLongError(ValueError):
    """Raised when a PDF has more pages than the configured cap."""


def extract_pdf_text(path: Path | str, max_pages: int) -> tuple[str, int]:
    """Extract all page text from the PDF at *path*.

    Pages that yield no text (scanned images, etc.) are skipped.

    Returns:
        ``(text, page_count)``; page texts joined by a blank line.

    Raises:
        PdfTooLongError: If the document exceeds *max_pages*.
    """
    reader = pypdf.PdfReader(str(path))
    page_count = len(reader.pages)
    if page_count > max_pages:
        raise PdfTooLongError(f"PDF too long ({page_count} pages), max {max_pages}.")

    parts: list[str] = []
    for page in reader.pages:
        stripped = (page.extract_text() or "").strip()
        if stripped:
            parts.append(stripped)
    return "\n\n".join(parts), page_count
