"""Overlap-free text splitter with sentence/newline boundary snapping."""

from __future__ import annotations

import hashlib


def normalize_text(text: str) -> str:
    """CRLF → LF, then strip surrounding whitespace."""
    return text.replace("\r\n", "\n").strip()


def sha256_hex(text: str) -> str:
    """Stable content key: SHA-256 hex digest of the UTF-8 text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class TextSplitter:
    """Split text into bounded, overlap-free segments.

    Strategy:
    - Take a window of ``chunk_size`` characters from the current position.
    - If the window does not reach the end of the text, look for the next
      sentence end (".") or newline at or after the window end. When that
      boundary is less than ``boundary_slack`` characters away, extend the
      window to it.
    - The next window starts exactly where this one ended.
    - Segments are stripped; those shorter than ``min_chunk_chars`` are dropped.

    Order of the returned segments follows the source text.
    """

    def __init__(
        self,
        chunk_size: int = 1200,
        boundary_slack: int = 200,
        min_chunk_chars: int = 50,
    ) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        if boundary_slack < 0:
            raise ValueError("boundary_slack must be >= 0")
        self.chunk_size = chunk_size
        self.boundary_slack = boundary_slack
        self.min_chunk_chars = min_chunk_chars

    def split(self, text: str) -> list[str]:
        segments: list[str] = []
        length = len(text)
        start = 0

        while start < length:
            end = min(start + self.chunk_size, length)
            if end < length:
                boundary = self._next_boundary(text, end)
                if boundary - end < self.boundary_slack:
                    end = boundary

            segment = text[start:end].strip()
            if len(segment) >= self.min_chunk_chars:
                segments.append(segment)
            start = end

        return segments

    @staticmethod
    def _next_boundary(text: str, pos: int) -> int:
        """Index just past the next '.' or at the next newline, whichever is first."""
        length = len(text)
        period = text.find(".", pos)
        newline = text.find("\n", pos)
        return min(
            period + 1 if period != -1 else length,
            newline if newline != -1 else length,
        )


def dedupe_segments(segments: list[str]) -> list[tuple[str, str]]:
    """Drop repeated segments, keeping first occurrence.

    Returns:
        ``[(chunk_id, text), ...]`` where ``chunk_id`` is the SHA-256 of the
        text and the list position is the chunk's ordinal index.
    """
    seen: set[str] = set()
    unique: list[tuple[str, str]] = []
    for segment in segments:
        key = sha256_hex(segment)
        if key in seen:
            continue
        seen.add(key)
        unique.append((key, segment))
    return unique
