"""Concierge ingest pipeline: extraction, splitting, embedding and chunk writes."""

from concierge.ingest.extract import KnowledgeSource, extract_text
from concierge.ingest.pipeline import IngestionPipeline
from concierge.ingest.splitter import TextSplitter, normalize_text, sha256_hex

__all__ = [
    "IngestionPipeline",
    "KnowledgeSource",
    "TextSplitter",
    "extract_text",
    "normalize_text",
    "sha256_hex",
]
