"""Concierge catalog: structured products and services extracted from knowledge."""

from concierge.catalog.extraction import CatalogExtraction, CatalogExtractor, split_sections
from concierge.catalog.store import CatalogStore

__all__ = [
    "CatalogExtraction",
    "CatalogExtractor",
    "CatalogStore",
    "split_sections",
]
