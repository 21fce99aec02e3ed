"""Dense retriever over the tenant-partitioned vec index.

Pipeline, in order:
  1. Embed the question with the deployment's embedding provider.
  2. KNN search in the tenant's partition, breadth ``top_k_retrieve``.
  3. Drop candidates whose cosine distance exceeds ``score_threshold``.
  4. Diversity cap: walk in score order, accept at most ``max_chunks_per_doc``
     chunks per document, skipping past a capped document.
  5. Stop at ``top_n_return`` accepted chunks.

Ties in distance keep the order the search returned them in.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

from concierge.config import RetrievalCfg
from concierge.db.models import KnowledgeChunk
from concierge.db.repository import KnowledgeRepository
from concierge.db.vectors import check_dimensions
from concierge.providers import EmbeddingProvider

logger = logging.getLogger(__name__)


@dataclass
class ContextSource:
    """Citation for one chunk placed in the context."""

    doc_id: str
    chunk_id: str
    source_name: str
    score: float

    def to_dict(self) -> dict:
        return {
            "doc_id": self.doc_id,
            "chunk_id": self.chunk_id,
            "source_name": self.source_name,
            "score": self.score,
        }


@dataclass
class RetrievalResult:
    has_context: bool = False
    context_text: str = ""
    sources: list[ContextSource] = field(default_factory=list)


def select_context(
    candidates: list[tuple[KnowledgeChunk, float]],
    config: RetrievalCfg,
) -> RetrievalResult:
    """Apply threshold, diversity cap and return cap to score-ordered candidates.

    Pure function: *candidates* is the search result, best first.
    """
    per_doc: dict[str, int] = {}
    selected: list[tuple[KnowledgeChunk, float]] = []

    for chunk, score in candidates:
        if len(selected) >= config.top_n_return:
            break
        if score > config.score_threshold:
            continue
        taken = per_doc.get(chunk.document_id, 0)
        if taken >= config.max_chunks_per_doc:
            continue
        per_doc[chunk.document_id] = taken + 1
        selected.append((chunk, score))

    if not selected:
        return RetrievalResult()

    context_text = "\n\n".join(f"[{i}] {chunk.text}" for i, (chunk, _) in enumerate(selected, 1))
    sources = [
        ContextSource(
            doc_id=chunk.document_id,
            chunk_id=chunk.chunk_id,
            source_name=chunk.source_name or "Unknown",
            score=score,
        )
        for chunk, score in selected
    ]
    return RetrievalResult(has_context=True, context_text=context_text, sources=sources)


class Retriever:
    """Question → bounded, diversified context for one tenant."""

    def __init__(
        self,
        repo: KnowledgeRepository,
        embedder: EmbeddingProvider,
        config: RetrievalCfg,
        timeout: float | None = None,
    ) -> None:
        self._repo = repo
        self._embedder = embedder
        self._config = config
        self._timeout = timeout

    def retrieve(self, tenant_id: str, question: str) -> RetrievalResult:
        """Return the context for *question*.

        No qualifying chunk is not an error: the result has
        ``has_context=False``, an empty context and no sources.

        Raises:
            ProviderError: The question could not be embedded.
            DimensionMismatchError: The query vector has the wrong length.
        """
        started = time.monotonic()
        vector = self._embedder.embed(question, timeout=self._timeout)
        check_dimensions(vector, self._embedder.dimensions)

        candidates = self._repo.search(tenant_id, vector, self._config.top_k_retrieve)
        result = select_context(candidates, self._config)
        logger.info(
            "Retrieved %d candidates, selected %d",
            len(candidates),
            len(result.sources),
            extra={
                "tenant_id": tenant_id,
                "chunk_count": len(result.sources),
                "latency_ms": int((time.monotonic() - started) * 1000),
            },
        )
        return result
