"""Best-effort retrieval of tenant document context.

Retrieval must never abort a conversation: every failure mode (embedding
error, empty scope, search error, no matches) is folded into a
``RetrievalResult`` with ``degraded=True`` and a ``DegradedReason`` that
exists purely for logs and metrics.
"""

from __future__ import annotations

import logging
import time
from enum import Enum

from pydantic import BaseModel, Field

from src.interfaces import Embedder, Retriever
from src.models import RetrievedChunk
from src.services.metrics import metrics

logger = logging.getLogger(__name__)

NO_CONTEXT_MARKER = "NO_RELEVANT_INFORMATION"


class DegradedReason(str, Enum):
    EMBEDDING_FAILED = "embedding_failed"
    EMPTY_SCOPE = "empty_scope"
    SEARCH_FAILED = "search_failed"
    NO_MATCHES = "no_matches"
    SKIPPED = "skipped"


class RetrievalResult(BaseModel):
    """Chunks for one turn plus whether the lookup was degraded."""

    chunks: list[RetrievedChunk] = Field(default_factory=list)
    degraded: bool = False
    reason: DegradedReason | None = None

    @property
    def context_text(self) -> str | None:
        """Chunk texts in ranked order separated by a blank line."""
        texts = [c.text.strip() for c in self.chunks if c.text and c.text.strip()]
        return "\n\n".join(texts) if texts else None

    @classmethod
    def empty(cls, reason: DegradedReason) -> RetrievalResult:
        return cls(degraded=True, reason=reason)

    @classmethod
    def skipped(cls) -> RetrievalResult:
        """No lookup was attempted (small talk); not counted as a failure."""
        return cls(degraded=False, reason=DegradedReason.SKIPPED)


class RetrievalAggregator:
    """Embeds the query and pulls the top-K chunks within a tenant's scope."""

    def __init__(self, embedder: Embedder, retriever: Retriever) -> None:
        self._embedder = embedder
        self._retriever = retriever

    def _degrade(self, reason: DegradedReason, detail: str = "") -> RetrievalResult:
        logger.warning("Retrieval degraded (%s) %s", reason.value, detail)
        metrics.record_degradation("retrieval", reason.value)
        return RetrievalResult.empty(reason)

    def fetch_context(self, query: str, scope_file_ids: list[str], top_k: int = 5) -> RetrievalResult:
        scope = [file_id for file_id in scope_file_ids or [] if file_id]
        if not scope:
            return self._degrade(DegradedReason.EMPTY_SCOPE)

        t0 = time.perf_counter()
        try:
            vector = self._embedder.embed(query)
        except Exception as exc:
            return self._degrade(DegradedReason.EMBEDDING_FAILED, f"{type(exc).__name__}: {exc}")
        if not vector:
            return self._degrade(DegradedReason.EMBEDDING_FAILED, "empty vector")

        try:
            chunks = self._retriever.search(vector, scope, top_k)
        except Exception as exc:
            return self._degrade(DegradedReason.SEARCH_FAILED, f"{type(exc).__name__}: {exc}")

        chunks = sorted(chunks or [], key=lambda c: c.relevance_score, reverse=True)[:top_k]
        if not chunks:
            return self._degrade(DegradedReason.NO_MATCHES, f"scope={len(scope)} files")

        logger.debug(
            "Retrieved %d chunks from %d files in %.0fms",
            len(chunks), len(scope), (time.perf_counter() - t0) * 1000,
        )
        return RetrievalResult(chunks=chunks)
