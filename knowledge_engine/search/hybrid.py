"""Hybrid search: run vector and keyword search together and merge.

Each sub-search is asked for ``ceil(limit / 2)`` results, so a request for
N results considers at most N + 1 candidates. Results are concatenated
vector-first and deduplicated by record id (a record found both ways
keeps its similarity), then ranked by ``(similarity or 0) + importance``.
A failed sub-search contributes nothing instead of failing the request.
"""

from __future__ import annotations

import asyncio
import logging
import math
from typing import TYPE_CHECKING

from knowledge_engine.errors import BudgetExceededError, ValidationError
from knowledge_engine.knowledge.models import HybridHit, KeywordHit, VectorHit
from knowledge_engine.search.keyword import keyword_search
from knowledge_engine.search.vector import vector_search

if TYPE_CHECKING:
    from collections.abc import Sequence

    from knowledge_engine.embeddings.cache import EmbeddingCache
    from knowledge_engine.knowledge.models import SearchFilters, SearchResult
    from knowledge_engine.knowledge.store import KnowledgeStore

logger = logging.getLogger(__name__)

SEARCH_MODES = ("vector", "keyword", "hybrid")


def merge_results(
    vector_hits: Sequence[VectorHit],
    keyword_hits: Sequence[KeywordHit],
    limit: int,
) -> list[HybridHit]:
    """Deduplicate by id (first occurrence wins) and rank by composite score.

    Ordering does not depend on which sub-search finished first: ties on
    score fall back to newest ``created_at``, then id.
    """
    seen: set[str] = set()
    merged: list[HybridHit] = []
    for hit in [*vector_hits, *keyword_hits]:
        if hit.id in seen:
            continue
        seen.add(hit.id)
        merged.append(HybridHit.from_hit(hit))

    merged.sort(key=lambda h: h.id)
    merged.sort(key=lambda h: h.created_at, reverse=True)
    merged.sort(key=lambda h: h.relevance, reverse=True)
    return merged[: max(limit, 0)]


class HybridSearcher:
    """Search entry point over one knowledge store and embedding cache."""

    def __init__(self, store: KnowledgeStore, cache: EmbeddingCache) -> None:
        self._store = store
        self._cache = cache

    async def vector(
        self,
        query: str,
        owner_id: str,
        filters: SearchFilters | None = None,
        limit: int = 10,
    ) -> list[VectorHit]:
        """Embed *query* through the cache, then run vector search.

        Raises:
            BudgetExceededError, ProviderError, StorageError
        """
        embedding = await self._cache.get_embedding(query, owner_id=owner_id)
        return await vector_search(self._store, embedding, owner_id, filters, limit)

    async def keyword(
        self,
        query: str,
        owner_id: str,
        filters: SearchFilters | None = None,
        limit: int = 10,
    ) -> list[KeywordHit]:
        return await keyword_search(self._store, query, owner_id, filters, limit)

    async def hybrid_search(
        self,
        query: str,
        owner_id: str,
        filters: SearchFilters | None = None,
        limit: int = 10,
    ) -> list[HybridHit]:
        """Concurrent vector + keyword search, merged and ranked. Never raises
        for sub-search failures; both failing yields an empty list."""
        half = math.ceil(limit / 2)
        vector_outcome, keyword_outcome = await asyncio.gather(
            self.vector(query, owner_id, filters, half),
            self.keyword(query, owner_id, filters, half),
            return_exceptions=True,
        )
        vector_hits = _outcome_or_empty("vector", owner_id, vector_outcome)
        keyword_hits = _outcome_or_empty("keyword", owner_id, keyword_outcome)
        if isinstance(vector_outcome, BaseException) and isinstance(keyword_outcome, BaseException):
            logger.error("Hybrid search for %s: both sub-searches failed", owner_id)
        return merge_results(vector_hits, keyword_hits, limit)

    async def search(
        self,
        query: str,
        owner_id: str,
        mode: str = "hybrid",
        filters: SearchFilters | None = None,
        limit: int = 10,
    ) -> list[SearchResult]:
        """Dispatch on *mode*. Provider and storage failures degrade to ``[]``.

        Raises:
            ValidationError: Blank query or unknown mode.
        """
        if not query or not query.strip():
            raise ValidationError("Query is required")
        if mode not in SEARCH_MODES:
            raise ValidationError(f"Unknown search mode '{mode}'")

        if mode == "hybrid":
            return await self.hybrid_search(query, owner_id, filters, limit)

        runner = self.vector if mode == "vector" else self.keyword
        try:
            return await runner(query, owner_id, filters, limit)
        except Exception as exc:
            return _outcome_or_empty(mode, owner_id, exc)


def _outcome_or_empty(mode: str, owner_id: str, outcome: object) -> list:
    if not isinstance(outcome, BaseException):
        return outcome  # type: ignore[return-value]
    if isinstance(outcome, BudgetExceededError):
        logger.info("%s search for %s skipped: budget exhausted", mode, owner_id)
    else:
        logger.warning("%s search for %s failed: %s", mode, owner_id, outcome)
    return []
