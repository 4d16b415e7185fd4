"""Vector search: cosine similarity over embedded knowledge records."""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING

from knowledge_engine.knowledge.models import VectorHit

if TYPE_CHECKING:
    from collections.abc import Sequence

    from knowledge_engine.knowledge.models import SearchFilters
    from knowledge_engine.knowledge.store import KnowledgeStore

logger = logging.getLogger(__name__)

# Results at or below this similarity are noise.
RELEVANCE_FLOOR = 0.3


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """``dot(a, b) / (|a| * |b|)``; 0.0 for zero vectors or mismatched lengths."""
    if len(a) != len(b) or not a:
        return 0.0
    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b, strict=True):
        dot += x * y
        norm_a += x * x
        norm_b += y * y
    if norm_a == 0 or norm_b == 0:
        return 0.0
    similarity = dot / math.sqrt(norm_a * norm_b)
    # Rounding can push parallel vectors a hair past 1.
    return max(-1.0, min(1.0, similarity))


async def vector_search(
    store: KnowledgeStore,
    query_embedding: Sequence[float],
    owner_id: str,
    filters: SearchFilters | None = None,
    limit: int = 10,
) -> list[VectorHit]:
    """Rank the owner's embedded records by similarity to *query_embedding*.

    Filters are applied by the store before scoring. Records without an
    embedding never appear here. Ties on similarity go to the newer record.

    Raises:
        StorageError: The candidate read failed.
    """
    if limit <= 0:
        return []
    candidates = await store.embedded_candidates(owner_id, filters)

    hits = []
    for record in candidates:
        similarity = cosine_similarity(query_embedding, record.embedding or ())
        if similarity > RELEVANCE_FLOOR:
            hits.append(VectorHit.from_record(record, similarity))

    hits.sort(key=lambda h: h.created_at, reverse=True)
    hits.sort(key=lambda h: h.similarity, reverse=True)
    logger.debug(
        "Vector search %s: %d candidates, %d above floor", owner_id, len(candidates), len(hits)
    )
    return hits[:limit]
