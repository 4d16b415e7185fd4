"""Embedding cache: reuse vectors for repeated text.

Keys are the submitted text truncated to the provider's input limit, so
two texts that differ only past the limit share an entry. Misses call the
provider exactly once; failures are never cached, so the next identical
request retries. Concurrent misses for the same text are not coalesced.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import asdict, dataclass
from typing import TYPE_CHECKING, Protocol

from knowledge_engine.config import settings
from knowledge_engine.errors import BudgetExceededError
from knowledge_engine.llm.pricing import estimate_embedding_cost

if TYPE_CHECKING:
    from knowledge_engine.budget.gate import BudgetGate
    from knowledge_engine.embeddings.provider import EmbeddingResponse

logger = logging.getLogger(__name__)


def _log_orphaned_failure(task: asyncio.Task) -> None:
    """Retrieve a fetch failure so it is not reported as never retrieved.

    A caller that is still waiting receives the same exception through the
    shield; this only matters once that caller has been cancelled.
    """
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug("Embedding fetch failed: %s", exc)


class EmbeddingProvider(Protocol):
    model: str

    async def embed(self, text: str) -> EmbeddingResponse: ...


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    provider_calls: int = 0
    evictions: int = 0
    size: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return round(self.hits / total * 100, 2) if total else 0.0

    def to_dict(self) -> dict[str, float]:
        return {**asdict(self), "hit_rate": self.hit_rate}


class EmbeddingCache:
    """In-process LRU cache in front of an embedding provider.

    Args:
        provider: Anything with ``async embed(text) -> EmbeddingResponse``.
        max_chars: Input limit; text is truncated to this before keying.
        max_size: Entry limit before least-recently-used eviction
            (``0`` keeps every entry for the life of the process).
        gate: When set, misses for a known owner are authorized first
            and their measured cost is recorded afterwards.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        *,
        max_chars: int | None = None,
        max_size: int | None = None,
        gate: BudgetGate | None = None,
    ) -> None:
        self._provider = provider
        self._max_chars = max_chars or settings.embedding_max_chars
        self._max_size = settings.embedding_cache_max_size if max_size is None else max_size
        self._gate = gate
        self._entries: OrderedDict[str, tuple[float, ...]] = OrderedDict()
        self._stats = CacheStats()

    def key_for(self, text: str) -> str:
        return text[: self._max_chars]

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, text: str) -> bool:
        return self.key_for(text) in self._entries

    def stats(self) -> dict[str, float]:
        self._stats.size = len(self._entries)
        return self._stats.to_dict()

    def clear(self) -> None:
        self._entries.clear()
        logger.info("Embedding cache cleared")

    async def get_embedding(self, text: str, owner_id: str | None = None) -> list[float]:
        """Return the embedding for *text*, calling the provider only on a miss.

        Raises:
            BudgetExceededError: The gate denied the provider call.
            ProviderError: The provider failed; nothing was cached.
        """
        key = self.key_for(text)
        cached = self._entries.get(key)
        if cached is not None:
            self._entries.move_to_end(key)
            self._stats.hits += 1
            return list(cached)

        self._stats.misses += 1
        # Shielded so a cancelled caller still lets the call finish and populate the cache.
        fetch = asyncio.create_task(self._fetch(key, owner_id))
        fetch.add_done_callback(_log_orphaned_failure)
        vector = await asyncio.shield(fetch)
        return list(vector)

    async def _fetch(self, key: str, owner_id: str | None) -> tuple[float, ...]:
        gated = self._gate is not None and owner_id is not None
        if gated:
            estimate = estimate_embedding_cost(self._provider.model, key)
            if not await self._gate.authorize(owner_id, estimate):
                raise BudgetExceededError(owner_id, estimate)

        self._stats.provider_calls += 1
        response = await self._provider.embed(key)
        vector = tuple(response.embedding)
        self._store(key, vector)
        logger.debug("Embedding cache miss stored (hit rate %.2f%%)", self._stats.hit_rate)

        if gated:
            try:
                await self._gate.record_spend(
                    owner_id,
                    response.cost_usd,
                    model=response.model,
                    operation="embedding",
                )
            except Exception:
                logger.exception("Failed to record embedding spend for %s", owner_id)
        return vector

    def _store(self, key: str, vector: tuple[float, ...]) -> None:
        self._entries[key] = vector
        self._entries.move_to_end(key)
        if self._max_size and len(self._entries) > self._max_size:
            evicted, _ = self._entries.popitem(last=False)
            self._stats.evictions += 1
            logger.debug("Evicted LRU embedding: %s", evicted[:40])
