"""KnowledgeEngine — wires the store, cache, budget gate, searcher,
extractor and activity logger together.

One engine is built per process (or per test) and passed by reference to
whatever needs it; none of the components keep module-level state.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, TypeVar

import pydantic
from pydantic import BaseModel, ConfigDict, Field

from knowledge_engine.activity import ActivityLogger
from knowledge_engine.budget.gate import BudgetGate
from knowledge_engine.config import settings
from knowledge_engine.embeddings.cache import EmbeddingCache
from knowledge_engine.embeddings.provider import OpenAIEmbeddingProvider
from knowledge_engine.errors import ValidationError
from knowledge_engine.extraction.extractor import KnowledgeExtractor
from knowledge_engine.knowledge.models import (
    ConversationTurn,
    KnowledgeRecord,
    SearchFilters,
    SearchMode,
    SearchResult,
    SourceType,
    utc_now_iso,
)
from knowledge_engine.knowledge.store import KnowledgeStore
from knowledge_engine.llm.client import CompletionClient
from knowledge_engine.result import optional_step
from knowledge_engine.search.hybrid import HybridSearcher

if TYPE_CHECKING:
    from pathlib import Path

    from knowledge_engine.budget.gate import AlertHandler
    from knowledge_engine.budget.models import BudgetState
    from knowledge_engine.embeddings.cache import EmbeddingProvider

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


# -- Request / response models -----------------------------------------------


class SearchRequest(BaseModel):
    """Body of ``POST /knowledge/search``."""

    model_config = ConfigDict(populate_by_name=True)

    query: str
    owner_id: str = Field(alias="ownerId", min_length=1)
    mode: SearchMode = "hybrid"
    filters: SearchFilters = Field(default_factory=SearchFilters)
    limit: int | None = Field(default=None, ge=1)

    @pydantic.field_validator("query")
    @classmethod
    def _require_query(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Query is required")
        return value


class SearchResponse(BaseModel):
    query: str
    mode: SearchMode
    results: list[SearchResult]
    results_count: int = Field(serialization_alias="resultsCount")
    timestamp: str = Field(default_factory=utc_now_iso)


class NewRecord(BaseModel):
    """Body of ``POST /knowledge/records`` (manual notes and file content)."""

    model_config = ConfigDict(populate_by_name=True)

    owner_id: str = Field(alias="ownerId", min_length=1)
    source_type: SourceType = Field(default="manual", alias="sourceType")
    category: str = "general"
    title: str | None = None
    content: str = Field(min_length=1)
    tags: list[str] = Field(default_factory=list)
    importance: float = 0.5


def parse(model: type[M], data: Any) -> M:
    """Validate *data* into *model*, raising the engine's ``ValidationError``."""
    if isinstance(data, model):
        return data
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as exc:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'body'}: {err['msg']}"
            for err in exc.errors()
        )
        raise ValidationError(details) from exc


# -- Engine ------------------------------------------------------------------


class KnowledgeEngine:
    """Composition root for retrieval and extraction.

    Every collaborator can be injected; anything omitted is built from
    settings. Call ``start()`` inside the event loop and ``close()`` on
    shutdown.
    """

    def __init__(
        self,
        *,
        db_path: Path | None = None,
        store: KnowledgeStore | None = None,
        gate: BudgetGate | None = None,
        embedding_provider: EmbeddingProvider | None = None,
        cache: EmbeddingCache | None = None,
        llm: CompletionClient | None = None,
        activity: ActivityLogger | None = None,
        alert_handler: AlertHandler | None = None,
    ) -> None:
        self.store = store or KnowledgeStore(db_path)
        self.gate = gate or BudgetGate(db_path, alert_handler=alert_handler)
        self.cache = cache or EmbeddingCache(
            embedding_provider or OpenAIEmbeddingProvider(), gate=self.gate
        )
        self.searcher = HybridSearcher(self.store, self.cache)
        self.extractor = KnowledgeExtractor(
            self.store, self.cache, self.gate, llm or CompletionClient()
        )
        self.activity = activity or ActivityLogger(db_path)
        self._background: set[asyncio.Task] = set()

    async def start(self) -> None:
        await self.activity.start()
        logger.info("Knowledge engine started")

    async def close(self) -> None:
        """Wait for scheduled extractions, then drain the activity log."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self.activity.stop()
        logger.info("Knowledge engine stopped")

    # -- Retrieval -------------------------------------------------------------

    async def search(self, request: SearchRequest | dict[str, Any]) -> SearchResponse:
        """Run a search and log it.

        Raises:
            ValidationError: Empty query or malformed filters. Provider and
                storage failures degrade to an empty result list.
        """
        req = parse(SearchRequest, request)
        limit = settings.clamp_limit(req.limit)
        results = await self.searcher.search(req.query, req.owner_id, req.mode, req.filters, limit)
        self.activity.log_search(req.owner_id, req.query, req.mode, len(results))
        logger.info("Search owner=%s mode=%s results=%d", req.owner_id, req.mode, len(results))
        return SearchResponse(
            query=req.query,
            mode=req.mode,
            results=results,
            results_count=len(results),
        )

    async def stats(self, owner_id: str) -> dict[str, Any]:
        if not owner_id:
            raise ValidationError("ownerId is required")
        stats = await self.store.stats(owner_id)
        stats["embeddingCache"] = self.cache.stats()
        return stats

    async def budget(self, owner_id: str) -> BudgetState:
        if not owner_id:
            raise ValidationError("ownerId is required")
        return await self.gate.get_state(owner_id)

    # -- Ingestion -------------------------------------------------------------

    async def add_record(self, data: NewRecord | dict[str, Any]) -> KnowledgeRecord:
        """Embed (best-effort) and store a manual or file record.

        Raises:
            ValidationError: Malformed record.
            StorageError: The insert failed.
        """
        new = parse(NewRecord, data)
        embedding = await optional_step(
            "embed_record", self.cache.get_embedding(new.content, owner_id=new.owner_id)
        )
        record = KnowledgeRecord(**new.model_dump(), embedding=embedding.value)
        return await self.store.add(record)

    async def backfill_embeddings(self, owner_id: str, limit: int = 100) -> int:
        """Embed records stored without a vector. Returns how many were filled.

        Stops early when the budget gate denies a call.
        """
        filled = 0
        for record in await self.store.missing_embeddings(owner_id, limit):
            step = await optional_step(
                "backfill_embedding", self.cache.get_embedding(record.content, owner_id=owner_id)
            )
            if step.skipped:
                break
            if step.ok and await self.store.set_embedding(owner_id, record.id, step.value):
                filled += 1
        logger.info("Backfilled %d embeddings for %s", filled, owner_id)
        return filled

    # -- Extraction ------------------------------------------------------------

    async def extract(self, turn: ConversationTurn | dict[str, Any]) -> KnowledgeRecord | None:
        return await self.extractor.extract_and_store(parse(ConversationTurn, turn))

    def schedule_extraction(self, turn: ConversationTurn | dict[str, Any]) -> asyncio.Task:
        """Run extraction in the background; the caller does not wait.

        Raises:
            ValidationError: Malformed turn (checked before scheduling).
        """
        parsed = parse(ConversationTurn, turn)
        task = asyncio.create_task(self.extractor.extract_and_store(parsed))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task
