"""Shared test fixtures."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

from knowledge_engine.budget.gate import BudgetGate
from knowledge_engine.embeddings.cache import EmbeddingCache
from knowledge_engine.embeddings.provider import EmbeddingResponse
from knowledge_engine.errors import ProviderError
from knowledge_engine.knowledge.models import KnowledgeRecord
from knowledge_engine.knowledge.store import KnowledgeStore

FIXED_NOW = datetime(2026, 10, 15, 12, 0, tzinfo=UTC)


class FakeEmbeddingProvider:
    """Deterministic stand-in for the OpenAI provider.

    Returns the vector registered for a text, else ``default``. Set
    ``fail = True`` to make every call raise ``ProviderError``.
    """

    def __init__(
        self,
        vectors: dict[str, list[float]] | None = None,
        default: list[float] | None = None,
        tokens: int = 10,
    ) -> None:
        self.model = "text-embedding-3-small"
        self.vectors = vectors or {}
        self.default = default or [1.0, 0.0, 0.0]
        self.tokens = tokens
        self.calls: list[str] = []
        self.fail = False

    async def embed(self, text: str) -> EmbeddingResponse:
        self.calls.append(text)
        if self.fail:
            raise ProviderError("provider down")
        return EmbeddingResponse(
            embedding=list(self.vectors.get(text, self.default)),
            model=self.model,
            tokens=self.tokens,
        )


class FixedClock:
    """Mutable clock for month-rollover tests."""

    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _make_record(**overrides: Any) -> KnowledgeRecord:
    fields: dict[str, Any] = {
        "owner_id": "owner",
        "source_type": "manual",
        "category": "general",
        "content": "placeholder content",
    }
    fields.update(overrides)
    return KnowledgeRecord(**fields)


@pytest.fixture
def make_record():
    """Factory for records with sensible defaults; pass field overrides."""
    return _make_record


@pytest.fixture(autouse=True)
def _no_turso(monkeypatch: pytest.MonkeyPatch) -> None:
    """Ensure tests use local files, not remote Turso."""
    monkeypatch.setattr("knowledge_engine.config.settings.turso_database_url", "")


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "knowledge.db"


@pytest.fixture
def store(db_path: Path) -> KnowledgeStore:
    return KnowledgeStore(db_path)


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def gate(tmp_path: Path, clock: FixedClock) -> BudgetGate:
    return BudgetGate(tmp_path / "ledger.db", default_budget_usd=10.0, clock=clock)


@pytest.fixture
def provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def cache(provider: FakeEmbeddingProvider) -> EmbeddingCache:
    return EmbeddingCache(provider, max_chars=8000, max_size=0)
