"""Data models for knowledge records and search results."""

from __future__ import annotations

import json
import uuid
from datetime import UTC, datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

SourceType = Literal["conversation", "file", "manual", "extracted"]
SearchMode = Literal["vector", "keyword", "hybrid"]

SOURCE_TYPES: tuple[str, ...] = ("conversation", "file", "manual", "extracted")


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


def to_utc_iso(value: datetime) -> str:
    """Normalise a datetime to the ISO format used for ``created_at`` columns."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


class KnowledgeRecord(BaseModel):
    """A unit of retrievable memory, scoped to one owner.

    Attributes:
        id: Unique identifier (UUID hex).
        owner_id: User the record belongs to.
        source_type: Where the knowledge came from.
        category: Free-form classification tag, e.g. ``"fact"``.
        title: Optional short label.
        content: Full text body.
        tags: Unique tags; order carries no meaning.
        importance: Ranking weight, clamped to ``[0, 1]``.
        embedding: Vector for semantic search; records without one are
            only reachable through keyword search.
        created_at: ISO 8601 UTC timestamp, set once at creation.
    """

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    owner_id: str
    source_type: SourceType
    category: str = "general"
    title: str | None = None
    content: str
    tags: list[str] = Field(default_factory=list)
    importance: float = 0.5
    embedding: list[float] | None = None
    created_at: str = Field(default_factory=utc_now_iso)

    @field_validator("importance")
    @classmethod
    def _clamp_importance(cls, value: float) -> float:
        return min(1.0, max(0.0, value))

    @field_validator("tags")
    @classmethod
    def _dedupe_tags(cls, value: list[str]) -> list[str]:
        return list(dict.fromkeys(tag for tag in value if tag))

    @property
    def has_embedding(self) -> bool:
        return bool(self.embedding)

    # -- Serialization ---------------------------------------------------------

    def to_row(self) -> tuple:
        """Serialize to a tuple matching the ``knowledge_records`` column order."""
        return (
            self.id,
            self.owner_id,
            self.source_type,
            self.category,
            self.title,
            self.content,
            json.dumps(self.tags),
            self.importance,
            json.dumps(self.embedding) if self.embedding else None,
            self.created_at,
        )

    @classmethod
    def from_row(cls, row: tuple) -> KnowledgeRecord:
        """Deserialize from a ``SELECT *`` row."""
        return cls(
            id=row[0],
            owner_id=row[1],
            source_type=row[2],
            category=row[3],
            title=row[4],
            content=row[5],
            tags=json.loads(row[6]) if row[6] else [],
            importance=row[7],
            embedding=json.loads(row[8]) if row[8] else None,
            created_at=row[9],
        )


class SearchFilters(BaseModel):
    """Equality and range filters applied before any scoring.

    Accepts both the snake_case field names and the camelCase keys used
    in HTTP bodies (``sourceType``, ``minImportance``, ...).
    """

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    source_type: SourceType | None = Field(default=None, alias="sourceType")
    category: str | None = None
    tags: list[str] | None = None
    min_importance: float | None = Field(default=None, ge=0.0, le=1.0, alias="minImportance")
    date_from: datetime | None = Field(default=None, alias="dateFrom")
    date_to: datetime | None = Field(default=None, alias="dateTo")

    @model_validator(mode="after")
    def _check_date_range(self) -> SearchFilters:
        if self.date_from is None or self.date_to is None:
            return self
        if to_utc_iso(self.date_from) > to_utc_iso(self.date_to):
            raise ValueError("dateFrom must not be after dateTo")
        return self


class ConversationTurn(BaseModel):
    """A completed user/assistant exchange handed to the extractor."""

    model_config = ConfigDict(populate_by_name=True)

    owner_id: str = Field(alias="ownerId", min_length=1)
    user_message: str = Field(alias="userMessage")
    assistant_response: str = Field(alias="assistantResponse")
    conversation_id: str | None = Field(default=None, alias="conversationId")
    recent_history: list[dict[str, Any]] = Field(default_factory=list, alias="recentHistory")


# -- Search results ----------------------------------------------------------


class _Hit(BaseModel):
    """Fields shared by every search result variant (record minus embedding)."""

    id: str
    owner_id: str
    source_type: str
    category: str
    title: str | None = None
    content: str
    tags: list[str] = Field(default_factory=list)
    importance: float
    created_at: str
    relevance: float

    @staticmethod
    def _record_fields(record: KnowledgeRecord) -> dict[str, Any]:
        return record.model_dump(exclude={"embedding"})


class VectorHit(_Hit):
    """Result of vector search; relevance is the cosine similarity."""

    variant: Literal["vector"] = "vector"
    similarity: float

    @classmethod
    def from_record(cls, record: KnowledgeRecord, similarity: float) -> VectorHit:
        return cls(**cls._record_fields(record), relevance=similarity, similarity=similarity)


class KeywordHit(_Hit):
    """Result of keyword search; relevance is the record's importance."""

    variant: Literal["keyword"] = "keyword"

    @classmethod
    def from_record(cls, record: KnowledgeRecord) -> KeywordHit:
        return cls(**cls._record_fields(record), relevance=record.importance)


class HybridHit(_Hit):
    """Merged result; relevance is ``(similarity or 0) + importance``."""

    variant: Literal["hybrid"] = "hybrid"
    similarity: float | None = None
    matched_by: Literal["vector", "keyword"]

    @classmethod
    def from_hit(cls, hit: VectorHit | KeywordHit) -> HybridHit:
        similarity = hit.similarity if isinstance(hit, VectorHit) else None
        fields = hit.model_dump(exclude={"variant", "relevance", "similarity"})
        return cls(
            **fields,
            similarity=similarity,
            relevance=(similarity or 0.0) + hit.importance,
            matched_by=hit.variant,
        )


SearchResult = Annotated[VectorHit | KeywordHit | HybridHit, Field(discriminator="variant")]
