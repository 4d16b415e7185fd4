"""KnowledgeStore — libsql persistence for knowledge records.

Provides the primitives the search components need: owner-scoped
equality/range filters, tag overlap (tags are stored as a JSON array and
matched with ``json_each``), case-insensitive substring matching and a
bulk read of embedded records for similarity scoring.
"""

from __future__ import annotations

import functools
import json
import logging
from typing import TYPE_CHECKING, Any

from knowledge_engine.db import connect
from knowledge_engine.errors import StorageError
from knowledge_engine.knowledge.models import KnowledgeRecord, SearchFilters, to_utc_iso

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable
    from pathlib import Path

    from knowledge_engine.db import AsyncConnection

logger = logging.getLogger(__name__)

_CREATE_TABLE = """
CREATE TABLE IF NOT EXISTS knowledge_records (
    id          TEXT PRIMARY KEY,
    owner_id    TEXT NOT NULL,
    source_type TEXT NOT NULL,
    category    TEXT NOT NULL DEFAULT 'general',
    title       TEXT,
    content     TEXT NOT NULL,
    tags        TEXT NOT NULL DEFAULT '[]',
    importance  REAL NOT NULL DEFAULT 0.5,
    embedding   TEXT,
    created_at  TEXT NOT NULL
)
"""

_CREATE_INDEX = """
CREATE INDEX IF NOT EXISTS idx_knowledge_owner_created
    ON knowledge_records (owner_id, created_at)
"""

_COLUMNS = (
    "id, owner_id, source_type, category, title, content, "
    "tags, importance, embedding, created_at"
)

RECENT_ACTIVITY_LIMIT = 10
TOP_TAGS_LIMIT = 20


def _filter_clause(owner_id: str, filters: SearchFilters | None) -> tuple[str, list[Any]]:
    """Build the WHERE clause shared by vector and keyword candidate queries."""
    clauses = ["owner_id = ?"]
    params: list[Any] = [owner_id]
    if filters is None:
        return " AND ".join(clauses), params

    if filters.source_type:
        clauses.append("source_type = ?")
        params.append(filters.source_type)
    if filters.category:
        clauses.append("category = ?")
        params.append(filters.category)
    if filters.tags:
        placeholders = ", ".join("?" for _ in filters.tags)
        clauses.append(
            "EXISTS (SELECT 1 FROM json_each(knowledge_records.tags) "
            f"WHERE json_each.value IN ({placeholders}))"
        )
        params.extend(filters.tags)
    if filters.min_importance is not None:
        clauses.append("importance >= ?")
        params.append(filters.min_importance)
    if filters.date_from is not None:
        clauses.append("created_at >= ?")
        params.append(to_utc_iso(filters.date_from))
    if filters.date_to is not None:
        clauses.append("created_at <= ?")
        params.append(to_utc_iso(filters.date_to))
    return " AND ".join(clauses), params


def _storage_op(fn: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
    """Re-raise any driver failure as ``StorageError``."""

    @functools.wraps(fn)
    async def wrapper(*args: Any, **kwargs: Any) -> Any:
        try:
            return await fn(*args, **kwargs)
        except StorageError:
            raise
        except Exception as exc:
            raise StorageError(f"{fn.__name__} failed: {exc}") from exc

    return wrapper


class KnowledgeStore:
    """Persists knowledge records in SQLite / Turso.

    Pass an explicit *db_path* for test isolation (e.g. ``tmp_path / "kb.db"``).
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self._db_path = db_path
        self._initialised = False

    # -- Internal helpers ------------------------------------------------------

    async def _ensure_schema(self, db: AsyncConnection) -> None:
        if not self._initialised:
            await db.execute_script((_CREATE_TABLE, _CREATE_INDEX))
            self._initialised = True

    async def _select(self, sql: str, params: list[Any]) -> list[KnowledgeRecord]:
        async with connect(self._db_path) as db:
            await self._ensure_schema(db)
            result = await db.execute(sql, tuple(params))
        return [KnowledgeRecord.from_row(row) for row in result.rows]

    # -- Write -----------------------------------------------------------------

    @_storage_op
    async def add(self, record: KnowledgeRecord) -> KnowledgeRecord:
        """Insert a new record. Returns the same record object."""
        async with connect(self._db_path) as db:
            await self._ensure_schema(db)
            await db.execute(
                f"INSERT INTO knowledge_records ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                record.to_row(),
            )
            await db.commit()
        logger.debug(
            "Stored record %s [%s/%s]: %s",
            record.id,
            record.source_type,
            record.category,
            record.content[:80],
        )
        return record

    @_storage_op
    async def set_embedding(self, owner_id: str, record_id: str, embedding: list[float]) -> bool:
        """Attach an embedding to an existing record. Returns True if updated."""
        async with connect(self._db_path) as db:
            await self._ensure_schema(db)
            result = await db.execute(
                "UPDATE knowledge_records SET embedding = ? WHERE owner_id = ? AND id = ?",
                (json.dumps(embedding), owner_id, record_id),
            )
            await db.commit()
            return result.rowcount > 0

    @_storage_op
    async def delete(self, owner_id: str, record_id: str) -> bool:
        """Delete a record. Returns True if a row was removed."""
        async with connect(self._db_path) as db:
            await self._ensure_schema(db)
            result = await db.execute(
                "DELETE FROM knowledge_records WHERE owner_id = ? AND id = ?",
                (owner_id, record_id),
            )
            await db.commit()
            deleted = result.rowcount > 0
        if deleted:
            logger.info("Deleted record %s", record_id)
        return deleted

    # -- Read ------------------------------------------------------------------

    @_storage_op
    async def get(self, owner_id: str, record_id: str) -> KnowledgeRecord | None:
        """Fetch one record, or None if it does not exist for this owner."""
        records = await self._select(
            f"SELECT {_COLUMNS} FROM knowledge_records WHERE owner_id = ? AND id = ?",
            [owner_id, record_id],
        )
        return records[0] if records else None

    @_storage_op
    async def embedded_candidates(
        self, owner_id: str, filters: SearchFilters | None = None
    ) -> list[KnowledgeRecord]:
        """Return every filtered record that carries an embedding."""
        where, params = _filter_clause(owner_id, filters)
        return await self._select(
            f"SELECT {_COLUMNS} FROM knowledge_records "
            f"WHERE {where} AND embedding IS NOT NULL",
            params,
        )

    @_storage_op
    async def match_any(
        self,
        owner_id: str,
        tokens: list[str],
        filters: SearchFilters | None = None,
        limit: int = 10,
    ) -> list[KnowledgeRecord]:
        """Records whose title or content contains any token, case-insensitively.

        Ordered by importance, then newest first. SQLite ``lower()`` only
        folds ASCII, so candidates are filtered in SQL and the substring
        test runs on ``str.casefold()`` here.
        """
        if not tokens or limit <= 0:
            return []
        needles = [token.casefold() for token in tokens]
        where, params = _filter_clause(owner_id, filters)
        async with connect(self._db_path) as db:
            await self._ensure_schema(db)
            result = await db.execute(
                f"SELECT {_COLUMNS} FROM knowledge_records "
                f"WHERE {where} ORDER BY importance DESC, created_at DESC",
                tuple(params),
            )

        matched: list[KnowledgeRecord] = []
        for row in result.rows:
            # Columns 4 and 5 are title and content; tokens never contain "\n".
            haystack = f"{row[4] or ''}\n{row[5]}".casefold()
            if any(needle in haystack for needle in needles):
                matched.append(KnowledgeRecord.from_row(row))
                if len(matched) == limit:
                    break
        return matched

    @_storage_op
    async def missing_embeddings(self, owner_id: str, limit: int = 100) -> list[KnowledgeRecord]:
        """Records still waiting for an embedding, oldest first."""
        return await self._select(
            f"SELECT {_COLUMNS} FROM knowledge_records "
            "WHERE owner_id = ? AND embedding IS NULL ORDER BY created_at LIMIT ?",
            [owner_id, limit],
        )

    # -- Stats -----------------------------------------------------------------

    @_storage_op
    async def stats(self, owner_id: str) -> dict[str, Any]:
        """Aggregate counts, embedding coverage and recent records for an owner."""
        async with connect(self._db_path) as db:
            await self._ensure_schema(db)
            by_source = await db.execute(
                """
                SELECT source_type, COUNT(*), SUM(embedding IS NOT NULL), AVG(importance)
                FROM knowledge_records WHERE owner_id = ?
                GROUP BY source_type ORDER BY COUNT(*) DESC, source_type
                """,
                (owner_id,),
            )
            by_category = await db.execute(
                """
                SELECT category, COUNT(*) FROM knowledge_records WHERE owner_id = ?
                GROUP BY category ORDER BY COUNT(*) DESC, category
                """,
                (owner_id,),
            )
            importance = await db.execute(
                """
                SELECT
                    COALESCE(SUM(importance < 0.4), 0),
                    COALESCE(SUM(importance >= 0.4 AND importance < 0.7), 0),
                    COALESCE(SUM(importance >= 0.7), 0)
                FROM knowledge_records WHERE owner_id = ?
                """,
                (owner_id,),
            )
            tags = await db.execute(
                """
                SELECT json_each.value, COUNT(*)
                FROM knowledge_records, json_each(knowledge_records.tags)
                WHERE owner_id = ?
                GROUP BY json_each.value ORDER BY COUNT(*) DESC, json_each.value
                LIMIT ?
                """,
                (owner_id, TOP_TAGS_LIMIT),
            )
            recent = await db.execute(
                """
                SELECT id, title, source_type, category, created_at, embedding IS NOT NULL
                FROM knowledge_records WHERE owner_id = ?
                ORDER BY created_at DESC LIMIT ?
                """,
                (owner_id, RECENT_ACTIVITY_LIMIT),
            )

        source_counts = [
            {
                "sourceType": row[0],
                "count": row[1],
                "withEmbeddings": row[2] or 0,
                "coveragePercent": _percent(row[2] or 0, row[1]),
                "avgImportance": round(row[3] or 0.0, 2),
            }
            for row in by_source.rows
        ]
        total = sum(item["count"] for item in source_counts)
        with_embeddings = sum(item["withEmbeddings"] for item in source_counts)
        low, medium, high = importance.first() or (0, 0, 0)

        return {
            "overview": {
                "totalEntries": total,
                "withEmbeddings": with_embeddings,
                "missingEmbeddings": total - with_embeddings,
                "coveragePercent": _percent(with_embeddings, total),
            },
            "bySource": source_counts,
            "byCategory": [{"category": row[0], "count": row[1]} for row in by_category.rows],
            "importanceDistribution": {"low": low, "medium": medium, "high": high},
            "topTags": [{"tag": row[0], "count": row[1]} for row in tags.rows],
            "recentActivity": [
                {
                    "id": row[0],
                    "title": row[1] or "Untitled",
                    "sourceType": row[2],
                    "category": row[3],
                    "createdAt": row[4],
                    "hasEmbedding": bool(row[5]),
                }
                for row in recent.rows
            ],
        }


def _percent(part: int, whole: int) -> int:
    return round(part / whole * 100) if whole else 0
