"""Keyword search: lexical OR-match over title and content."""

from __future__ import annotations

from typing import TYPE_CHECKING

from knowledge_engine.knowledge.models import KeywordHit

if TYPE_CHECKING:
    from knowledge_engine.knowledge.models import SearchFilters
    from knowledge_engine.knowledge.store import KnowledgeStore

MIN_TOKEN_LENGTH = 3


def tokenize_query(query: str) -> list[str]:
    """Case-folded whitespace tokens longer than two characters, deduplicated."""
    tokens = (token.casefold() for token in query.split())
    return list(dict.fromkeys(t for t in tokens if len(t) >= MIN_TOKEN_LENGTH))


async def keyword_search(
    store: KnowledgeStore,
    query: str,
    owner_id: str,
    filters: SearchFilters | None = None,
    limit: int = 10,
) -> list[KeywordHit]:
    """Records containing any query token, most important (then newest) first.

    A single shared token is enough to match; match density does not
    affect ordering. An empty query or one with only short tokens returns
    an empty list.

    Raises:
        StorageError: The store query failed.
    """
    tokens = tokenize_query(query)
    if not tokens or limit <= 0:
        return []
    records = await store.match_any(owner_id, tokens, filters, limit)
    return [KeywordHit.from_record(record) for record in records]
