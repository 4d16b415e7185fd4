"""Vector, keyword and hybrid search over the knowledge store."""

from knowledge_engine.search.hybrid import HybridSearcher, merge_results
from knowledge_engine.search.keyword import keyword_search, tokenize_query
from knowledge_engine.search.vector import RELEVANCE_FLOOR, cosine_similarity, vector_search

__all__ = [
    "RELEVANCE_FLOOR",
    "HybridSearcher",
    "cosine_similarity",
    "keyword_search",
    "merge_results",
    "tokenize_query",
    "vector_search",
]
