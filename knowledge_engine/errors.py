"""Exception hierarchy for the knowledge engine."""

from __future__ import annotations


class KnowledgeEngineError(Exception):
    """Base class for all engine errors."""


class ProviderError(KnowledgeEngineError):
    """An embedding or LLM provider call failed (network, auth, quota)."""


class StorageError(KnowledgeEngineError):
    """A read or write against the knowledge store failed."""


class BudgetExceededError(KnowledgeEngineError):
    """The budget gate denied a paid call.

    Not a failure: callers treat it as a normal skip.
    """

    def __init__(self, owner_id: str, estimated_cost_usd: float = 0.0) -> None:
        super().__init__(f"Monthly budget exhausted for owner {owner_id}")
        self.owner_id = owner_id
        self.estimated_cost_usd = estimated_cost_usd


class ValidationError(KnowledgeEngineError):
    """The caller sent an empty query or malformed filters."""
