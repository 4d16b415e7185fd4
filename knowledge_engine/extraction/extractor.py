"""Knowledge extraction from finished conversation turns.

After each user↔assistant exchange, a background task sends the exchange
to a small model which restates the facts worth keeping as plain-text
statements. The result is embedded and stored as an ``extracted`` record.
Extraction is best-effort: a denied budget, a model error or a storage
error is logged and the turn simply produces no record.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from knowledge_engine.config import settings
from knowledge_engine.knowledge.models import KnowledgeRecord
from knowledge_engine.llm.pricing import estimate_completion_cost
from knowledge_engine.result import optional_step

if TYPE_CHECKING:
    from knowledge_engine.budget.gate import BudgetGate
    from knowledge_engine.embeddings.cache import EmbeddingCache
    from knowledge_engine.knowledge.models import ConversationTurn
    from knowledge_engine.knowledge.store import KnowledgeStore
    from knowledge_engine.llm.client import CompletionClient

logger = logging.getLogger(__name__)

EXTRACTION_SYSTEM_PROMPT = "Extract all facts and important information. Be thorough."

# Shorter output means the model found nothing worth keeping.
MIN_EXTRACTED_CHARS = 10

EXTRACTED_IMPORTANCE = 0.8
EXTRACTED_TAGS = ["conversation", "extracted", "fact"]


# -- Prompt building ---------------------------------------------------------


def build_extraction_prompt(
    user_message: str,
    assistant_response: str,
    recent_history: list[dict] | None = None,
) -> str:
    """Build the user-message content sent to the extraction model."""
    history_text = ""
    if recent_history:
        lines = []
        for msg in recent_history:
            role = msg.get("role", "unknown")
            content = msg.get("content", "")
            if isinstance(content, str):
                lines.append(f"{role.capitalize()}: {content}")
        history_text = "Earlier in the conversation:\n" + "\n".join(lines) + "\n\n"

    return (
        f"{history_text}"
        "Extract all facts, preferences, dates, and important information "
        "from this conversation:\n"
        f"User: {user_message}\n"
        f"Assistant: {assistant_response}\n\n"
        "Return specific facts as simple statements like:\n"
        "- User's favorite color is X\n"
        "- User works at Y\n"
        "- User has appointment on Z\n"
        "- Project deadline is A"
    )


# -- Pipeline ----------------------------------------------------------------


class KnowledgeExtractor:
    """Turns conversation turns into ``extracted`` knowledge records."""

    def __init__(
        self,
        store: KnowledgeStore,
        cache: EmbeddingCache,
        gate: BudgetGate,
        llm: CompletionClient,
        *,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        enabled: bool | None = None,
    ) -> None:
        self._store = store
        self._cache = cache
        self._gate = gate
        self._llm = llm
        self.model = model or settings.extraction_model
        self.temperature = (
            temperature if temperature is not None else settings.extraction_temperature
        )
        self.max_tokens = max_tokens or settings.extraction_max_tokens
        self.enabled = enabled if enabled is not None else settings.extraction_enabled

    async def extract_and_store(self, turn: ConversationTurn) -> KnowledgeRecord | None:
        """Extract facts from *turn* and persist them. Never raises.

        Returns the stored record, or None when extraction was disabled,
        denied by the budget gate, produced too little text, or failed.
        """
        if not self.enabled:
            return None
        try:
            return await self._run(turn)
        except Exception:
            logger.exception("Knowledge extraction failed (non-fatal)")
            return None

    async def _run(self, turn: ConversationTurn) -> KnowledgeRecord | None:
        owner_id = turn.owner_id
        prompt = build_extraction_prompt(
            turn.user_message, turn.assistant_response, turn.recent_history
        )

        estimate = estimate_completion_cost(
            self.model, EXTRACTION_SYSTEM_PROMPT + prompt, self.max_tokens
        )
        if not await self._gate.authorize(owner_id, estimate):
            logger.info("Extraction skipped for %s: budget exhausted", owner_id)
            return None

        completion = await self._llm.complete(
            [{"role": "user", "content": prompt}],
            model=self.model,
            system=EXTRACTION_SYSTEM_PROMPT,
            temperature=self.temperature,
            max_tokens=self.max_tokens,
        )
        await optional_step(
            "record_extraction_spend",
            self._gate.record_spend(
                owner_id,
                completion.cost_usd,
                model=completion.model,
                operation="extraction",
            ),
        )

        extracted = completion.content.strip()
        if len(extracted) <= MIN_EXTRACTED_CHARS:
            logger.debug("Extraction for %s produced nothing worth storing", owner_id)
            return None

        embedding = await optional_step(
            "embed_extracted", self._cache.get_embedding(extracted, owner_id=owner_id)
        )
        record = KnowledgeRecord(
            owner_id=owner_id,
            source_type="extracted",
            category="fact",
            title=f"Extracted: {datetime.now(UTC).date().isoformat()}",
            content=extracted,
            tags=[*EXTRACTED_TAGS],
            importance=EXTRACTED_IMPORTANCE,
            embedding=embedding.value,
        )
        await self._store.add(record)
        logger.info(
            "Extracted knowledge for %s (%d chars, embedded=%s)",
            owner_id,
            len(extracted),
            embedding.ok,
        )
        return record
