"""OpenAI embeddings provider with dimension validation."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from knowledge_engine.config import settings
from knowledge_engine.errors import ProviderError
from knowledge_engine.llm.pricing import cost_usd, estimate_tokens

if TYPE_CHECKING:
    from openai import AsyncOpenAI

logger = logging.getLogger(__name__)


@dataclass
class EmbeddingResponse:
    embedding: list[float]
    model: str
    tokens: int = 0

    @property
    def cost_usd(self) -> float:
        return cost_usd(self.model, self.tokens)


class OpenAIEmbeddingProvider:
    """Calls ``embeddings.create`` with ``{model, input, dimensions}``.

    Any object exposing an async ``embed(text) -> EmbeddingResponse`` can
    stand in for this class (tests use a fake).
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        dimensions: int | None = None,
        client: Any = None,
    ) -> None:
        self._api_key = api_key if api_key is not None else settings.openai_api_key
        self.model = model or settings.embedding_model
        self.dimensions = dimensions or settings.embedding_dimensions
        self._client = client

    def _get_client(self) -> AsyncOpenAI:
        """Return a lazily-initialised AsyncOpenAI client."""
        if self._client is None:
            from openai import AsyncOpenAI

            self._client = AsyncOpenAI(api_key=self._api_key)
        return self._client

    async def embed(self, text: str) -> EmbeddingResponse:
        """Embed *text* (already truncated by the caller).

        Raises:
            ProviderError: On API failure or a vector of the wrong size.
        """
        import openai

        try:
            response = await self._get_client().embeddings.create(
                model=self.model,
                input=text,
                dimensions=self.dimensions,
            )
        except openai.OpenAIError as exc:
            raise ProviderError(f"Embedding request failed: {exc}") from exc

        if not response.data:
            raise ProviderError("Embedding response contained no data")
        embedding = list(response.data[0].embedding)
        if len(embedding) != self.dimensions:
            raise ProviderError(
                f"Embedding dimension mismatch: expected {self.dimensions}, got {len(embedding)}"
            )

        usage = getattr(response, "usage", None)
        tokens = getattr(usage, "total_tokens", None) or estimate_tokens(text)
        return EmbeddingResponse(embedding=embedding, model=self.model, tokens=tokens)
