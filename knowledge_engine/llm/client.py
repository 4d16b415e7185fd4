"""Async Claude completion client used by the extractor."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import anthropic

from knowledge_engine.config import settings
from knowledge_engine.errors import ProviderError
from knowledge_engine.llm.pricing import cost_usd

logger = logging.getLogger(__name__)


@dataclass
class Completion:
    """Text returned by the model plus the usage needed for spend tracking."""

    content: str
    model: str
    tokens_input: int = 0
    tokens_output: int = 0

    @property
    def cost_usd(self) -> float:
        return cost_usd(self.model, self.tokens_input, self.tokens_output)


class CompletionClient:
    """Single-shot completions: no tools, no streaming.

    The Anthropic client is created lazily so the engine can start
    without an API key (extraction simply fails and is logged).
    """

    def __init__(self, api_key: str | None = None, client: Any = None) -> None:
        self._api_key = api_key if api_key is not None else settings.anthropic_api_key
        self._client = client

    def _get_client(self) -> anthropic.AsyncAnthropic:
        if self._client is None:
            self._client = anthropic.AsyncAnthropic(api_key=self._api_key)
        return self._client

    async def complete(
        self,
        messages: list[dict[str, Any]],
        *,
        model: str,
        system: str | None = None,
        temperature: float = 0.3,
        max_tokens: int = 500,
    ) -> Completion:
        """Run one completion. Raises ``ProviderError`` on any API failure."""
        kwargs: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "messages": messages,
        }
        if system is not None:
            kwargs["system"] = system

        try:
            response = await self._get_client().messages.create(**kwargs)
        except anthropic.APIError as exc:
            raise ProviderError(f"Completion failed: {exc}") from exc

        text = "".join(block.text for block in response.content if hasattr(block, "text"))
        usage = getattr(response, "usage", None)
        completion = Completion(
            content=text,
            model=model,
            tokens_input=getattr(usage, "input_tokens", 0) or 0,
            tokens_output=getattr(usage, "output_tokens", 0) or 0,
        )
        logger.debug(
            "Completion model=%s tokens=%d+%d cost=$%.6f",
            model,
            completion.tokens_input,
            completion.tokens_output,
            completion.cost_usd,
        )
        return completion
