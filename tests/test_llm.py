"""Tests for pricing, the completion client and the embedding provider."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import anthropic
import openai
import pytest

from knowledge_engine.embeddings.provider import OpenAIEmbeddingProvider
from knowledge_engine.errors import ProviderError
from knowledge_engine.llm.client import Completion, CompletionClient
from knowledge_engine.llm.pricing import (
    cost_usd,
    estimate_completion_cost,
    estimate_embedding_cost,
    estimate_tokens,
)

# -- Pricing -----------------------------------------------------------------


class TestPricing:
    def test_known_model(self):
        # 1M in at $1 + 1M out at $5
        assert cost_usd("claude-haiku-4-5-20251001", 1_000_000, 1_000_000) == 6.0

    def test_embedding_model(self):
        assert cost_usd("text-embedding-3-small", 1_000_000) == pytest.approx(0.02)

    def test_dated_variant_uses_prefix(self):
        assert cost_usd("gpt-4o-mini-2024-07-18", 1_000_000) == pytest.approx(0.15)

    def test_unknown_model_is_free(self):
        assert cost_usd("mystery-model", 1000, 1000) == 0.0

    def test_estimate_tokens(self):
        assert estimate_tokens("") == 1
        assert estimate_tokens("a" * 9) == 3

    def test_completion_estimate_includes_max_output(self):
        prompt = "x" * 400
        expected = cost_usd("claude-haiku-4-5-20251001", 100, 500)
        assert estimate_completion_cost("claude-haiku-4-5-20251001", prompt, 500) == expected

    def test_embedding_estimate(self):
        assert estimate_embedding_cost("text-embedding-3-small", "x" * 4000) == pytest.approx(
            1000 * 0.02 / 1_000_000
        )


# -- CompletionClient --------------------------------------------------------


def _anthropic_response(text: str, input_tokens: int = 12, output_tokens: int = 7):
    block = MagicMock()
    block.text = text
    usage = MagicMock()
    usage.input_tokens = input_tokens
    usage.output_tokens = output_tokens
    response = MagicMock()
    response.content = [block]
    response.usage = usage
    return response


async def test_complete_returns_text_and_usage() -> None:
    client = MagicMock()
    client.messages.create = AsyncMock(return_value=_anthropic_response("- fact one"))
    llm = CompletionClient(api_key="test", client=client)

    completion = await llm.complete(
        [{"role": "user", "content": "hi"}], model="claude-haiku-4-5-20251001", system="sys"
    )

    assert completion.content == "- fact one"
    assert completion.tokens_input == 12
    assert completion.tokens_output == 7
    kwargs = client.messages.create.call_args.kwargs
    assert kwargs["system"] == "sys"
    assert kwargs["temperature"] == 0.3
    assert kwargs["max_tokens"] == 500


async def test_complete_omits_system_when_none() -> None:
    client = MagicMock()
    client.messages.create = AsyncMock(return_value=_anthropic_response("ok"))
    llm = CompletionClient(api_key="test", client=client)

    await llm.complete([{"role": "user", "content": "hi"}], model="claude-haiku-4-5-20251001")
    assert "system" not in client.messages.create.call_args.kwargs


async def test_complete_wraps_api_errors() -> None:
    client = MagicMock()
    client.messages.create = AsyncMock(
        side_effect=anthropic.APIConnectionError(request=MagicMock())
    )
    llm = CompletionClient(api_key="test", client=client)

    with pytest.raises(ProviderError):
        await llm.complete([{"role": "user", "content": "hi"}], model="claude-haiku-4-5-20251001")


def test_completion_cost() -> None:
    completion = Completion(
        content="x", model="claude-haiku-4-5-20251001", tokens_input=1_000_000, tokens_output=0
    )
    assert completion.cost_usd == 1.0


# -- OpenAIEmbeddingProvider -------------------------------------------------


def _embedding_response(vector, total_tokens=5):
    return SimpleNamespace(
        data=[SimpleNamespace(embedding=vector)],
        usage=SimpleNamespace(total_tokens=total_tokens),
    )


async def test_embed_passes_model_and_dimensions() -> None:
    client = MagicMock()
    client.embeddings.create = AsyncMock(return_value=_embedding_response([0.1, 0.2, 0.3]))
    provider = OpenAIEmbeddingProvider(
        api_key="test", model="text-embedding-3-small", dimensions=3, client=client
    )

    response = await provider.embed("hello")

    assert response.embedding == [0.1, 0.2, 0.3]
    assert response.tokens == 5
    client.embeddings.create.assert_awaited_once_with(
        model="text-embedding-3-small", input="hello", dimensions=3
    )


async def test_embed_rejects_wrong_dimension() -> None:
    client = MagicMock()
    client.embeddings.create = AsyncMock(return_value=_embedding_response([0.1, 0.2]))
    provider = OpenAIEmbeddingProvider(api_key="test", dimensions=3, client=client)

    with pytest.raises(ProviderError, match="dimension"):
        await provider.embed("hello")


async def test_embed_rejects_empty_data() -> None:
    client = MagicMock()
    client.embeddings.create = AsyncMock(return_value=SimpleNamespace(data=[], usage=None))
    provider = OpenAIEmbeddingProvider(api_key="test", dimensions=3, client=client)

    with pytest.raises(ProviderError):
        await provider.embed("hello")


async def test_embed_wraps_openai_errors() -> None:
    client = MagicMock()
    client.embeddings.create = AsyncMock(side_effect=openai.OpenAIError("bad key"))
    provider = OpenAIEmbeddingProvider(api_key="test", dimensions=3, client=client)

    with pytest.raises(ProviderError, match="bad key"):
        await provider.embed("hello")


async def test_embed_estimates_tokens_without_usage() -> None:
    client = MagicMock()
    client.embeddings.create = AsyncMock(
        return_value=SimpleNamespace(data=[SimpleNamespace(embedding=[1.0])], usage=None)
    )
    provider = OpenAIEmbeddingProvider(api_key="test", dimensions=1, client=client)

    response = await provider.embed("x" * 40)
    assert response.tokens == 10
