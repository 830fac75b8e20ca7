"""Tests for src/providers with the SDK clients replaced by mocks."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from google.genai import types as genai_types

from src.providers.anthropic import AnthropicProvider
from src.providers.base import ARCHITECT_SYSTEM_PROMPT, ProviderError, require_api_key
from src.providers.gemini import GeminiProvider


@pytest.fixture
def claude(sample_model_config, monkeypatch):
    monkeypatch.setenv("TEST_API_KEY", "test-key")
    provider = AnthropicProvider(sample_model_config)
    provider._client = MagicMock()
    return provider


@pytest.fixture
def gemini(sample_model_config, monkeypatch):
    monkeypatch.setenv("TEST_API_KEY", "test-key")
    provider = GeminiProvider(sample_model_config)
    provider._client = MagicMock()
    return provider


def _claude_message(*blocks, stop_reason="end_turn"):
    return SimpleNamespace(
        content=list(blocks),
        stop_reason=stop_reason,
        usage=SimpleNamespace(input_tokens=100, output_tokens=50),
    )


def _block(kind, text=""):
    return SimpleNamespace(type=kind, text=text)


def test_require_api_key(sample_model_config, monkeypatch):
    monkeypatch.delenv("TEST_API_KEY", raising=False)
    with pytest.raises(ProviderError, match="TEST_API_KEY"):
        require_api_key(sample_model_config)
    monkeypatch.setenv("TEST_API_KEY", "  key  ")
    assert require_api_key(sample_model_config) == "key"


async def test_claude_joins_text_blocks_and_skips_thinking(claude):
    claude._client.messages.create = AsyncMock(
        return_value=_claude_message(_block("thinking"), _block("text", '{"database": {}}'))
    )
    response = await claude.generate("prompt", round_number=2)

    assert response.content == '{"database": {}}'
    assert response.round_number == 2
    assert response.token_count == 150
    kwargs = claude._client.messages.create.await_args.kwargs
    assert kwargs["system"] == ARCHITECT_SYSTEM_PROMPT
    assert "thinking" not in kwargs


async def test_claude_truncated_answer_fails(claude):
    claude._client.messages.create = AsyncMock(
        return_value=_claude_message(_block("text", '{"database": '), stop_reason="max_tokens")
    )
    with pytest.raises(ProviderError, match="truncated"):
        await claude.generate("prompt")


async def test_claude_timeout_is_flagged(claude):
    async def hang(**kwargs):
        await asyncio.sleep(5)

    claude._client.messages.create = hang
    with pytest.raises(ProviderError) as excinfo:
        await claude.generate("prompt", timeout_sec=0.01)
    assert excinfo.value.timed_out


async def test_claude_api_failure_wrapped(claude):
    claude._client.messages.create = AsyncMock(side_effect=RuntimeError("connection reset"))
    with pytest.raises(ProviderError, match="API call failed") as excinfo:
        await claude.generate("prompt")
    assert not excinfo.value.timed_out


def _gemini_result(text, finish=genai_types.FinishReason.STOP):
    return SimpleNamespace(
        text=text,
        candidates=[SimpleNamespace(finish_reason=finish)],
        usage_metadata=SimpleNamespace(total_token_count=42),
    )


async def test_gemini_returns_json_text(gemini):
    gemini._client.aio.models.generate_content = AsyncMock(return_value=_gemini_result('{"api": {}}'))
    response = await gemini.generate("prompt")
    assert response.content == '{"api": {}}'
    assert response.token_count == 42
    config = gemini._client.aio.models.generate_content.await_args.kwargs["config"]
    assert config.response_mime_type == "application/json"


async def test_gemini_truncated_answer_fails(gemini):
    gemini._client.aio.models.generate_content = AsyncMock(
        return_value=_gemini_result('{"api": ', genai_types.FinishReason.MAX_TOKENS)
    )
    with pytest.raises(ProviderError, match="truncated"):
        await gemini.generate("prompt")


async def test_gemini_empty_answer_names_finish_reason(gemini):
    gemini._client.aio.models.generate_content = AsyncMock(
        return_value=_gemini_result(None, genai_types.FinishReason.SAFETY)
    )
    with pytest.raises(ProviderError, match="SAFETY"):
        await gemini.generate("prompt")
