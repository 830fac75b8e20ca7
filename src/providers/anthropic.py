"""Anthropic Claude backend (proposal A by default), anthropic SDK with native async."""

import asyncio
import logging
import time

import anthropic as anthropic_sdk

from config.config_loader import ModelConfig
from src.models import ModelResponse
from src.providers.base import ARCHITECT_SYSTEM_PROMPT, AIProvider, ProviderError, require_api_key

logger = logging.getLogger(__name__)


class AnthropicProvider(AIProvider):
    """Claude via the anthropic SDK, with optional extended thinking."""

    def __init__(self, config: ModelConfig) -> None:
        self._config = config
        self._client = anthropic_sdk.AsyncAnthropic(api_key=require_api_key(config))

    def name(self) -> str:
        return self._config.name

    def model_string(self) -> str:
        return self._config.model

    def _request_kwargs(self, prompt: str) -> dict:
        kwargs: dict = {
            "model": self._config.model,
            "max_tokens": self._config.max_tokens,
            "system": ARCHITECT_SYSTEM_PROMPT,
            "messages": [{"role": "user", "content": prompt}],
        }
        if self._config.thinking_budget:
            kwargs["thinking"] = {"type": "enabled", "budget_tokens": self._config.thinking_budget}
        return kwargs

    async def generate(
        self,
        prompt: str,
        round_number: int = 0,
        *,
        timeout_sec: float | None = None,
    ) -> ModelResponse:
        timeout = timeout_sec if timeout_sec is not None else self._config.timeout_sec
        started = time.monotonic()
        try:
            message = await asyncio.wait_for(
                self._client.messages.create(**self._request_kwargs(prompt)),
                timeout=timeout,
            )
        except TimeoutError as exc:
            raise ProviderError(
                self._config.name, f"Request timed out after {timeout:g}s", timed_out=True
            ) from exc
        except Exception as exc:
            raise ProviderError(self._config.name, f"API call failed: {exc}") from exc

        # A cut-off answer is half a JSON document; fail here rather than in the parser.
        if message.stop_reason == "max_tokens":
            raise ProviderError(
                self._config.name, f"Answer truncated at max_tokens={self._config.max_tokens}"
            )
        answer = "\n".join(block.text for block in message.content if block.type == "text")
        if not answer.strip():
            raise ProviderError(self._config.name, "No answer text in response")

        usage = message.usage
        tokens = usage.input_tokens + usage.output_tokens if usage else None
        latency = time.monotonic() - started
        logger.info("%s answered (round %d) in %.2fs, %s tokens", self._config.name, round_number, latency, tokens)

        return ModelResponse(
            provider=self._config.name,
            model=self._config.model,
            round_number=round_number,
            content=answer,
            latency_sec=latency,
            token_count=tokens,
        )
