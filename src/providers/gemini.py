"""Google Gemini backend (proposal B by default), google-genai SDK with native async."""

import asyncio
import logging
import time

from google import genai
from google.genai import types as genai_types

from config.config_loader import ModelConfig
from src.models import ModelResponse
from src.providers.base import ARCHITECT_SYSTEM_PROMPT, AIProvider, ProviderError, require_api_key

logger = logging.getLogger(__name__)


class GeminiProvider(AIProvider):
    """Gemini via google-genai in JSON response mode."""

    def __init__(self, config: ModelConfig) -> None:
        self._config = config
        self._client = genai.Client(api_key=require_api_key(config))
        self._request_config = genai_types.GenerateContentConfig(
            system_instruction=ARCHITECT_SYSTEM_PROMPT,
            max_output_tokens=config.max_tokens,
            response_mime_type="application/json",
        )

    def name(self) -> str:
        return self._config.name

    def model_string(self) -> str:
        return self._config.model

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
            result = await asyncio.wait_for(
                self._client.aio.models.generate_content(
                    model=self._config.model, contents=prompt, config=self._request_config
                ),
                timeout=timeout,
            )
        except TimeoutError as exc:
            raise ProviderError(
                self._config.name, f"Request timed out after {timeout:g}s", timed_out=True
            ) from exc
        except Exception as exc:
            raise ProviderError(self._config.name, f"API call failed: {exc}") from exc

        finish = result.candidates[0].finish_reason if result.candidates else None
        if finish == genai_types.FinishReason.MAX_TOKENS:
            raise ProviderError(
                self._config.name, f"Answer truncated at max_output_tokens={self._config.max_tokens}"
            )
        if not result.text:
            reason = finish.name if finish is not None else "no candidates"
            raise ProviderError(self._config.name, f"No answer text in response ({reason})")

        tokens = result.usage_metadata.total_token_count if result.usage_metadata else None
        latency = time.monotonic() - started
        logger.info("%s answered (round %d) in %.2fs, %s tokens", self._config.name, round_number, latency, tokens)

        return ModelResponse(
            provider=self._config.name,
            model=self._config.model,
            round_number=round_number,
            content=result.text,
            latency_sec=latency,
            token_count=tokens,
        )
