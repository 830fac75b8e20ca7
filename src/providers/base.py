"""Abstract base for the LLM backends behind each proposal generator."""

import os
from abc import ABC, abstractmethod

from config.config_loader import ModelConfig
from src.models import ModelResponse

# Sent as the system instruction on every call; prompts carry the task itself.
ARCHITECT_SYSTEM_PROMPT = (
    "You are a senior software architect designing full-stack web applications. "
    "Answer with a single JSON object and nothing else."
)


class ProviderError(Exception):
    """Raised when a provider call fails."""

    def __init__(self, provider_name: str, message: str, *, timed_out: bool = False) -> None:
        self.provider_name = provider_name
        self.timed_out = timed_out
        super().__init__(f"[{provider_name}] {message}")


def require_api_key(config: ModelConfig) -> str:
    """The configured key from the environment.

    Raises:
        ProviderError: If the variable is unset or blank.
    """
    api_key = os.environ.get(config.api_key_env, "").strip()
    if not api_key:
        raise ProviderError(config.name, f"Missing API key: {config.api_key_env}")
    return api_key


class AIProvider(ABC):
    """One prompt-in / JSON-text-out model endpoint."""

    @abstractmethod
    def name(self) -> str:
        """Return the generator slot name (e.g. 'claude', 'gemini')."""
        ...

    @abstractmethod
    def model_string(self) -> str:
        ...

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        round_number: int = 0,
        *,
        timeout_sec: float | None = None,
    ) -> ModelResponse:
        """Send one prompt and return the model's answer text.

        Args:
            prompt: The full prompt text to send.
            round_number: Negotiation round (0 outside negotiation), for logging.
            timeout_sec: Overrides the configured timeout for this call only.

        Raises:
            ProviderError: On API failure, timeout, truncation or empty response.
        """
        ...
