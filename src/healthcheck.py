"""Generator health checks: ping both providers before a planning run."""

import asyncio
import logging

from src.providers.base import AIProvider, ProviderError

logger = logging.getLogger(__name__)

_PING_PROMPT = 'Reply with the JSON object {"status": "ok"} only.'
_TIMEOUT_SEC = 15.0


async def _check_one(name: str, provider: AIProvider) -> tuple[str, bool, str]:
    """Ping a single provider. Returns (name, ok, error_message)."""
    try:
        response = await provider.generate(_PING_PROMPT, round_number=0, timeout_sec=_TIMEOUT_SEC)
    except ProviderError as exc:
        logger.debug("Health check failed for %s: %s", name, exc)
        return name, False, str(exc)
    if not response.content.strip():
        return name, False, "empty response"
    return name, True, ""


async def run_health_checks(
    providers: dict[str, AIProvider],
) -> dict[str, tuple[bool, str]]:
    """Ping all providers in parallel.

    Returns:
        Dict mapping provider name -> (ok, error_message).
        error_message is "" when ok is True.
    """
    results = await asyncio.gather(*(_check_one(n, p) for n, p in providers.items()))
    return {name: (ok, err) for name, ok, err in results}
