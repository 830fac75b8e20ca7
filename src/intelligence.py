"""Stage 2: intelligence brief for the generators (cached or freshly gathered)."""

import logging
from datetime import datetime, timezone
from typing import Any

from src.generators import ProposalGenerator
from src.models import AppConcept

logger = logging.getLogger(__name__)

AGENTIC_KEYWORDS = (
    "automation", "processing", "moderation", "routing", "orchestration", "pipeline",
    "workflow", "agent", "ai-powered", "intelligent", "chatbot", "assistant",
    "recommendation", "classification", "content generation", "analysis",
    "monitoring", "scheduling",
)


def detect_agentic_needs(concept: AppConcept) -> bool:
    """True when the concept's text suggests agent-style background workflows."""
    text = " ".join(
        [concept.description, concept.purpose]
        + [f"{f.name} {f.description}" for f in concept.core_features]
        + concept.workflows
    ).lower()
    return any(kw in text for kw in AGENTIC_KEYWORDS)


async def gather_intelligence(
    concept: AppConcept,
    gatherer: ProposalGenerator,
    cached: dict[str, Any] | None = None,
) -> tuple[dict[str, Any], bool]:
    """Return (intelligence, from_cache).

    A cached blob short-circuits the model call entirely.

    Raises:
        ProviderError / GeneratorError: From the gatherer when no cache is given.
    """
    if cached:
        logger.info("Using cached intelligence (gathered %s)", cached.get("gatherTimestamp", "earlier"))
        return cached, True

    brief = await gatherer.brief(concept)
    brief["needsAgentic"] = detect_agentic_needs(concept)
    brief["gatherTimestamp"] = datetime.now(timezone.utc).isoformat()
    logger.info("Intelligence gathered via %s", gatherer.name())
    return brief, False
