"""Proposal generators: prompt an AIProvider and parse its JSON into pipeline records.

A ProposalGenerator is the black-box "architect" the pipeline talks to. It
knows how to produce a position, react to a counterpart's position, review a
candidate, and write an intelligence brief. Provider failures surface as
ProviderError; unusable output surfaces as GeneratorError.
"""

import json
import logging
from typing import Any

from config.config_loader import PromptsConfig
from src.codec import (
    backend_needs_to_dict,
    concept_to_dict,
    disagreement_to_dict,
    extract_json_object,
    issue_to_dict,
    position_from_dict,
    position_to_dict,
    validation_report_from_dict,
)
from src.models import (
    AppConcept,
    ArchitecturePosition,
    Disagreement,
    FrontendBackendNeeds,
    LayoutManifest,
    ValidationIssue,
    ValidationReport,
)
from src.providers.base import AIProvider

logger = logging.getLogger(__name__)


class GeneratorError(Exception):
    """Raised when a generator's output cannot be turned into the expected record."""

    def __init__(self, generator_name: str, message: str) -> None:
        self.generator_name = generator_name
        super().__init__(f"[{generator_name}] {message}")


def _dump(value: Any) -> str:
    return json.dumps(value, indent=2, ensure_ascii=False)


class ProposalGenerator:
    """Wraps one provider with the pipeline's prompts and that provider's focus."""

    def __init__(
        self,
        provider: AIProvider,
        prompts: PromptsConfig,
        timeout_sec: float | None = None,
    ) -> None:
        self._provider = provider
        self._prompts = prompts
        self.timeout_sec = timeout_sec

    @property
    def provider(self) -> AIProvider:
        return self._provider

    def name(self) -> str:
        return self._provider.name()

    def model_string(self) -> str:
        return self._provider.model_string()

    @property
    def focus(self) -> str:
        return self._prompts.focus.get(self._provider.name(), "")

    async def _ask(self, prompt: str, round_number: int, timeout_sec: float | None) -> dict[str, Any]:
        response = await self._provider.generate(prompt, round_number, timeout_sec=timeout_sec)
        try:
            return extract_json_object(response.content)
        except ValueError as exc:
            raise GeneratorError(self.name(), f"Unparseable response: {exc}") from exc

    async def propose(
        self,
        concept: AppConcept,
        layout: LayoutManifest,
        needs: FrontendBackendNeeds,
        intelligence: dict[str, Any],
        *,
        timeout_sec: float | None = None,
    ) -> ArchitecturePosition:
        """Produce this generator's independent architecture.

        Raises:
            ProviderError: If the provider call fails.
            GeneratorError: If the response is not an architecture.
        """
        prompt = self._prompts.generate.format(
            focus=self.focus,
            concept=_dump(concept_to_dict(concept)),
            needs_backend="yes" if concept.needs_backend else "no",
            backend_needs=_dump(backend_needs_to_dict(needs)),
            detected_features=", ".join(layout.detected_features) or "none",
            intelligence=_dump(intelligence),
        )
        data = await self._ask(prompt, 0, timeout_sec)
        try:
            position = position_from_dict(data)
        except ValueError as exc:
            raise GeneratorError(self.name(), str(exc)) from exc
        logger.debug("%s proposed %s API on %s", self.name(), position.api.get("style"),
                     position.database.get("provider"))
        return position

    async def react(
        self,
        own: ArchitecturePosition,
        counterpart: ArchitecturePosition,
        disagreements: list[Disagreement],
        concept: AppConcept,
        round_number: int,
        feedback: list[ValidationIssue] | None = None,
    ) -> ArchitecturePosition:
        """Revise ``own`` after seeing the counterpart and the open disagreements.

        Raises:
            ProviderError: If the provider call fails.
            GeneratorError: If the response is not an architecture.
        """
        prompt = self._prompts.react.format(
            focus=self.focus,
            round=round_number,
            own_position=_dump(position_to_dict(own)),
            counterpart_position=_dump(position_to_dict(counterpart)),
            disagreements=_dump([disagreement_to_dict(d) for d in disagreements]),
            feedback=_dump([issue_to_dict(i) for i in feedback]) if feedback else "none",
            concept_features=", ".join(f.name for f in concept.core_features) or "none",
        )
        data = await self._ask(prompt, round_number, None)
        try:
            return position_from_dict(data)
        except ValueError as exc:
            raise GeneratorError(self.name(), str(exc)) from exc

    async def review(self, architecture: ArchitecturePosition, concept: AppConcept) -> ValidationReport:
        """Independent coverage review of a candidate architecture."""
        prompt = self._prompts.validate.format(
            focus=self.focus,
            architecture=_dump(position_to_dict(architecture)),
            concept=_dump(concept_to_dict(concept)),
        )
        data = await self._ask(prompt, 0, None)
        try:
            return validation_report_from_dict(data)
        except (KeyError, TypeError, ValueError) as exc:
            raise GeneratorError(self.name(), f"Unusable review: {exc}") from exc

    async def brief(self, concept: AppConcept) -> dict[str, Any]:
        """Write an intelligence brief (frameworks, patterns, security) for the concept."""
        prompt = self._prompts.intelligence.format(concept=_dump(concept_to_dict(concept)))
        return await self._ask(prompt, 0, None)
