"""Client-side planning controller: a local mirror of one planning session.

The controller starts a session through a transport, consumes its events in a
single background loop, and owns the user's decisions afterwards (resolving
an escalation, confirming or overriding the chosen architecture).
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Protocol

import httpx

from src.codec import concept_to_dict, layout_to_dict
from src.events import (
    CompleteMessage,
    ErrorMessage,
    EscalationMessage,
    PlanMessage,
    ProgressMessage,
    parse_frame,
)
from src.models import (
    AppConcept,
    ArchitecturePosition,
    ConsensusReport,
    DualPlanProgress,
    DualPlanStage,
    EscalationData,
    FinalValidatedArchitecture,
    LayoutManifest,
    PlanChoice,
    UserAISelection,
    ValidationResult,
)
from src.orchestrator import PlanningService
from src.preferences import PreferenceStore

logger = logging.getLogger(__name__)

CONNECTION_LOST = "Connection to planning server lost"

STAGE_LABELS: dict[DualPlanStage, str] = {
    DualPlanStage.IDLE: "Ready",
    DualPlanStage.LAYOUT_ANALYSIS: "Analyzing Layout",
    DualPlanStage.INTELLIGENCE: "Gathering Intelligence",
    DualPlanStage.PARALLEL_GENERATION: "Generating Architectures",
    DualPlanStage.CONSENSUS: "Negotiating Consensus",
    DualPlanStage.VALIDATION: "Validating Architecture",
    DualPlanStage.COMPLETE: "Complete",
    DualPlanStage.ERROR: "Error",
    DualPlanStage.ESCALATED: "Needs Your Input",
}


class TransportError(Exception):
    """The planning server could not be reached or answered badly."""


class PlanningTransport(Protocol):
    async def start(
        self, concept: AppConcept, layout: LayoutManifest, cached_intelligence: dict[str, Any] | None
    ) -> str: ...

    def events(self, session_id: str) -> AsyncIterator[PlanMessage]: ...


class LocalTransport:
    """In-process transport over a PlanningService (CLI runs, tests)."""

    def __init__(self, service: PlanningService) -> None:
        self._service = service

    async def start(
        self, concept: AppConcept, layout: LayoutManifest, cached_intelligence: dict[str, Any] | None
    ) -> str:
        return await self._service.create_session(concept, layout, cached_intelligence)

    async def events(self, session_id: str) -> AsyncIterator[PlanMessage]:
        try:
            stream = self._service.stream(session_id)
        except KeyError as exc:
            raise TransportError(f"Unknown session: {session_id}") from exc
        except RuntimeError as exc:
            raise TransportError(str(exc)) from exc
        async for event in stream:
            # Same frame path as HTTP, so both transports see identical messages.
            message = parse_frame(event.to_frame())
            if message is not None:
                yield message


class HttpTransport:
    """Talks to ``src.server`` over HTTP, reading the SSE stream line by line."""

    def __init__(self, base_url: str, client: httpx.AsyncClient | None = None) -> None:
        self._client = client or httpx.AsyncClient(
            base_url=base_url, timeout=httpx.Timeout(30.0, read=None)
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def start(
        self, concept: AppConcept, layout: LayoutManifest, cached_intelligence: dict[str, Any] | None
    ) -> str:
        body: dict[str, Any] = {"concept": concept_to_dict(concept), "layoutManifest": layout_to_dict(layout)}
        if cached_intelligence:
            body["cachedIntelligence"] = cached_intelligence
        try:
            response = await self._client.post("/api/planning/start", json=body)
            response.raise_for_status()
            return str(response.json()["sessionId"])
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            raise TransportError(f"Failed to start planning: {exc}") from exc

    async def events(self, session_id: str) -> AsyncIterator[PlanMessage]:
        try:
            async with self._client.stream("GET", f"/api/planning/stream/{session_id}") as response:
                response.raise_for_status()
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    message = parse_frame(line[len("data:"):].strip())
                    if message is not None:
                        yield message
        except httpx.HTTPError as exc:
            raise TransportError(f"Stream failed: {exc}") from exc


def _initial_progress(message: str = "Ready") -> DualPlanProgress:
    return DualPlanProgress(stage=DualPlanStage.IDLE, percent=0, message=message)


@dataclass
class ClientPlanState:
    is_planning: bool = False
    progress: DualPlanProgress = field(default_factory=_initial_progress)
    result: FinalValidatedArchitecture | None = None
    error: str | None = None
    escalation: EscalationData | None = None
    proposal_a: ArchitecturePosition | None = None
    proposal_b: ArchitecturePosition | None = None
    negotiation_rounds: int = 0
    reviewed: bool = False
    session_id: str | None = None


def choose_architecture(
    choice: PlanChoice,
    proposal_a: ArchitecturePosition,
    proposal_b: ArchitecturePosition,
) -> ArchitecturePosition:
    """The architecture a user choice stands for. Merge is A with B's agentic design."""
    match choice:
        case PlanChoice.PROPOSAL_A:
            return proposal_a
        case PlanChoice.PROPOSAL_B:
            return proposal_b
        case PlanChoice.MERGE:
            return replace(proposal_a, agentic=proposal_b.agentic)
        case PlanChoice.CONSENSUS:
            raise ValueError("'consensus' keeps the automatic result; it does not pick a proposal")


def user_resolution(
    choice: PlanChoice,
    proposal_a: ArchitecturePosition,
    proposal_b: ArchitecturePosition,
    rounds: int,
    coverage: int,
) -> FinalValidatedArchitecture:
    """A FinalValidatedArchitecture recording a human decision."""
    report = ConsensusReport(
        rounds=rounds,
        final_agreements=[f"User chose {choice.value} architecture"],
        compromises=["User-directed merge of both architectures"] if choice is PlanChoice.MERGE else [],
    )
    return FinalValidatedArchitecture(
        architecture=choose_architecture(choice, proposal_a, proposal_b),
        consensus_report=report,
        validation=ValidationResult(
            approved_at=datetime.now(timezone.utc).isoformat(),
            coverage=coverage,
            issues_resolved=0,
            replan_attempts=0,
        ),
    )


class PlanningClient:
    """Mirror of one planning session plus the user's decisions on it."""

    def __init__(
        self,
        transport: PlanningTransport,
        preferences: PreferenceStore | None = None,
        cached_intelligence: dict[str, Any] | None = None,
        escalation_default_coverage: int = 85,
        on_update: Callable[[ClientPlanState], None] | None = None,
    ) -> None:
        self._transport = transport
        self._preferences = preferences
        self._cached_intelligence = cached_intelligence
        self._default_coverage = escalation_default_coverage
        self._on_update = on_update
        self._inputs: tuple[AppConcept, LayoutManifest] | None = None
        self._consumer: asyncio.Task | None = None
        self.state = ClientPlanState()
        self.ai_selection: UserAISelection | None = preferences.load() if preferences else None

    # --- Derived ---------------------------------------------------------

    @property
    def is_escalated(self) -> bool:
        return self.state.progress.stage is DualPlanStage.ESCALATED and self.state.escalation is not None

    @property
    def is_complete(self) -> bool:
        return self.state.progress.stage is DualPlanStage.COMPLETE and self.state.result is not None

    @property
    def needs_review(self) -> bool:
        """True when a finished run has both proposals and the user has not reviewed them."""
        s = self.state
        finished = s.progress.stage in (DualPlanStage.COMPLETE, DualPlanStage.ESCALATED)
        return finished and s.proposal_a is not None and s.proposal_b is not None and not s.reviewed

    @property
    def stage_label(self) -> str:
        return STAGE_LABELS[self.state.progress.stage]

    # --- Session lifecycle -----------------------------------------------

    def _stop_consumer(self) -> None:
        if self._consumer is not None and not self._consumer.done():
            self._consumer.cancel()
        self._consumer = None

    async def start_planning(self, concept: AppConcept, layout: LayoutManifest) -> None:
        """Start a fresh session. Failures land in ``state.error``; nothing is raised."""
        self._stop_consumer()
        self._inputs = (concept, layout)
        self.state = ClientPlanState(
            is_planning=True, progress=_initial_progress("Starting dual-AI planning...")
        )
        try:
            session_id = await self._transport.start(concept, layout, self._cached_intelligence)
        except TransportError as exc:
            logger.error("Could not start planning: %s", exc)
            self.state.error = str(exc)
            self.state.is_planning = False
            return
        self.state.session_id = session_id
        self._consumer = asyncio.create_task(self._consume(session_id), name=f"consume-{session_id}")

    async def _consume(self, session_id: str) -> None:
        try:
            async for message in self._transport.events(session_id):
                self._apply(message)
                if self._on_update:
                    self._on_update(self.state)
                if not self.state.is_planning:
                    return
        except TransportError as exc:
            logger.warning("Planning stream for %s failed: %s", session_id, exc)
        if self.state.is_planning:
            self.state.error = CONNECTION_LOST
            self.state.is_planning = False

    def _apply(self, message: PlanMessage) -> None:
        s = self.state
        if isinstance(message, ProgressMessage):
            s.progress = message.progress
            if message.progress.negotiation_round is not None:
                s.negotiation_rounds = message.progress.negotiation_round
        elif isinstance(message, CompleteMessage):
            s.result = message.architecture
            s.proposal_a = message.proposal_a
            s.proposal_b = message.proposal_b
            s.negotiation_rounds = message.negotiation_rounds
            s.progress = DualPlanProgress(DualPlanStage.COMPLETE, 100, message.message)
            s.is_planning = False
        elif isinstance(message, EscalationMessage):
            s.escalation = message.escalation
            s.proposal_a = message.escalation.proposal_a
            s.proposal_b = message.escalation.proposal_b
            s.negotiation_rounds = message.escalation.negotiation_rounds
            s.progress = DualPlanProgress(DualPlanStage.ESCALATED, message.percent, message.message)
            s.is_planning = False
        elif isinstance(message, ErrorMessage):
            s.error = message.error
            s.progress = DualPlanProgress(DualPlanStage.ERROR, s.progress.percent, message.message)
            s.is_planning = False

    async def wait(self) -> None:
        """Wait for the current stream consumer to finish (no-op if none)."""
        if self._consumer is not None:
            await asyncio.wait({self._consumer})

    def cancel_planning(self) -> None:
        """Stop following the session locally. No-op once it finished; never raises."""
        if not self.state.is_planning:
            return
        self._stop_consumer()
        self.state.is_planning = False
        self.state.progress = _initial_progress()
        logger.info("Planning cancelled")

    async def retry_planning(self) -> None:
        if self._inputs is None:
            logger.debug("Nothing to retry: planning was never started")
            return
        await self.start_planning(*self._inputs)

    # --- User decisions --------------------------------------------------

    def _settle(self, final: FinalValidatedArchitecture, message: str) -> FinalValidatedArchitecture:
        self.state.result = final
        self.state.escalation = None
        self.state.progress = DualPlanProgress(DualPlanStage.COMPLETE, 100, message)
        return final

    def resolve_escalation(self, choice: PlanChoice | str) -> FinalValidatedArchitecture | None:
        """Resolve an escalation by picking proposal A, B or a merge. None when not escalated."""
        choice = PlanChoice(choice)
        escalation = self.state.escalation
        if escalation is None:
            logger.warning("No escalation to resolve")
            return None
        if choice is PlanChoice.CONSENSUS:
            raise ValueError("An escalation has no consensus to accept")
        final = user_resolution(
            choice, escalation.proposal_a, escalation.proposal_b,
            escalation.negotiation_rounds, self._default_coverage,
        )
        return self._settle(final, f"Architecture selected: {choice.value}")

    def confirm_architecture_choice(self, choice: PlanChoice | str) -> FinalValidatedArchitecture | None:
        """Confirm the automatic result, or override it with a proposal or a merge."""
        choice = PlanChoice(choice)
        s = self.state
        if s.proposal_a is None or s.proposal_b is None:
            logger.warning("Cannot confirm a choice without both proposals")
            return None
        if choice is PlanChoice.CONSENSUS:
            if s.result is None:
                logger.warning("No consensus result to confirm")
                return None
            s.escalation = None
            s.reviewed = True
            return s.result
        coverage = s.result.validation.coverage if s.result else self._default_coverage
        final = user_resolution(choice, s.proposal_a, s.proposal_b, s.negotiation_rounds, coverage)
        s.reviewed = True
        return self._settle(final, f"Architecture selected: {choice.value}")

    def set_user_ai_selection(self, selection: UserAISelection) -> None:
        """Remember the selection for future sessions. A running session is unaffected."""
        self.ai_selection = selection
        if self._preferences is not None:
            self._preferences.save(selection)
