"""Session orchestration: the planning state machine and the sessions it runs.

One PlanningSession per planning request. The orchestrator drives it through
layout analysis, intelligence, parallel generation, negotiation and
validation, publishing one event per transition on the session's stream.
"""

import asyncio
import logging
import time
import uuid
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from config.config_loader import AppConfig, PipelineConfig
from src.events import (
    EventStream,
    PlanEvent,
    complete_event,
    error_event,
    escalation_event,
    progress_event,
)
from src.generators import GeneratorError, ProposalGenerator
from src.intelligence import gather_intelligence
from src.layout_analysis import analyze_layout
from src.models import (
    TERMINAL_STAGES,
    AppConcept,
    ArchitecturePosition,
    ConsensusReport,
    Disagreement,
    DualPlanProgress,
    DualPlanStage,
    EscalationData,
    FinalValidatedArchitecture,
    FrontendBackendNeeds,
    LayoutManifest,
    NegotiationRound,
    ValidationIssue,
)
from src.negotiation import negotiate, replan_round
from src.providers.anthropic import AnthropicProvider
from src.providers.base import AIProvider, ProviderError
from src.providers.gemini import GeminiProvider
from src.validation import Validator, freeze

logger = logging.getLogger(__name__)

PROVIDER_CLASSES: dict[str, type[AIProvider]] = {
    "anthropic": AnthropicProvider,
    "google-genai": GeminiProvider,
}

_S = DualPlanStage

# Legal forward transitions. Self-loops (in-stage updates) and any
# non-terminal -> error are allowed on top of these.
_ALLOWED: dict[DualPlanStage, frozenset[DualPlanStage]] = {
    _S.IDLE: frozenset({_S.LAYOUT_ANALYSIS}),
    _S.LAYOUT_ANALYSIS: frozenset({_S.INTELLIGENCE}),
    _S.INTELLIGENCE: frozenset({_S.PARALLEL_GENERATION}),
    _S.PARALLEL_GENERATION: frozenset({_S.CONSENSUS}),
    _S.CONSENSUS: frozenset({_S.VALIDATION, _S.ESCALATED}),
    _S.VALIDATION: frozenset({_S.COMPLETE, _S.CONSENSUS, _S.ESCALATED}),
}


class PipelineError(Exception):
    """Terminal orchestration failure.

    ``kind`` is one of: generator_failure, intelligence_failure,
    layout_failure, timeout, internal.
    """

    def __init__(self, kind: str, message: str) -> None:
        self.kind = kind
        super().__init__(message)


def can_transition(current: DualPlanStage, target: DualPlanStage) -> bool:
    if current in TERMINAL_STAGES:
        return False
    if target is current or target is _S.ERROR:
        return True
    return target in _ALLOWED.get(current, frozenset())


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class PlanningSession:
    """Everything one planning run knows. Mutated only by its orchestrator task."""

    concept: AppConcept
    layout: LayoutManifest
    cached_intelligence: dict[str, Any] | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: float = field(default_factory=time.monotonic)
    stage: DualPlanStage = DualPlanStage.IDLE
    percent: int = 0
    message: str = ""
    needs: FrontendBackendNeeds | None = None
    intelligence: dict[str, Any] | None = None
    proposal_a: ArchitecturePosition | None = None
    proposal_a_at: str | None = None
    proposal_b: ArchitecturePosition | None = None
    proposal_b_at: str | None = None
    negotiation_rounds: int = 0
    replan_attempts: int = 0
    result: FinalValidatedArchitecture | None = None
    escalation: EscalationData | None = None
    error: PipelineError | None = None
    task: asyncio.Task | None = None
    stream: EventStream = field(init=False)

    def __post_init__(self) -> None:
        self.stream = EventStream(self.id)

    @property
    def is_terminal(self) -> bool:
        return self.stage in TERMINAL_STAGES

    def _enter(self, stage: DualPlanStage, percent: int, message: str) -> None:
        if not can_transition(self.stage, stage):
            raise PipelineError(
                "internal", f"Illegal stage transition {self.stage.value} -> {stage.value}"
            )
        self.stage = stage
        self.percent = max(self.percent, min(100, percent))
        self.message = message

    def _publish(self, event: PlanEvent) -> None:
        self.stream.publish(event)

    def advance(
        self,
        stage: DualPlanStage,
        percent: int,
        message: str,
        details: str | None = None,
        negotiation_round: int | None = None,
        max_rounds: int | None = None,
    ) -> None:
        """Move to a non-terminal stage and publish one progress event."""
        if stage in TERMINAL_STAGES:
            raise PipelineError("internal", f"Use a finish method to enter {stage.value}")
        self._enter(stage, percent, message)
        self._publish(
            progress_event(
                DualPlanProgress(
                    stage=self.stage,
                    percent=self.percent,
                    message=message,
                    details=details,
                    negotiation_round=negotiation_round,
                    max_rounds=max_rounds,
                )
            )
        )

    def finish_complete(self, result: FinalValidatedArchitecture, message: str) -> None:
        self._enter(_S.COMPLETE, 100, message)
        self.result = result
        self._publish(
            complete_event(result, self.proposal_a, self.proposal_b, self.negotiation_rounds, message)
        )

    def finish_escalated(self, escalation: EscalationData, message: str) -> None:
        self._enter(_S.ESCALATED, self.percent, message)
        self.escalation = escalation
        self._publish(escalation_event(escalation, self.percent, message))

    def fail(self, error: PipelineError) -> None:
        """Enter ``error``. Ignored when the session already finished."""
        if self.is_terminal:
            logger.debug("Session %s already terminal, ignoring error: %s", self.id, error)
            return
        self._enter(_S.ERROR, self.percent, str(error))
        self.error = error
        self._publish(error_event(str(error), self.percent, error.kind))


class SessionStore:
    """Sessions keyed by id, dropped once older than the TTL."""

    def __init__(self, ttl_sec: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl_sec = ttl_sec
        self._clock = clock
        self._sessions: dict[str, PlanningSession] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def create(
        self,
        concept: AppConcept,
        layout: LayoutManifest,
        cached_intelligence: dict[str, Any] | None = None,
    ) -> PlanningSession:
        self.purge_expired()
        session = PlanningSession(
            concept=concept,
            layout=layout,
            cached_intelligence=cached_intelligence,
            created_at=self._clock(),
        )
        self._sessions[session.id] = session
        return session

    def _expired(self, session: PlanningSession, now: float) -> bool:
        return now - session.created_at > self._ttl_sec

    def get(self, session_id: str) -> PlanningSession | None:
        session = self._sessions.get(session_id)
        if session is None or self._expired(session, self._clock()):
            return None
        return session

    def drop(self, session_id: str) -> PlanningSession | None:
        session = self._sessions.pop(session_id, None)
        if session is not None and session.task is not None and not session.task.done():
            session.task.cancel()
        return session

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [sid for sid, s in self._sessions.items() if self._expired(s, now)]
        for sid in expired:
            self.drop(sid)
        if expired:
            logger.debug("Purged %d expired sessions", len(expired))
        return len(expired)


class PlanningOrchestrator:
    """Runs one session through the whole pipeline."""

    def __init__(
        self,
        generators: tuple[ProposalGenerator, ProposalGenerator],
        validator: Validator,
        pipeline: PipelineConfig,
        gatherer: ProposalGenerator | None = None,
    ) -> None:
        self._generators = generators
        self._validator = validator
        self._cfg = pipeline
        self._gatherer = gatherer or generators[0]

    async def run(self, session: PlanningSession) -> None:
        """Drive ``session`` to a terminal stage. Never raises except on cancellation."""
        try:
            await asyncio.wait_for(self._pipeline(session), timeout=self._cfg.global_timeout_sec)
        except asyncio.TimeoutError:
            logger.warning("Session %s timed out after %ds", session.id, self._cfg.global_timeout_sec)
            session.fail(PipelineError("timeout", f"Planning timed out after {self._cfg.global_timeout_sec}s"))
        except PipelineError as exc:
            logger.error("Session %s failed (%s): %s", session.id, exc.kind, exc)
            session.fail(exc)
        except asyncio.CancelledError:
            logger.info("Session %s aborted", session.id)
            session.fail(PipelineError("internal", "Planning aborted"))
            raise
        except Exception as exc:
            logger.exception("Session %s crashed", session.id)
            session.fail(PipelineError("internal", f"Unexpected error: {exc}"))

    async def _pipeline(self, session: PlanningSession) -> None:
        needs = self._analyze(session)
        intelligence = await self._gather(session)
        await self._generate_both(session, needs, intelligence)

        max_rounds = self._cfg.max_negotiation_rounds
        gen_a, gen_b = self._generators
        session.advance(
            _S.CONSENSUS, 40, f"Negotiating consensus between {gen_a.name()} and {gen_b.name()}..."
        )

        def on_round_complete(rnd: NegotiationRound) -> None:
            session.negotiation_rounds = rnd.number
            session.advance(
                _S.CONSENSUS,
                40 + rnd.number * 40 // max_rounds,
                f"Negotiation round {rnd.number}/{max_rounds}",
                details=f"{len(rnd.hard_disagreements)} structural disagreements",
                negotiation_round=rnd.number,
                max_rounds=max_rounds,
            )

        result = await negotiate(
            session.proposal_a,
            session.proposal_b,
            self._generators,
            session.concept,
            max_rounds,
            materiality_threshold=self._cfg.materiality_threshold,
            escalate_on_stall=self._cfg.escalate_on_stall,
            on_round_complete=on_round_complete,
        )
        last = result.rounds[-1]
        if not result.reached:
            self._escalate(session, result.escalation_reason or "Consensus not reached",
                           last.proposal_a, last.proposal_b, result.divergent_issues)
            return

        await self._validate_and_replan(
            session, needs, result.architecture, result.report, last.proposal_a, last.proposal_b
        )

    def _analyze(self, session: PlanningSession) -> FrontendBackendNeeds:
        session.advance(_S.LAYOUT_ANALYSIS, 0, "Analyzing layout structure...")
        try:
            needs = analyze_layout(session.layout)
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            raise PipelineError("layout_failure", f"Layout analysis failed: {exc}") from exc
        session.needs = needs
        session.advance(
            _S.LAYOUT_ANALYSIS, 5, "Layout analysis complete",
            details=f"{len(needs.data_models)} data models, {len(needs.api_endpoints)} endpoints",
        )
        return needs

    async def _gather(self, session: PlanningSession) -> dict[str, Any]:
        session.advance(_S.INTELLIGENCE, 5, "Gathering intelligence...")
        try:
            intelligence, from_cache = await gather_intelligence(
                session.concept, self._gatherer, session.cached_intelligence
            )
        except (ProviderError, GeneratorError) as exc:
            raise PipelineError("intelligence_failure", f"Intelligence gathering failed: {exc}") from exc
        session.intelligence = intelligence
        session.advance(
            _S.INTELLIGENCE, 20, "Using cached intelligence" if from_cache else "Intelligence gathered"
        )
        return intelligence

    async def _propose_with_retry(
        self,
        generator: ProposalGenerator,
        session: PlanningSession,
        needs: FrontendBackendNeeds,
        intelligence: dict[str, Any],
    ) -> ArchitecturePosition:
        """One proposal, retried up to ``generator_retries`` times (timeouts get 1.5x)."""
        attempts = self._cfg.generator_retries + 1
        timeout = generator.timeout_sec
        for attempt in range(1, attempts + 1):
            try:
                return await generator.propose(
                    session.concept, session.layout, needs, intelligence, timeout_sec=timeout
                )
            except (ProviderError, GeneratorError) as exc:
                if attempt == attempts:
                    raise PipelineError(
                        "generator_failure", f"{generator.name()} failed to generate an architecture: {exc}"
                    ) from exc
                if isinstance(exc, ProviderError) and exc.timed_out and timeout:
                    timeout = timeout * 1.5
                logger.warning(
                    "%s failed to propose (attempt %d/%d), retrying: %s",
                    generator.name(), attempt, attempts, exc,
                )
        raise PipelineError("generator_failure", f"{generator.name()} was never asked to propose")

    async def _generate_both(
        self,
        session: PlanningSession,
        needs: FrontendBackendNeeds,
        intelligence: dict[str, Any],
    ) -> None:
        gen_a, gen_b = self._generators
        session.advance(
            _S.PARALLEL_GENERATION, 20, f"Generating architectures with {gen_a.name()} and {gen_b.name()}...",
            details="backend required" if session.concept.needs_backend else "frontend only",
        )
        results = await asyncio.gather(
            self._propose_with_retry(gen_a, session, needs, intelligence),
            self._propose_with_retry(gen_b, session, needs, intelligence),
            return_exceptions=True,
        )
        failures = [r for r in results if isinstance(r, BaseException)]
        if failures:
            for failure in failures:
                if not isinstance(failure, Exception):
                    raise failure
            if len(failures) == 1 and isinstance(failures[0], PipelineError):
                raise failures[0]
            raise PipelineError("generator_failure", "; ".join(str(f) for f in failures))

        session.proposal_a, session.proposal_b = results
        session.proposal_a_at = session.proposal_b_at = _now_iso()
        session.advance(_S.PARALLEL_GENERATION, 40, "Both architectures generated")

    def _validation_percent(self, attempt: int) -> int:
        return 80 + 15 * attempt // (self._cfg.max_replan_attempts + 1)

    async def _validate_and_replan(
        self,
        session: PlanningSession,
        needs: FrontendBackendNeeds,
        candidate: ArchitecturePosition,
        consensus_report: ConsensusReport,
        latest_a: ArchitecturePosition,
        latest_b: ArchitecturePosition,
    ) -> None:
        earlier_issues: list[ValidationIssue] = []
        best_coverage, best = -1, candidate
        max_replans = self._cfg.max_replan_attempts

        while True:
            attempt = session.replan_attempts
            session.advance(
                _S.VALIDATION, self._validation_percent(attempt),
                "Validating architecture..." if attempt == 0 else f"Re-validating after replan {attempt}",
            )
            report = await self._validator.validate(candidate, session.concept, needs)
            if report.coverage > best_coverage:
                best_coverage, best = report.coverage, candidate

            if report.approved:
                final = FinalValidatedArchitecture(
                    architecture=candidate,
                    consensus_report=consensus_report,
                    validation=freeze(report, attempt, earlier_issues),
                )
                session.finish_complete(final, f"Architecture validated ({report.coverage}% coverage)")
                return

            earlier_issues.extend(report.issues)
            if attempt >= max_replans:
                self._escalate(
                    session,
                    f"Coverage {report.coverage}% is below {self._cfg.coverage_threshold}% "
                    f"after {attempt} replan attempts",
                    latest_a, latest_b, [], best, best_coverage,
                )
                return

            session.replan_attempts = attempt + 1
            session.advance(
                _S.CONSENSUS, self._validation_percent(attempt),
                f"Replanning (attempt {attempt + 1}/{max_replans})",
                details=f"Coverage {report.coverage}%, {len(report.critical_issues)} critical issues",
            )
            replan = await replan_round(
                latest_a, latest_b, self._generators, session.concept, report.issues,
                attempt + 1, self._cfg.materiality_threshold,
            )
            latest_a, latest_b = replan.rounds[-1].proposal_a, replan.rounds[-1].proposal_b
            if not replan.reached:
                self._escalate(
                    session, replan.escalation_reason or "Replan diverged",
                    latest_a, latest_b, replan.divergent_issues, best, best_coverage,
                )
                return

            candidate = replan.architecture
            consensus_report = ConsensusReport(
                rounds=consensus_report.rounds + 1,
                final_agreements=replan.report.final_agreements,
                compromises=replan.report.compromises,
            )

    def _escalate(
        self,
        session: PlanningSession,
        reason: str,
        proposal_a: ArchitecturePosition,
        proposal_b: ArchitecturePosition,
        divergent: list[Disagreement],
        best: ArchitecturePosition | None = None,
        best_coverage: int | None = None,
    ) -> None:
        logger.info("Session %s escalated: %s", session.id, reason)
        escalation = EscalationData(
            reason=reason,
            proposal_a=proposal_a,
            proposal_b=proposal_b,
            negotiation_rounds=session.negotiation_rounds,
            divergent_issues=divergent,
            best_candidate=best,
            best_coverage=best_coverage,
        )
        session.finish_escalated(escalation, f"Needs your input: {reason}")


def _fail_if_cancelled(session: PlanningSession, task: asyncio.Task) -> None:
    # A task cancelled before its first step never enters run(), so nothing
    # published the terminal event yet.
    if task.cancelled() and not session.is_terminal:
        logger.info("Session %s aborted before it started", session.id)
        session.fail(PipelineError("internal", "Planning aborted"))


class PlanningService:
    """Entry point for callers: create sessions, stream their events, abort them."""

    def __init__(self, orchestrator: PlanningOrchestrator, store: SessionStore) -> None:
        self._orchestrator = orchestrator
        self._store = store

    async def create_session(
        self,
        concept: AppConcept,
        layout: LayoutManifest,
        cached_intelligence: dict[str, Any] | None = None,
    ) -> str:
        """Create a session and start its run in the background. Returns the session id."""
        session = self._store.create(concept, layout, cached_intelligence)
        session.task = asyncio.create_task(self._orchestrator.run(session), name=f"planning-{session.id}")
        session.task.add_done_callback(lambda task: _fail_if_cancelled(session, task))
        logger.info("Planning session %s started for '%s'", session.id, concept.name)
        return session.id

    def get(self, session_id: str) -> PlanningSession | None:
        return self._store.get(session_id)

    def stream(self, session_id: str) -> AsyncIterator[PlanEvent]:
        """Events of a session, ending after its terminal event.

        Raises:
            KeyError: If the session is unknown or expired.
        """
        session = self._store.get(session_id)
        if session is None:
            raise KeyError(session_id)
        return session.stream.events()

    async def abort(self, session_id: str) -> bool:
        """Best-effort cancel. True when a running session was stopped."""
        session = self._store.get(session_id)
        if session is None or session.task is None or session.task.done():
            return False
        session.task.cancel()
        await asyncio.wait({session.task})
        return True


def build_generators(config: AppConfig) -> tuple[ProposalGenerator, ProposalGenerator]:
    """Proposal A and B generators from the configured model slots.

    Raises:
        ValueError: If a slot uses an unknown SDK or has no API key.
    """
    generators = []
    for slot in (config.defaults.proposal_a, config.defaults.proposal_b):
        model_cfg = config.models[slot]
        provider_cls = PROVIDER_CLASSES.get(model_cfg.sdk)
        if provider_cls is None:
            raise ValueError(f"Generator '{slot}' uses unsupported sdk '{model_cfg.sdk}'")
        if slot not in config.available_providers:
            raise ValueError(f"Generator '{slot}' has no API key: set {model_cfg.api_key_env} in .env")
        generators.append(
            ProposalGenerator(provider_cls(model_cfg), config.prompts, timeout_sec=model_cfg.timeout_sec)
        )
    return generators[0], generators[1]


def build_service(
    config: AppConfig,
    generators: tuple[ProposalGenerator, ProposalGenerator] | None = None,
) -> PlanningService:
    generators = generators or build_generators(config)
    pipeline = config.pipeline
    validator = Validator(pipeline.coverage_threshold, generators if pipeline.ai_review else ())
    orchestrator = PlanningOrchestrator(generators, validator, pipeline)
    return PlanningService(orchestrator, SessionStore(pipeline.session_ttl_sec))
