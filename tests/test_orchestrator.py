"""Tests for src/orchestrator.py: stage order, progress, retries, replan, escalation, timeouts."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from src.events import EventType, PlanEvent
from src.generators import GeneratorError
from src.models import DualPlanStage, Feature, TechnicalRequirements
from src.orchestrator import (
    PipelineError,
    PlanningService,
    PlanningSession,
    SessionStore,
    build_generators,
    build_service,
    can_transition,
)
from src.providers.base import ProviderError

from tests.conftest import (
    ScriptedGenerator,
    collect_events,
    make_concept,
    make_layout,
    make_position,
    make_service,
)

_S = DualPlanStage


def _stages(events: list[PlanEvent]) -> list[DualPlanStage]:
    return [DualPlanStage(e.data["stage"]) for e in events]


def assert_valid_run(events: list[PlanEvent]) -> None:
    """Stage path legal, percent non-decreasing, exactly one terminal event, last."""
    stages = [_S.IDLE] + _stages(events)
    for current, target in zip(stages, stages[1:]):
        assert can_transition(current, target), f"illegal jump {current.value} -> {target.value}"
    percents = [e.data["progress"] for e in events]
    assert percents == sorted(percents)
    terminal = [e for e in events if e.is_terminal]
    assert len(terminal) == 1
    assert events[-1].is_terminal


async def _run(service, concept=None, cached=None) -> tuple[str, list[PlanEvent]]:
    session_id = await service.create_session(concept or make_concept(), make_layout(), cached)
    return session_id, await collect_events(service, session_id)


# --- transition guard -----------------------------------------------------

@pytest.mark.parametrize(
    ("current", "target", "allowed"),
    [
        (_S.IDLE, _S.LAYOUT_ANALYSIS, True),
        (_S.IDLE, _S.CONSENSUS, False),
        (_S.CONSENSUS, _S.CONSENSUS, True),
        (_S.VALIDATION, _S.CONSENSUS, True),
        (_S.PARALLEL_GENERATION, _S.ERROR, True),
        (_S.COMPLETE, _S.ERROR, False),
        (_S.ESCALATED, _S.CONSENSUS, False),
    ],
)
def test_can_transition(current, target, allowed):
    assert can_transition(current, target) is allowed


def test_illegal_transition_raises():
    session = PlanningSession(concept=make_concept(), layout=make_layout())
    with pytest.raises(PipelineError) as excinfo:
        session.advance(_S.CONSENSUS, 40, "skipping ahead")
    assert excinfo.value.kind == "internal"


def test_percent_never_decreases():
    session = PlanningSession(concept=make_concept(), layout=make_layout())
    session.advance(_S.LAYOUT_ANALYSIS, 5, "a")
    session.advance(_S.LAYOUT_ANALYSIS, 2, "b")
    assert session.percent == 5


def test_fail_after_terminal_is_ignored():
    session = PlanningSession(concept=make_concept(), layout=make_layout())
    session.fail(PipelineError("internal", "first"))
    session.fail(PipelineError("internal", "second"))
    assert str(session.error) == "first"


# --- session store --------------------------------------------------------

def test_store_ttl_purge():
    now = [0.0]
    store = SessionStore(ttl_sec=10, clock=lambda: now[0])
    session = store.create(make_concept(), make_layout())
    assert store.get(session.id) is session
    now[0] = 11.0
    assert store.get(session.id) is None
    assert store.purge_expired() == 1
    assert len(store) == 0


def test_store_drop():
    store = SessionStore(ttl_sec=10)
    session = store.create(make_concept(), make_layout())
    assert store.drop(session.id) is session
    assert store.drop(session.id) is None


# --- full runs ------------------------------------------------------------

async def test_identical_proposals_complete():
    p = make_position()
    service = make_service(ScriptedGenerator("claude", p), ScriptedGenerator("gemini", p))
    session_id, events = await _run(service)

    assert_valid_run(events)
    assert _stages(events)[:4] == [_S.LAYOUT_ANALYSIS] * 2 + [_S.INTELLIGENCE] * 2
    complete = events[-1]
    assert complete.type is EventType.COMPLETE
    assert complete.data["progress"] == 100
    assert complete.data["negotiationRounds"] == 1
    assert complete.data["architecture"]["consensusReport"]["compromises"] == []
    assert complete.data["architecture"]["validation"]["coverage"] == 100

    session = service.get(session_id)
    assert session.stage is _S.COMPLETE
    assert session.proposal_a_at is not None


async def test_negotiation_progress_reports_rounds():
    a = make_position()
    b = make_position(database={**a.database, "provider": "mongodb"})
    service = make_service(ScriptedGenerator("claude", a), ScriptedGenerator("gemini", b, react_with=a))
    _, events = await _run(service)

    assert_valid_run(events)
    rounds = [e.data for e in events if "negotiationRound" in e.data]
    assert [(r["negotiationRound"], r["maxRounds"]) for r in rounds] == [(1, 5), (2, 5)]
    assert [r["progress"] for r in rounds] == [48, 56]
    assert events[-1].type is EventType.COMPLETE


async def test_non_convergence_escalates_with_both_positions():
    a = make_position()
    b = make_position(database={**a.database, "provider": "mongodb"})
    service = make_service(
        ScriptedGenerator("claude", a), ScriptedGenerator("gemini", b), max_negotiation_rounds=3
    )
    _, events = await _run(service)

    assert_valid_run(events)
    escalation = events[-1]
    assert escalation.type is EventType.ESCALATION
    data = escalation.data["escalation"]
    assert data["negotiationRounds"] == 3
    assert data["proposalB"]["database"]["provider"] == "mongodb"
    assert data["divergentIssues"][0]["topic"] == "database provider"
    assert "bestCandidate" not in data


async def test_low_coverage_replans_then_escalates_with_best_candidate():
    concept = make_concept(
        core_features=[Feature(n) for n in ("Task boards", "Comments", "Invoicing", "Payroll", "Inventory")],
        technical=TechnicalRequirements(),
    )
    p = make_position()
    gen_a, gen_b = ScriptedGenerator("claude", p), ScriptedGenerator("gemini", p)
    service = make_service(gen_a, gen_b, max_replan_attempts=2)
    session_id, events = await _run(service, concept)

    assert_valid_run(events)
    # Two of five features plus layout-detected auth: 3/6 requirements.
    replans = [e for e in events if e.data["stage"] == "consensus" and "Replanning" in e.data["message"]]
    assert len(replans) == 2
    # One reaction per generator per replan round; none during first-round consensus.
    assert gen_a.react.await_count == 2
    escalation = events[-1].data["escalation"]
    assert escalation["bestCoverage"] == 50
    assert escalation["bestCandidate"]["database"]["provider"] == "postgresql"
    assert service.get(session_id).replan_attempts == 2


async def test_replan_feedback_lifts_coverage_to_complete():
    concept = make_concept(core_features=[Feature("Task boards"), Feature("Invoices")])
    weak = make_position()
    strong = make_position(
        database={**weak.database, "models": weak.database["models"] + [{"name": "Invoice", "fields": []}]}
    )
    service = make_service(
        ScriptedGenerator("claude", weak, react_with=strong),
        ScriptedGenerator("gemini", weak, react_with=strong),
    )
    _, events = await _run(service, concept)

    assert_valid_run(events)
    complete = events[-1].data["architecture"]
    assert complete["validation"]["replanAttempts"] == 1
    assert complete["validation"]["issuesResolved"] == 1
    assert complete["consensusReport"]["rounds"] == 2


async def test_generator_retried_once_then_succeeds():
    p = make_position()
    gen_a, gen_b = ScriptedGenerator("claude", p), ScriptedGenerator("gemini", p)
    gen_b.propose = AsyncMock(side_effect=[ProviderError("gemini", "Request timed out", timed_out=True), p])
    service = make_service(gen_a, gen_b)
    _, events = await _run(service)

    assert events[-1].type is EventType.COMPLETE
    assert gen_b.propose.await_count == 2
    assert gen_b.propose.await_args_list[1].kwargs["timeout_sec"] == pytest.approx(45.0)


async def test_persistent_generator_failure_is_terminal_error():
    p = make_position()
    gen_a, gen_b = ScriptedGenerator("claude", p), ScriptedGenerator("gemini", p)
    gen_b.propose = AsyncMock(side_effect=GeneratorError("gemini", "Unparseable response"))
    service = make_service(gen_a, gen_b, generator_retries=1)
    session_id, events = await _run(service)

    assert_valid_run(events)
    error = events[-1]
    assert error.type is EventType.ERROR
    assert error.data["errorKind"] == "generator_failure"
    assert "gemini" in error.data["error"]
    assert gen_b.propose.await_count == 2
    assert service.get(session_id).proposal_a is None


async def test_intelligence_failure_is_terminal_error():
    p = make_position()
    gen_a = ScriptedGenerator("claude", p)
    gen_a.brief = AsyncMock(side_effect=ProviderError("claude", "API call failed"))
    service = make_service(gen_a, ScriptedGenerator("gemini", p))
    _, events = await _run(service)

    assert events[-1].data["errorKind"] == "intelligence_failure"
    gen_a.propose.assert_not_awaited()


async def test_cached_intelligence_skips_gathering():
    p = make_position()
    gen_a = ScriptedGenerator("claude", p)
    service = make_service(gen_a, ScriptedGenerator("gemini", p))
    _, events = await _run(service, cached={"frameworks": ["Remix"]})

    assert events[-1].type is EventType.COMPLETE
    gen_a.brief.assert_not_awaited()
    assert any(e.data["message"] == "Using cached intelligence" for e in events)


async def test_frontend_only_concept_still_runs():
    p = make_position()
    concept = make_concept(core_features=[Feature("Task boards")], technical=TechnicalRequirements())
    service = make_service(ScriptedGenerator("claude", p), ScriptedGenerator("gemini", p))
    _, events = await _run(service, concept)

    assert not concept.needs_backend
    assert events[-1].type is EventType.COMPLETE
    assert any(e.data.get("details") == "frontend only" for e in events)


async def test_global_timeout_is_error():
    p = make_position()
    gen_a = ScriptedGenerator("claude", p)

    async def slow(*args, **kwargs):
        await asyncio.sleep(5)
        return p

    gen_a.propose = AsyncMock(side_effect=slow)
    service = make_service(gen_a, ScriptedGenerator("gemini", p), global_timeout_sec=0.05)
    _, events = await _run(service)

    assert_valid_run(events)
    assert events[-1].data["errorKind"] == "timeout"


async def test_abort_stops_running_session():
    p = make_position()
    gen_a = ScriptedGenerator("claude", p)
    started = asyncio.Event()

    async def hang(*args, **kwargs):
        started.set()
        await asyncio.sleep(60)
        return p

    gen_a.propose = AsyncMock(side_effect=hang)
    service = make_service(gen_a, ScriptedGenerator("gemini", p))
    session_id = await service.create_session(make_concept(), make_layout())
    await started.wait()

    assert await service.abort(session_id) is True
    events = await collect_events(service, session_id)
    assert events[-1].type is EventType.ERROR
    assert events[-1].data["message"] == "Planning aborted"
    assert await service.abort(session_id) is False


async def test_abort_before_first_step_still_closes_stream():
    p = make_position()
    service = make_service(ScriptedGenerator("claude", p), ScriptedGenerator("gemini", p))
    session_id = await service.create_session(make_concept(), make_layout())

    assert await service.abort(session_id) is True
    events = await asyncio.wait_for(collect_events(service, session_id), 2)
    assert [e.type for e in events] == [EventType.ERROR]
    assert events[0].data["message"] == "Planning aborted"
    assert service.get(session_id).stage is _S.ERROR


async def test_dropped_session_publishes_error():
    p = make_position()
    store = SessionStore(ttl_sec=60)
    orchestrator = make_service(ScriptedGenerator("claude", p), ScriptedGenerator("gemini", p))._orchestrator
    service = PlanningService(orchestrator, store)
    session_id = await service.create_session(make_concept(), make_layout())
    events = service.stream(session_id)

    session = store.drop(session_id)
    collected = await asyncio.wait_for(_drain(events), 2)
    assert collected[-1].type is EventType.ERROR
    assert session.is_terminal


async def _drain(events) -> list[PlanEvent]:
    return [event async for event in events]


async def test_unknown_session_stream_raises():
    p = make_position()
    service = make_service(ScriptedGenerator("claude", p), ScriptedGenerator("gemini", p))
    with pytest.raises(KeyError):
        service.stream("nope")
    assert await service.abort("nope") is False


# --- builders -------------------------------------------------------------

def test_build_generators_requires_api_key(sample_app_config, monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "test-key")
    sample_app_config.available_providers = {"claude"}
    with pytest.raises(ValueError, match="GEMINI_API_KEY"):
        build_generators(sample_app_config)


def test_build_generators_rejects_unknown_sdk(sample_app_config, monkeypatch):
    monkeypatch.setenv("ANTHROPIC_API_KEY", "test-key")
    sample_app_config.models["gemini"].sdk = "openai"
    with pytest.raises(ValueError, match="unsupported sdk"):
        build_generators(sample_app_config)


async def test_build_service_with_injected_generators(sample_app_config):
    p = make_position()
    service = build_service(
        sample_app_config, (ScriptedGenerator("claude", p), ScriptedGenerator("gemini", p))
    )
    _, events = await _run(service)
    assert events[-1].type is EventType.COMPLETE
