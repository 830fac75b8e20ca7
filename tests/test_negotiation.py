"""Tests for src/negotiation.py."""

from unittest.mock import AsyncMock

import pytest

from src.generators import GeneratorError
from src.models import NegotiationRound, Severity, ValidationIssue
from src.negotiation import (
    agreements_between,
    diff_positions,
    negotiate,
    pick_base,
    replan_round,
    settle,
)
from src.providers.base import ProviderError

from tests.conftest import ScriptedGenerator, make_concept, make_position


def _generators(a, b, react_a=None, react_b=None):
    return (ScriptedGenerator("claude", a, react_a), ScriptedGenerator("gemini", b, react_b))


def test_identical_positions_have_no_disagreements():
    assert diff_positions(make_position(), make_position()) == []


def test_orm_difference_is_structural():
    b = make_position(tech_stack={**make_position().tech_stack, "orm": "Drizzle"})
    [d] = diff_positions(make_position(), b)
    assert d.topic == "orm"
    assert d.structural
    assert d.proposal_a_stance == "prisma"
    assert d.proposal_b_stance == "drizzle"


def test_library_difference_is_cosmetic():
    b = make_position(tech_stack={**make_position().tech_stack, "libraries": ["yup"]})
    [d] = diff_positions(make_position(), b)
    assert d.topic == "libraries"
    assert not d.structural


def test_route_set_is_order_insensitive():
    a = make_position()
    b = make_position(api={**a.api, "routes": list(reversed(a.api["routes"]))})
    assert diff_positions(a, b) == []


def test_disabled_agentic_ignores_framework():
    a = make_position(agentic={"enabled": False, "framework": "none"})
    b = make_position(agentic={"enabled": False, "framework": "langgraph"})
    assert diff_positions(a, b) == []


def test_structural_disagreements_listed_first():
    base = make_position()
    b = make_position(
        tech_stack={**base.tech_stack, "libraries": ["yup"], "framework": "Remix"},
    )
    disagreements = diff_positions(base, b)
    assert [d.structural for d in disagreements] == [True, False]


def test_agreements_name_agreed_values():
    agreements = agreements_between(make_position(), make_position())
    assert "orm: prisma" in agreements
    assert "database provider: postgresql" in agreements


@pytest.mark.parametrize(
    ("conf_a", "conf_b", "a_wins"),
    [(0.9, 0.5, True), (0.5, 0.9, False), (0.7, 0.7, True), (None, 0.1, False), (None, None, True)],
)
def test_pick_base(conf_a, conf_b, a_wins):
    assert pick_base(make_position(confidence=conf_a), make_position(confidence=conf_b)) is a_wins


def test_settle_records_whose_value_was_kept():
    a = make_position(confidence=0.4)
    b = make_position(confidence=0.9, tech_stack={**a.tech_stack, "libraries": ["yup"]})
    rnd = NegotiationRound(number=1, proposal_a=a, proposal_b=b, disagreements=diff_positions(a, b))
    base, report = settle([rnd], ("claude", "gemini"))
    assert base is b
    assert report.rounds == 1
    assert report.compromises == ["libraries: kept gemini's yup over claude's zod"]


async def test_identical_proposals_converge_in_round_one():
    p = make_position()
    gens = _generators(p, p)
    result = await negotiate(p, p, gens, make_concept(), max_rounds=5)
    assert result.reached
    assert len(result.rounds) == 1
    assert result.report.compromises == []
    assert result.architecture == p
    gens[0].react.assert_not_awaited()


async def test_converges_after_reaction():
    a = make_position()
    b = make_position(database={**a.database, "provider": "mongodb"})
    gens = _generators(a, b, react_b=a)
    rounds_seen = []
    result = await negotiate(a, b, gens, make_concept(), max_rounds=5, on_round_complete=rounds_seen.append)
    assert result.reached
    assert [r.number for r in rounds_seen] == [1, 2]
    assert result.report.rounds == 2
    gens[1].react.assert_awaited_once()


async def test_non_convergence_keeps_both_positions():
    a = make_position()
    b = make_position(database={**a.database, "provider": "mongodb"})
    result = await negotiate(a, b, _generators(a, b), make_concept(), max_rounds=3)
    assert not result.reached
    assert len(result.rounds) == 3
    assert result.escalation_reason == "Unable to reach consensus after 3 rounds"
    assert result.rounds[-1].proposal_a == a
    assert result.rounds[-1].proposal_b == b
    assert [d.topic for d in result.divergent_issues] == ["database provider"]


async def test_materiality_threshold_tolerates_structural_difference():
    a = make_position()
    b = make_position(database={**a.database, "provider": "mongodb"})
    result = await negotiate(a, b, _generators(a, b), make_concept(), max_rounds=3, materiality_threshold=1)
    assert result.reached
    assert len(result.rounds) == 1
    assert result.report.compromises[0].startswith("database provider: kept claude's postgresql")


async def test_escalate_on_stall_ends_early():
    a = make_position()
    b = make_position(database={**a.database, "provider": "mongodb"})
    result = await negotiate(a, b, _generators(a, b), make_concept(), max_rounds=5, escalate_on_stall=True)
    assert not result.reached
    assert len(result.rounds) == 2


async def test_failed_reaction_keeps_previous_position():
    a = make_position()
    b = make_position(database={**a.database, "provider": "mongodb"})
    gens = _generators(a, b, react_b=a)
    gens[0].react = AsyncMock(side_effect=ProviderError("claude", "Request timed out", timed_out=True))
    gens[1].react = AsyncMock(side_effect=GeneratorError("gemini", "Unparseable response"))
    result = await negotiate(a, b, gens, make_concept(), max_rounds=2)
    assert not result.reached
    assert result.rounds[-1].proposal_a == a
    assert result.rounds[-1].proposal_b == b


async def test_zero_round_budget_rejected():
    p = make_position()
    with pytest.raises(ValueError):
        await negotiate(p, p, _generators(p, p), make_concept(), max_rounds=0)


async def test_replan_round_passes_feedback():
    p = make_position()
    gens = _generators(p, p)
    feedback = [ValidationIssue(Severity.CRITICAL, "missing_feature", "No billing")]
    result = await replan_round(p, p, gens, make_concept(), feedback, attempt=1)
    assert result.reached
    args = gens[0].react.await_args.args
    assert args[-1] == feedback


async def test_replan_round_divergence():
    a = make_position()
    b = make_position(database={**a.database, "provider": "mongodb"})
    result = await replan_round(a, b, _generators(a, b), make_concept(), [], attempt=2)
    assert not result.reached
    assert "replan attempt 2" in result.escalation_reason
