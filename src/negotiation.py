"""Negotiation: structural diff of two positions, bounded reaction rounds, consensus."""

import asyncio
import json
import logging
from collections.abc import Callable
from typing import Any

from src.generators import GeneratorError, ProposalGenerator
from src.models import (
    AppConcept,
    ArchitecturePosition,
    ConsensusReport,
    ConsensusResult,
    Disagreement,
    NegotiationRound,
    ValidationIssue,
)
from src.providers.base import ProviderError

logger = logging.getLogger(__name__)


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip().lower()
    return text or None


def _names(items: Any, key: str = "name") -> frozenset[str]:
    if not isinstance(items, list):
        return frozenset()
    names = set()
    for item in items:
        raw = item.get(key) if isinstance(item, dict) else item
        name = _text(raw)
        if name:
            names.add(name)
    return frozenset(names)


def _routes(api: dict[str, Any]) -> frozenset[str]:
    routes = api.get("routes")
    if not isinstance(routes, list):
        return frozenset()
    return frozenset(
        f"{str(r.get('method', '')).upper()} {str(r.get('path', '')).rstrip('/') or '/'}"
        for r in routes
        if isinstance(r, dict)
    )


def _route_details(api: dict[str, Any]) -> str:
    routes = api.get("routes") if isinstance(api.get("routes"), list) else []
    details = sorted(
        (str(r.get("method", "")).upper(), str(r.get("path", "")), str(r.get("handler", "")),
         ",".join(sorted(str(m) for m in r.get("middleware") or [])))
        for r in routes
        if isinstance(r, dict)
    )
    return json.dumps(details)


def _agentic(p: ArchitecturePosition) -> tuple:
    if not p.agentic.get("enabled"):
        return ("disabled",)
    return ("enabled", _text(p.agentic.get("framework")), _names(p.agentic.get("workflows")))


def _realtime(p: ArchitecturePosition) -> tuple:
    if not p.realtime.get("enabled"):
        return ("disabled",)
    return ("enabled", _text(p.realtime.get("technology")), _names(p.realtime.get("channels")))


def _canonical(value: Any) -> str:
    return json.dumps(value, sort_keys=True, default=str)


# Topics whose disagreement is a hard (structural) disagreement.
STRUCTURAL_TOPICS: list[tuple[str, Callable[[ArchitecturePosition], Any]]] = [
    ("database provider", lambda p: _text(p.database.get("provider"))),
    ("data models", lambda p: _names(p.database.get("models"))),
    ("api style", lambda p: _text(p.api.get("style"))),
    ("api routes", lambda p: _routes(p.api)),
    ("auth provider", lambda p: _text(p.auth.get("provider"))),
    ("auth strategy", lambda p: _text(p.auth.get("strategy"))),
    ("agentic design", _agentic),
    ("realtime", _realtime),
    ("framework", lambda p: _text(p.tech_stack.get("framework"))),
    ("primary database", lambda p: _text(p.tech_stack.get("database"))),
    ("orm", lambda p: _text(p.tech_stack.get("orm"))),
]

# Topics where a difference is cosmetic and resolved by tie-break.
COSMETIC_TOPICS: list[tuple[str, Callable[[ArchitecturePosition], Any]]] = [
    ("libraries", lambda p: _names(p.tech_stack.get("libraries"))),
    ("auth flows", lambda p: _names(p.auth.get("flows"))),
    ("database schema", lambda p: _text(p.database.get("schema"))),
    ("route handlers", lambda p: _route_details(p.api)),
    ("scaling", lambda p: _canonical(p.scaling)),
    ("ai selections", lambda p: _canonical(p.ai_selections)),
]


def describe(value: Any) -> str:
    """Human-readable stance for a compared value."""
    if value is None:
        return "unspecified"
    if isinstance(value, frozenset):
        return ", ".join(sorted(value)) or "none"
    if isinstance(value, tuple):
        return " / ".join(describe(v) for v in value)
    text = str(value)
    return text if len(text) <= 120 else text[:117] + "..."


def diff_positions(a: ArchitecturePosition, b: ArchitecturePosition) -> list[Disagreement]:
    """Compare two positions topic by topic. Structural disagreements come first."""
    disagreements: list[Disagreement] = []
    for structural, topics in ((True, STRUCTURAL_TOPICS), (False, COSMETIC_TOPICS)):
        for topic, extract in topics:
            va, vb = extract(a), extract(b)
            if va != vb:
                disagreements.append(
                    Disagreement(
                        topic=topic,
                        proposal_a_stance=describe(va),
                        proposal_b_stance=describe(vb),
                        structural=structural,
                    )
                )
    return disagreements


def agreements_between(a: ArchitecturePosition, b: ArchitecturePosition) -> list[str]:
    """Structural topics on which both positions already agree."""
    agreed = []
    for topic, extract in STRUCTURAL_TOPICS:
        value = extract(a)
        if value == extract(b):
            agreed.append(f"{topic}: {describe(value)}")
    return agreed


def pick_base(a: ArchitecturePosition, b: ArchitecturePosition) -> bool:
    """True when proposal A should be the consensus base.

    Higher self-reported confidence wins; a missing confidence loses to any
    stated one; ties go to A.
    """
    ca = a.confidence if a.confidence is not None else -1.0
    cb = b.confidence if b.confidence is not None else -1.0
    return ca >= cb


def settle(
    rounds: list[NegotiationRound],
    labels: tuple[str, str],
) -> tuple[ArchitecturePosition, ConsensusReport]:
    """Turn the last (converged) round into a consensus architecture and report."""
    last = rounds[-1]
    a_is_base = pick_base(last.proposal_a, last.proposal_b)
    base = last.proposal_a if a_is_base else last.proposal_b
    kept, dropped = labels if a_is_base else (labels[1], labels[0])

    compromises = []
    for d in last.disagreements:
        kept_stance = d.proposal_a_stance if a_is_base else d.proposal_b_stance
        dropped_stance = d.proposal_b_stance if a_is_base else d.proposal_a_stance
        compromises.append(f"{d.topic}: kept {kept}'s {kept_stance} over {dropped}'s {dropped_stance}")

    report = ConsensusReport(
        rounds=len(rounds),
        final_agreements=agreements_between(last.proposal_a, last.proposal_b),
        compromises=compromises,
    )
    return base, report


async def _react_or_keep(
    generator: ProposalGenerator,
    own: ArchitecturePosition,
    counterpart: ArchitecturePosition,
    disagreements: list[Disagreement],
    concept: AppConcept,
    round_number: int,
    feedback: list[ValidationIssue] | None,
) -> ArchitecturePosition:
    """Ask a generator to react; on failure it keeps its previous position."""
    try:
        return await generator.react(own, counterpart, disagreements, concept, round_number, feedback)
    except (ProviderError, GeneratorError) as exc:
        logger.warning(
            "%s could not react in round %d, keeping its position: %s",
            generator.name(), round_number, exc,
        )
        return own


async def exchange(
    a: ArchitecturePosition,
    b: ArchitecturePosition,
    generators: tuple[ProposalGenerator, ProposalGenerator],
    disagreements: list[Disagreement],
    concept: AppConcept,
    round_number: int,
    feedback: list[ValidationIssue] | None = None,
) -> tuple[ArchitecturePosition, ArchitecturePosition]:
    """Both generators react to each other concurrently."""
    gen_a, gen_b = generators
    new_a, new_b = await asyncio.gather(
        _react_or_keep(gen_a, a, b, disagreements, concept, round_number, feedback),
        _react_or_keep(gen_b, b, a, disagreements, concept, round_number, feedback),
    )
    return new_a, new_b


async def negotiate(
    proposal_a: ArchitecturePosition,
    proposal_b: ArchitecturePosition,
    generators: tuple[ProposalGenerator, ProposalGenerator],
    concept: AppConcept,
    max_rounds: int,
    materiality_threshold: int = 0,
    escalate_on_stall: bool = False,
    on_round_complete: Callable[[NegotiationRound], None] | None = None,
) -> ConsensusResult:
    """Negotiate until the positions converge or the round budget runs out.

    Each round diffs the current positions. Converged when the number of
    structural disagreements is within ``materiality_threshold``. Otherwise
    both generators react to the counterpart and the next round re-diffs.

    Returns:
        ConsensusResult. On non-convergence both latest positions are kept
        in the last round; nothing is discarded.
    """
    if max_rounds < 1:
        raise ValueError("max_rounds must be at least 1")

    labels = (generators[0].name(), generators[1].name())
    rounds: list[NegotiationRound] = []
    current_a, current_b = proposal_a, proposal_b

    for round_num in range(1, max_rounds + 1):
        current = NegotiationRound(
            number=round_num,
            proposal_a=current_a,
            proposal_b=current_b,
            disagreements=diff_positions(current_a, current_b),
        )
        rounds.append(current)
        hard = current.hard_disagreements

        logger.info(
            "Negotiation round %d/%d: %d structural, %d cosmetic disagreements",
            round_num, max_rounds, len(hard), len(current.disagreements) - len(hard),
        )
        if on_round_complete:
            on_round_complete(current)

        if len(hard) <= materiality_threshold:
            architecture, report = settle(rounds, labels)
            return ConsensusResult(reached=True, rounds=rounds, architecture=architecture, report=report)

        if escalate_on_stall and len(rounds) >= 2 and len(hard) >= len(rounds[-2].hard_disagreements):
            return ConsensusResult(
                reached=False,
                rounds=rounds,
                escalation_reason="Negotiation not converging: disagreements are not decreasing",
                divergent_issues=hard,
            )

        if round_num < max_rounds:
            current_a, current_b = await exchange(
                current_a, current_b, generators, hard, concept, round_num + 1
            )

    return ConsensusResult(
        reached=False,
        rounds=rounds,
        escalation_reason=f"Unable to reach consensus after {len(rounds)} rounds",
        divergent_issues=rounds[-1].hard_disagreements,
    )


async def replan_round(
    proposal_a: ArchitecturePosition,
    proposal_b: ArchitecturePosition,
    generators: tuple[ProposalGenerator, ProposalGenerator],
    concept: AppConcept,
    feedback: list[ValidationIssue],
    attempt: int,
    materiality_threshold: int = 0,
) -> ConsensusResult:
    """One feedback-driven round: both react to validator issues, then re-diff once."""
    disagreements = diff_positions(proposal_a, proposal_b)
    new_a, new_b = await exchange(
        proposal_a, proposal_b, generators, disagreements, concept, attempt, feedback
    )
    current = NegotiationRound(
        number=1, proposal_a=new_a, proposal_b=new_b, disagreements=diff_positions(new_a, new_b)
    )
    hard = current.hard_disagreements
    logger.info("Replan attempt %d: %d structural disagreements after feedback", attempt, len(hard))

    if len(hard) <= materiality_threshold:
        architecture, report = settle([current], (generators[0].name(), generators[1].name()))
        return ConsensusResult(reached=True, rounds=[current], architecture=architecture, report=report)
    return ConsensusResult(
        reached=False,
        rounds=[current],
        escalation_reason=f"Positions diverged again during replan attempt {attempt}",
        divergent_issues=hard,
    )
