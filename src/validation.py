"""Validation: how completely does a candidate architecture cover the concept?

Coverage is computed from concept-derived requirements (features, technical
flags, layout-detected needs) checked against the architecture's component
vocabulary. Optionally both generators review the candidate as well; their
issues are merged and the lower coverage wins.
"""

import asyncio
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone

from src.generators import GeneratorError, ProposalGenerator
from src.models import (
    AppConcept,
    ArchitecturePosition,
    FrontendBackendNeeds,
    Severity,
    ValidationIssue,
    ValidationReport,
    ValidationResult,
)
from src.providers.base import ProviderError

logger = logging.getLogger(__name__)

_STOPWORDS = frozenset({
    "the", "and", "for", "with", "from", "into", "that", "this", "user", "users", "app",
    "api", "management", "manage", "system", "feature", "support", "basic", "simple",
    "create", "view", "page", "list", "able", "can", "their", "your", "new",
})

_SEVERITY_RANK = {Severity.CRITICAL: 3, Severity.WARNING: 2, Severity.SUGGESTION: 1}
_OVERLAP_RATIO = 0.6


def _stem(word: str) -> str:
    if len(word) > 3 and word.endswith("s") and not word.endswith("ss"):
        return word[:-1]
    return word


def tokens(text: str) -> set[str]:
    """Significant lowercase word stems of ``text`` (camelCase and paths split)."""
    spaced = re.sub(r"([a-z])([A-Z])", r"\1 \2", text or "")
    return {
        _stem(w)
        for w in re.split(r"[^a-z0-9]+", spaced.lower())
        if len(w) >= 3 and w not in _STOPWORDS
    }


def component_vocabulary(position: ArchitecturePosition) -> set[str]:
    """Every word stem the architecture's concrete components mention."""
    parts: list[str] = []
    for model in position.database.get("models") or []:
        if isinstance(model, dict):
            parts.append(str(model.get("name", "")))
            for f in model.get("fields") or []:
                parts.append(str(f.get("name", "")) if isinstance(f, dict) else str(f))
    for route in position.api.get("routes") or []:
        if isinstance(route, dict):
            parts += [str(route.get("path", "")), str(route.get("handler", ""))]
    if position.agentic.get("enabled"):
        for wf in position.agentic.get("workflows") or []:
            if isinstance(wf, dict):
                parts += [str(wf.get("name", "")), str(wf.get("description", ""))]
                for agent in wf.get("agents") or []:
                    if isinstance(agent, dict):
                        parts += [str(agent.get("name", "")), str(agent.get("role", ""))]
    if position.realtime.get("enabled"):
        for channel in position.realtime.get("channels") or []:
            if isinstance(channel, dict):
                parts.append(str(channel.get("name", "")))
                parts += [str(e) for e in channel.get("events") or []]
    parts += [str(lib) for lib in position.tech_stack.get("libraries") or []]
    vocab: set[str] = set()
    for part in parts:
        vocab |= tokens(part)
    if _has_auth(position, vocab):
        vocab |= {"auth", "authentication", "login", "signup"}
        for flow in position.auth.get("flows") or []:
            vocab |= tokens(str(flow))
    return vocab


# --- Technical checks -----------------------------------------------------

def _has_auth(p: ArchitecturePosition, _vocab: set[str]) -> bool:
    provider = str(p.auth.get("provider") or "").lower()
    return provider not in ("", "none") and bool(p.auth.get("flows"))


def _has_database(p: ArchitecturePosition, _vocab: set[str]) -> bool:
    return bool(p.database.get("models"))


def _has_api(p: ArchitecturePosition, _vocab: set[str]) -> bool:
    return bool(p.api.get("routes"))


def _has_realtime(p: ArchitecturePosition, _vocab: set[str]) -> bool:
    return bool(p.realtime.get("enabled")) and str(p.realtime.get("technology", "none")).lower() != "none"


def _has_uploads(p: ArchitecturePosition, vocab: set[str]) -> bool:
    return bool(vocab & {"upload", "file", "attachment", "storage"})


def _has_search(p: ArchitecturePosition, vocab: set[str]) -> bool:
    return "search" in vocab


@dataclass
class Requirement:
    name: str
    kind: str   # "feature" | "technical" | "layout"
    check: Callable[[ArchitecturePosition, set[str]], bool]


def _feature_check(words: set[str]) -> Callable[[ArchitecturePosition, set[str]], bool]:
    return lambda _p, vocab: bool(words & vocab)


def derive_requirements(concept: AppConcept, needs: FrontendBackendNeeds | None = None) -> list[Requirement]:
    """List what the architecture must demonstrably address."""
    requirements: list[Requirement] = []
    for feature in concept.core_features:
        words = tokens(feature.name) or tokens(feature.description)
        if words:
            requirements.append(Requirement(feature.name, "feature", _feature_check(words)))

    t = concept.technical
    technical = [
        (t.needs_auth, "Authentication", _has_auth),
        (t.needs_database, "Persistent data models", _has_database),
        (t.needs_api, "API routes", _has_api),
        (t.needs_realtime, "Realtime updates", _has_realtime),
        (t.needs_file_upload, "File uploads", _has_uploads),
    ]
    for needed, name, check in technical:
        if needed:
            requirements.append(Requirement(name, "technical", check))

    if needs is not None:
        layout = [
            (needs.auth_required, "Authentication", _has_auth),
            (needs.search_needed, "Search", _has_search),
            (needs.file_uploads, "File uploads", _has_uploads),
            (needs.realtime_needed, "Realtime updates", _has_realtime),
        ]
        present = {r.name for r in requirements}
        for needed, name, check in layout:
            if needed and name not in present:
                requirements.append(Requirement(name, "layout", check))
                present.add(name)
    return requirements


def assess_coverage(
    position: ArchitecturePosition,
    concept: AppConcept,
    needs: FrontendBackendNeeds | None = None,
) -> ValidationReport:
    """Requirement coverage (0-100) with one critical issue per unaddressed requirement."""
    requirements = derive_requirements(concept, needs)
    if not requirements:
        return ValidationReport(coverage=100, reasoning="No concept requirements to cover")

    vocab = component_vocabulary(position)
    issues = []
    for req in requirements:
        if not req.check(position, vocab):
            issues.append(
                ValidationIssue(
                    severity=Severity.CRITICAL,
                    category="missing_feature",
                    description=f"No component addresses {req.kind} requirement '{req.name}'",
                    affected_features=[req.name],
                    suggested_fix=f"Add models, routes or workflows that implement '{req.name}'",
                )
            )
    addressed = len(requirements) - len(issues)
    coverage = round(100 * addressed / len(requirements))
    return ValidationReport(
        coverage=coverage,
        issues=issues,
        reasoning=f"{addressed}/{len(requirements)} requirements addressed",
    )


def _overlaps(a: ValidationIssue, b: ValidationIssue) -> bool:
    if a.category != b.category:
        return False
    existing = set(a.description.lower().split())
    words = b.description.lower().split()
    matches = sum(1 for w in words if w in existing)
    return matches / max(len(words), 1) > _OVERLAP_RATIO


def dedupe_issues(issues: list[ValidationIssue]) -> list[ValidationIssue]:
    """Drop near-duplicate issues (same category, >60% word overlap), keeping the higher severity."""
    unique: list[ValidationIssue] = []
    for issue in issues:
        for idx, existing in enumerate(unique):
            if _overlaps(existing, issue):
                if _SEVERITY_RANK[issue.severity] > _SEVERITY_RANK[existing.severity]:
                    unique[idx] = issue
                break
        else:
            unique.append(issue)
    return unique


def _review_failed(name: str) -> ValidationIssue:
    return ValidationIssue(
        severity=Severity.WARNING,
        category="performance",
        description=f"{name} review was unable to complete. Manual review recommended.",
        suggested_fix="Review the architecture manually before proceeding.",
    )


class Validator:
    """Scores candidates and decides whether they are approved."""

    def __init__(
        self,
        coverage_threshold: int,
        reviewers: tuple[ProposalGenerator, ...] = (),
    ) -> None:
        self.coverage_threshold = coverage_threshold
        self._reviewers = reviewers

    async def _reviews(
        self, position: ArchitecturePosition, concept: AppConcept
    ) -> list[ValidationReport | ValidationIssue]:
        async def one(reviewer: ProposalGenerator) -> ValidationReport | ValidationIssue:
            try:
                return await reviewer.review(position, concept)
            except (ProviderError, GeneratorError) as exc:
                logger.warning("%s review failed: %s", reviewer.name(), exc)
                return _review_failed(reviewer.name())

        return list(await asyncio.gather(*(one(r) for r in self._reviewers)))

    async def validate(
        self,
        position: ArchitecturePosition,
        concept: AppConcept,
        needs: FrontendBackendNeeds | None = None,
    ) -> ValidationReport:
        report = assess_coverage(position, concept, needs)
        issues = list(report.issues)
        coverage = report.coverage
        reasoning = [report.reasoning]

        if self._reviewers:
            ai_coverages = []
            for outcome in await self._reviews(position, concept):
                if isinstance(outcome, ValidationIssue):
                    issues.append(outcome)
                    continue
                ai_coverages.append(outcome.coverage)
                issues.extend(outcome.issues)
                if outcome.reasoning:
                    reasoning.append(outcome.reasoning)
            if ai_coverages:
                coverage = min(coverage, round(sum(ai_coverages) / len(ai_coverages)))
            issues = dedupe_issues(issues)

        final = ValidationReport(coverage=coverage, issues=issues, reasoning=" | ".join(reasoning))
        final.approved = coverage >= self.coverage_threshold and not final.critical_issues
        logger.info(
            "Validation: coverage %d%% (threshold %d%%), %d critical issues, approved=%s",
            coverage, self.coverage_threshold, len(final.critical_issues), final.approved,
        )
        return final


def freeze(
    report: ValidationReport,
    replan_attempts: int,
    earlier_issues: list[ValidationIssue],
) -> ValidationResult:
    """Stamp an approved report. ``issues_resolved`` counts earlier issues no longer reported."""
    current = {(i.category, i.description) for i in report.issues}
    resolved = {(i.category, i.description) for i in earlier_issues} - current
    return ValidationResult(
        approved_at=datetime.now(timezone.utc).isoformat(),
        coverage=report.coverage,
        issues_resolved=len(resolved),
        replan_attempts=replan_attempts,
    )
