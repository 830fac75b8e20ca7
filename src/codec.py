"""camelCase wire dicts <-> pipeline dataclasses.

Everything crossing the HTTP boundary or the event stream goes through these
functions. Decoders are lenient about missing optional keys and strict about
required ones (KeyError / TypeError / ValueError propagate to the caller).
"""

import json
import re
from typing import Any

from src.models import (
    AIFeatureSelection,
    AppConcept,
    ArchitecturePosition,
    ConsensusReport,
    Disagreement,
    DualPlanProgress,
    DualPlanStage,
    EscalationData,
    Feature,
    FinalValidatedArchitecture,
    FrontendBackendNeeds,
    LayoutManifest,
    Severity,
    TechnicalRequirements,
    UINode,
    UserAISelection,
    ValidationIssue,
    ValidationReport,
    ValidationResult,
)

_FENCED_OBJECT = re.compile(r"```(?:json)?\s*(\{[\s\S]*?\})\s*```")
_DECODER = json.JSONDecoder()

# Section defaults used when a generator omits part of the structure.
_DEFAULT_SECTIONS: dict[str, dict[str, Any]] = {
    "database": {"provider": "postgresql", "models": []},
    "api": {"style": "REST", "routes": []},
    "auth": {"provider": "NextAuth", "strategy": "JWT", "flows": ["login"]},
    "agentic": {"enabled": False, "workflows": [], "framework": "none"},
    "realtime": {"enabled": False, "technology": "none", "channels": []},
    "techStack": {"framework": "Next.js 15", "database": "PostgreSQL", "orm": "Prisma", "libraries": []},
    "scaling": {
        "caching": {"strategy": "none", "layers": []},
        "indexing": {"databaseIndexes": []},
        "optimization": {"techniques": []},
    },
    "aiSelections": {},
}

# Top-level keys a payload must carry to count as an architecture at all.
_REQUIRED_SECTIONS = ("database", "api", "auth")


def extract_json_object(text: str) -> dict[str, Any]:
    """Pull a JSON object out of model output (which may wrap it in prose or fences).

    A fenced block wins; otherwise the first ``{`` that starts a complete
    object is decoded and anything after it is ignored.

    Raises:
        ValueError: If no object is present or none parses.
    """
    text = text or ""
    fenced = _FENCED_OBJECT.search(text)
    if fenced:
        text = fenced.group(1)
    error: ValueError | None = None
    start = text.find("{")
    while start != -1:
        try:
            parsed, _ = _DECODER.raw_decode(text, start)
        except json.JSONDecodeError as exc:
            error = error or exc
        else:
            if isinstance(parsed, dict):
                return parsed
        start = text.find("{", start + 1)
    if error is None:
        raise ValueError("No JSON object found in response")
    raise ValueError(f"Malformed JSON object: {error}") from error


# --- Concept / layout -----------------------------------------------------

def concept_from_dict(data: dict[str, Any]) -> AppConcept:
    technical = data.get("technical") or {}
    features = []
    for raw in data.get("coreFeatures") or []:
        if isinstance(raw, str):
            features.append(Feature(name=raw))
        else:
            features.append(
                Feature(
                    name=str(raw["name"]),
                    description=str(raw.get("description", "")),
                    priority=raw.get("priority"),
                    complexity=raw.get("complexity"),
                )
            )
    return AppConcept(
        name=str(data["name"]),
        description=str(data.get("description", "")),
        purpose=str(data.get("purpose", "")),
        target_users=str(data.get("targetUsers", "")),
        core_features=features,
        technical=TechnicalRequirements(
            needs_auth=bool(technical.get("needsAuth", False)),
            needs_database=bool(technical.get("needsDatabase", False)),
            needs_api=bool(technical.get("needsAPI", False)),
            needs_realtime=bool(technical.get("needsRealtime", False)),
            needs_file_upload=bool(technical.get("needsFileUpload", False)),
            preferred_stack=technical.get("preferredStack"),
        ),
        roles=[str(r) for r in data.get("roles") or []],
        workflows=[str(w) for w in data.get("workflows") or []],
    )


def concept_to_dict(concept: AppConcept) -> dict[str, Any]:
    t = concept.technical
    technical: dict[str, Any] = {
        "needsAuth": t.needs_auth,
        "needsDatabase": t.needs_database,
        "needsAPI": t.needs_api,
        "needsRealtime": t.needs_realtime,
        "needsFileUpload": t.needs_file_upload,
    }
    if t.preferred_stack:
        technical["preferredStack"] = t.preferred_stack
    return {
        "name": concept.name,
        "description": concept.description,
        "purpose": concept.purpose,
        "targetUsers": concept.target_users,
        "coreFeatures": [
            {k: v for k, v in {
                "name": f.name,
                "description": f.description,
                "priority": f.priority,
                "complexity": f.complexity,
            }.items() if v is not None}
            for f in concept.core_features
        ],
        "technical": technical,
        "roles": list(concept.roles),
        "workflows": list(concept.workflows),
    }


def _node_from_dict(data: dict[str, Any]) -> UINode:
    return UINode(
        id=str(data.get("id", "")),
        type=str(data.get("type", "container")),
        semantic_tag=str(data.get("semanticTag") or ""),
        attributes={k: str(v) for k, v in (data.get("attributes") or {}).items() if v is not None},
        children=[_node_from_dict(c) for c in data.get("children") or []],
    )


def _node_to_dict(node: UINode) -> dict[str, Any]:
    return {
        "id": node.id,
        "type": node.type,
        "semanticTag": node.semantic_tag,
        "attributes": dict(node.attributes),
        "children": [_node_to_dict(c) for c in node.children],
    }


def layout_from_dict(data: dict[str, Any]) -> LayoutManifest:
    return LayoutManifest(
        root=_node_from_dict(data["root"]),
        definitions={k: _node_from_dict(v) for k, v in (data.get("definitions") or {}).items()},
        detected_features=[str(f) for f in data.get("detectedFeatures") or []],
    )


def layout_to_dict(layout: LayoutManifest) -> dict[str, Any]:
    return {
        "root": _node_to_dict(layout.root),
        "definitions": {k: _node_to_dict(v) for k, v in layout.definitions.items()},
        "detectedFeatures": list(layout.detected_features),
    }


def backend_needs_to_dict(needs: FrontendBackendNeeds) -> dict[str, Any]:
    return {
        "dataModels": [
            {"name": m.name, "fields": m.fields, "inferredFrom": m.inferred_from}
            for m in needs.data_models
        ],
        "apiEndpoints": [
            {"method": e.method, "path": e.path, "purpose": e.purpose, "triggeredBy": e.triggered_by}
            for e in needs.api_endpoints
        ],
        "stateManagement": {
            "globalState": needs.global_state,
            "localState": needs.local_state,
            "complexity": needs.state_complexity,
        },
        "features": {
            "authRequired": needs.auth_required,
            "realtimeNeeded": needs.realtime_needed,
            "fileUploads": needs.file_uploads,
            "searchNeeded": needs.search_needed,
            "paginationNeeded": needs.pagination_needed,
            "cachingNeeded": needs.caching_needed,
        },
        "performance": {
            "expectedDataVolume": needs.expected_data_volume,
            "queryComplexity": needs.query_complexity,
            "concurrentUsers": needs.concurrent_users,
        },
    }


# --- Architecture ---------------------------------------------------------

def position_from_dict(data: dict[str, Any]) -> ArchitecturePosition:
    """Build a position, filling omitted sections with defaults.

    Raises:
        ValueError: If database, api or auth is missing (not an architecture).
    """
    missing = [k for k in _REQUIRED_SECTIONS if not isinstance(data.get(k), dict)]
    if missing:
        raise ValueError(f"Architecture is missing sections: {', '.join(missing)}")

    def section(key: str) -> dict[str, Any]:
        value = data.get(key)
        return dict(value) if isinstance(value, dict) else json.loads(json.dumps(_DEFAULT_SECTIONS[key]))

    confidence = data.get("confidence")
    if isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
        confidence = None
    else:
        confidence = max(0.0, min(1.0, float(confidence)))

    return ArchitecturePosition(
        database=section("database"),
        api=section("api"),
        auth=section("auth"),
        agentic=section("agentic"),
        realtime=section("realtime"),
        tech_stack=section("techStack"),
        scaling=section("scaling"),
        ai_selections=section("aiSelections"),
        confidence=confidence,
    )


def position_to_dict(position: ArchitecturePosition) -> dict[str, Any]:
    data: dict[str, Any] = {
        "database": position.database,
        "api": position.api,
        "auth": position.auth,
        "agentic": position.agentic,
        "realtime": position.realtime,
        "techStack": position.tech_stack,
        "scaling": position.scaling,
        "aiSelections": position.ai_selections,
    }
    if position.confidence is not None:
        data["confidence"] = position.confidence
    return data


def disagreement_to_dict(d: Disagreement) -> dict[str, Any]:
    return {
        "topic": d.topic,
        "proposalAStance": d.proposal_a_stance,
        "proposalBStance": d.proposal_b_stance,
        "structural": d.structural,
    }


def disagreement_from_dict(data: dict[str, Any]) -> Disagreement:
    return Disagreement(
        topic=str(data["topic"]),
        proposal_a_stance=str(data.get("proposalAStance", "")),
        proposal_b_stance=str(data.get("proposalBStance", "")),
        structural=bool(data.get("structural", True)),
    )


def report_to_dict(report: ConsensusReport) -> dict[str, Any]:
    return {
        "rounds": report.rounds,
        "finalAgreements": list(report.final_agreements),
        "compromises": list(report.compromises),
    }


def report_from_dict(data: dict[str, Any]) -> ConsensusReport:
    return ConsensusReport(
        rounds=int(data["rounds"]),
        final_agreements=[str(a) for a in data.get("finalAgreements") or []],
        compromises=[str(c) for c in data.get("compromises") or []],
    )


def validation_to_dict(result: ValidationResult) -> dict[str, Any]:
    return {
        "approvedAt": result.approved_at,
        "coverage": result.coverage,
        "issuesResolved": result.issues_resolved,
        "replanAttempts": result.replan_attempts,
    }


def validation_from_dict(data: dict[str, Any]) -> ValidationResult:
    coverage = int(data["coverage"])
    if not 0 <= coverage <= 100:
        raise ValueError(f"coverage out of range: {coverage}")
    return ValidationResult(
        approved_at=str(data["approvedAt"]),
        coverage=coverage,
        issues_resolved=int(data.get("issuesResolved", 0)),
        replan_attempts=int(data.get("replanAttempts", 0)),
    )


def final_to_dict(final: FinalValidatedArchitecture) -> dict[str, Any]:
    data = position_to_dict(final.architecture)
    data["consensusReport"] = report_to_dict(final.consensus_report)
    data["validation"] = validation_to_dict(final.validation)
    return data


def final_from_dict(data: dict[str, Any]) -> FinalValidatedArchitecture:
    return FinalValidatedArchitecture(
        architecture=position_from_dict(data),
        consensus_report=report_from_dict(data["consensusReport"]),
        validation=validation_from_dict(data["validation"]),
    )


def escalation_to_dict(escalation: EscalationData) -> dict[str, Any]:
    data: dict[str, Any] = {
        "reason": escalation.reason,
        "divergentIssues": [disagreement_to_dict(d) for d in escalation.divergent_issues],
        "proposalA": position_to_dict(escalation.proposal_a),
        "proposalB": position_to_dict(escalation.proposal_b),
        "negotiationRounds": escalation.negotiation_rounds,
    }
    if escalation.best_candidate is not None:
        data["bestCandidate"] = position_to_dict(escalation.best_candidate)
        data["bestCoverage"] = escalation.best_coverage
    return data


def escalation_from_dict(data: dict[str, Any]) -> EscalationData:
    best = data.get("bestCandidate")
    best_coverage = data.get("bestCoverage")
    return EscalationData(
        reason=str(data.get("reason", "")),
        proposal_a=position_from_dict(data["proposalA"]),
        proposal_b=position_from_dict(data["proposalB"]),
        negotiation_rounds=int(data["negotiationRounds"]),
        divergent_issues=[disagreement_from_dict(d) for d in data.get("divergentIssues") or []],
        best_candidate=position_from_dict(best) if isinstance(best, dict) else None,
        best_coverage=int(best_coverage) if best_coverage is not None else None,
    )


def progress_to_dict(progress: DualPlanProgress) -> dict[str, Any]:
    data: dict[str, Any] = {
        "stage": progress.stage.value,
        "progress": progress.percent,
        "message": progress.message,
    }
    if progress.details is not None:
        data["details"] = progress.details
    if progress.negotiation_round is not None:
        data["negotiationRound"] = progress.negotiation_round
        data["maxRounds"] = progress.max_rounds
    return data


def progress_from_dict(data: dict[str, Any]) -> DualPlanProgress:
    percent = int(data["progress"])
    if not 0 <= percent <= 100:
        raise ValueError(f"progress out of range: {percent}")
    round_number = data.get("negotiationRound")
    max_rounds = data.get("maxRounds")
    return DualPlanProgress(
        stage=DualPlanStage(data["stage"]),
        percent=percent,
        message=str(data.get("message", "")),
        details=data.get("details"),
        negotiation_round=int(round_number) if round_number is not None else None,
        max_rounds=int(max_rounds) if max_rounds is not None else None,
    )


# --- Validation reports ---------------------------------------------------

def issue_to_dict(issue: ValidationIssue) -> dict[str, Any]:
    return {
        "severity": issue.severity.value,
        "category": issue.category,
        "description": issue.description,
        "affectedFeatures": list(issue.affected_features),
        "suggestedFix": issue.suggested_fix,
    }


def validation_report_from_dict(data: dict[str, Any]) -> ValidationReport:
    """Decode a reviewer's JSON verdict. Unknown severities degrade to suggestion."""
    issues: list[ValidationIssue] = []
    for raw in data.get("issues") or []:
        if not isinstance(raw, dict):
            continue
        try:
            severity = Severity(raw.get("severity", "suggestion"))
        except ValueError:
            severity = Severity.SUGGESTION
        affected = raw.get("affectedFeatures")
        issues.append(
            ValidationIssue(
                severity=severity,
                category=str(raw.get("category") or "performance"),
                description=str(raw.get("description", "")),
                affected_features=[str(a) for a in affected] if isinstance(affected, list) else [],
                suggested_fix=str(raw.get("suggestedFix", "")),
            )
        )
    coverage = data.get("coverage")
    if isinstance(coverage, bool) or not isinstance(coverage, (int, float)):
        coverage = 0
    return ValidationReport(
        coverage=max(0, min(100, round(coverage))),
        issues=issues,
        reasoning=str(data.get("reasoning", "")),
    )


# --- Preferences ----------------------------------------------------------

def selection_to_dict(selection: UserAISelection) -> dict[str, Any]:
    return {
        "selectedTier": selection.selected_tier,
        "featureSelections": [
            {"featureId": f.feature_id, "featureName": f.feature_name, "selectedModels": list(f.selected_models)}
            for f in selection.feature_selections
        ],
        "customOverrides": dict(selection.custom_overrides),
    }


def selection_from_dict(data: dict[str, Any]) -> UserAISelection:
    return UserAISelection(
        selected_tier=str(data["selectedTier"]),
        feature_selections=[
            AIFeatureSelection(
                feature_id=str(f["featureId"]),
                feature_name=str(f.get("featureName", "")),
                selected_models=[str(m) for m in f.get("selectedModels") or []],
            )
            for f in data.get("featureSelections") or []
        ],
        custom_overrides={str(k): str(v) for k, v in (data.get("customOverrides") or {}).items()},
    )
