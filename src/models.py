"""Dataclasses and enums for the dual planning pipeline. No I/O, no deps."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class DualPlanStage(str, Enum):
    IDLE = "idle"
    LAYOUT_ANALYSIS = "layout-analysis"
    INTELLIGENCE = "intelligence"
    PARALLEL_GENERATION = "parallel-generation"
    CONSENSUS = "consensus"
    VALIDATION = "validation"
    COMPLETE = "complete"
    ERROR = "error"
    ESCALATED = "escalated"


TERMINAL_STAGES = frozenset({DualPlanStage.COMPLETE, DualPlanStage.ERROR, DualPlanStage.ESCALATED})


class PlanChoice(str, Enum):
    PROPOSAL_A = "proposalA"
    PROPOSAL_B = "proposalB"
    MERGE = "merge"
    CONSENSUS = "consensus"  # only meaningful when confirming an automatic result


class Severity(str, Enum):
    CRITICAL = "critical"
    WARNING = "warning"
    SUGGESTION = "suggestion"


@dataclass
class ModelResponse:
    provider: str          # "claude", "gemini"
    model: str             # actual model string used
    round_number: int      # 0 = generation / validation, >= 1 = negotiation round
    content: str
    latency_sec: float
    token_count: int | None


# --- Inputs ---------------------------------------------------------------

@dataclass
class Feature:
    name: str
    description: str = ""
    priority: str | None = None      # "must-have" / "nice-to-have"
    complexity: str | None = None


@dataclass
class TechnicalRequirements:
    needs_auth: bool = False
    needs_database: bool = False
    needs_api: bool = False
    needs_realtime: bool = False
    needs_file_upload: bool = False
    preferred_stack: str | None = None


@dataclass
class AppConcept:
    name: str
    description: str = ""
    purpose: str = ""
    target_users: str = ""
    core_features: list[Feature] = field(default_factory=list)
    technical: TechnicalRequirements = field(default_factory=TechnicalRequirements)
    roles: list[str] = field(default_factory=list)
    workflows: list[str] = field(default_factory=list)

    @property
    def needs_backend(self) -> bool:
        t = self.technical
        return t.needs_auth or t.needs_database or t.needs_realtime or t.needs_file_upload


@dataclass
class UINode:
    id: str
    type: str = "container"
    semantic_tag: str = ""
    attributes: dict[str, str] = field(default_factory=dict)
    children: list["UINode"] = field(default_factory=list)


@dataclass
class LayoutManifest:
    root: UINode
    definitions: dict[str, UINode] = field(default_factory=dict)
    detected_features: list[str] = field(default_factory=list)


# --- Stage 1 output -------------------------------------------------------

@dataclass
class InferredDataModel:
    name: str
    fields: list[str]
    inferred_from: str


@dataclass
class InferredEndpoint:
    method: str
    path: str
    purpose: str
    triggered_by: str


@dataclass
class FrontendBackendNeeds:
    data_models: list[InferredDataModel] = field(default_factory=list)
    api_endpoints: list[InferredEndpoint] = field(default_factory=list)
    global_state: list[str] = field(default_factory=list)
    local_state: list[str] = field(default_factory=list)
    state_complexity: str = "simple"
    auth_required: bool = False
    realtime_needed: bool = False
    file_uploads: bool = False
    search_needed: bool = False
    pagination_needed: bool = False
    caching_needed: bool = False
    expected_data_volume: str = "low"
    query_complexity: str = "simple"
    concurrent_users: int = 1000


# --- Architecture ---------------------------------------------------------

@dataclass(frozen=True)
class ArchitecturePosition:
    """One generator's proposed architecture. Never mutated; use dataclasses.replace."""

    database: dict[str, Any] = field(default_factory=dict)
    api: dict[str, Any] = field(default_factory=dict)
    auth: dict[str, Any] = field(default_factory=dict)
    agentic: dict[str, Any] = field(default_factory=dict)
    realtime: dict[str, Any] = field(default_factory=dict)
    tech_stack: dict[str, Any] = field(default_factory=dict)
    scaling: dict[str, Any] = field(default_factory=dict)
    ai_selections: dict[str, Any] = field(default_factory=dict)
    confidence: float | None = None  # self-reported by the generator, 0-1


@dataclass
class Disagreement:
    topic: str
    proposal_a_stance: str
    proposal_b_stance: str
    structural: bool


@dataclass
class NegotiationRound:
    number: int
    proposal_a: ArchitecturePosition
    proposal_b: ArchitecturePosition
    disagreements: list[Disagreement] = field(default_factory=list)

    @property
    def hard_disagreements(self) -> list[Disagreement]:
        return [d for d in self.disagreements if d.structural]


@dataclass(frozen=True)
class ConsensusReport:
    rounds: int
    final_agreements: list[str] = field(default_factory=list)
    compromises: list[str] = field(default_factory=list)


@dataclass
class ConsensusResult:
    reached: bool
    rounds: list[NegotiationRound]
    architecture: ArchitecturePosition | None = None
    report: ConsensusReport | None = None
    escalation_reason: str | None = None
    divergent_issues: list[Disagreement] = field(default_factory=list)


@dataclass
class ValidationIssue:
    severity: Severity
    category: str      # missing_feature, flow_gap, scaling, security, performance, agentic_design
    description: str
    affected_features: list[str] = field(default_factory=list)
    suggested_fix: str = ""


@dataclass
class ValidationReport:
    coverage: int
    issues: list[ValidationIssue] = field(default_factory=list)
    reasoning: str = ""
    approved: bool = False

    @property
    def critical_issues(self) -> list[ValidationIssue]:
        return [i for i in self.issues if i.severity is Severity.CRITICAL]


@dataclass(frozen=True)
class ValidationResult:
    approved_at: str   # ISO-8601 UTC
    coverage: int
    issues_resolved: int
    replan_attempts: int


@dataclass(frozen=True)
class FinalValidatedArchitecture:
    architecture: ArchitecturePosition
    consensus_report: ConsensusReport
    validation: ValidationResult


@dataclass
class EscalationData:
    reason: str
    proposal_a: ArchitecturePosition
    proposal_b: ArchitecturePosition
    negotiation_rounds: int
    divergent_issues: list[Disagreement] = field(default_factory=list)
    best_candidate: ArchitecturePosition | None = None
    best_coverage: int | None = None


@dataclass
class DualPlanProgress:
    stage: DualPlanStage
    percent: int
    message: str
    details: str | None = None
    negotiation_round: int | None = None
    max_rounds: int | None = None


# --- User preferences -----------------------------------------------------

@dataclass
class AIFeatureSelection:
    feature_id: str
    feature_name: str
    selected_models: list[str] = field(default_factory=list)


@dataclass
class UserAISelection:
    selected_tier: str
    feature_selections: list[AIFeatureSelection] = field(default_factory=list)
    custom_overrides: dict[str, str] = field(default_factory=dict)
