"""Shared pytest fixtures."""

from dataclasses import replace
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock

import pytest

from config.config_loader import (
    AppConfig,
    DefaultsConfig,
    ModelConfig,
    PipelineConfig,
    PromptsConfig,
)
from src.events import PlanEvent
from src.models import (
    AppConcept,
    ArchitecturePosition,
    Feature,
    LayoutManifest,
    ModelResponse,
    TechnicalRequirements,
    UINode,
    ValidationReport,
)
from src.orchestrator import PlanningOrchestrator, PlanningService, SessionStore
from src.providers.base import AIProvider
from src.validation import Validator


class MockProvider(AIProvider):
    """Test double AIProvider."""

    def __init__(self, provider_name: str = "mock", response_content: str = "{}") -> None:
        self._name = provider_name
        self._response_content = response_content
        # Shadow the class method with an AsyncMock at the instance level.
        # ABC check passes because generate is defined in the class body below.
        self.generate = AsyncMock(  # type: ignore[assignment]
            return_value=ModelResponse(
                provider=provider_name,
                model="mock-model",
                round_number=0,
                content=response_content,
                latency_sec=0.1,
                token_count=10,
            )
        )

    def name(self) -> str:
        return self._name

    def model_string(self) -> str:
        return "mock-model"

    async def generate(  # type: ignore[override]
        self, prompt: str, round_number: int = 0, *, timeout_sec: float | None = None
    ) -> ModelResponse:
        """Default implementation; replaced by AsyncMock in __init__."""
        return ModelResponse(
            provider=self._name,
            model="mock-model",
            round_number=round_number,
            content=self._response_content,
            latency_sec=0.1,
            token_count=10,
        )


def make_position(**overrides: Any) -> ArchitecturePosition:
    """A complete position that covers ``make_concept()``."""
    base = ArchitecturePosition(
        database={
            "provider": "postgresql",
            "models": [
                {"name": "Task", "fields": [{"name": "title"}, {"name": "status"}]},
                {"name": "Comment", "fields": [{"name": "body"}]},
                {"name": "User", "fields": [{"name": "email"}]},
            ],
        },
        api={
            "style": "REST",
            "routes": [
                {"method": "GET", "path": "/api/tasks", "handler": "listTasks"},
                {"method": "POST", "path": "/api/comments", "handler": "createComment"},
            ],
        },
        auth={"provider": "NextAuth", "strategy": "JWT", "flows": ["login", "signup"]},
        agentic={"enabled": False, "workflows": [], "framework": "none"},
        realtime={"enabled": False, "technology": "none", "channels": []},
        tech_stack={"framework": "Next.js 15", "database": "PostgreSQL", "orm": "Prisma", "libraries": ["zod"]},
        scaling={},
        ai_selections={},
        confidence=0.8,
    )
    return replace(base, **overrides)


def make_concept(**overrides: Any) -> AppConcept:
    base = AppConcept(
        name="TaskFlow",
        description="Team task tracking",
        purpose="Keep small teams on top of their work",
        core_features=[Feature("Task boards"), Feature("Comments")],
        technical=TechnicalRequirements(needs_auth=True, needs_database=True, needs_api=True),
    )
    return replace(base, **overrides)


def make_layout() -> LayoutManifest:
    return LayoutManifest(
        root=UINode(
            id="root",
            children=[
                UINode(id="login", type="container", semantic_tag="login-form"),
                UINode(
                    id="tasks",
                    type="list",
                    semantic_tag="task-list",
                    children=[UINode(id="t1", type="text", attributes={"text": "Title"})],
                ),
            ],
        ),
        detected_features=["authentication"],
    )


class ScriptedGenerator:
    """ProposalGenerator double: every call is an AsyncMock the test can script.

    ``react`` returns ``react_with`` when given, otherwise the generator's own
    position unchanged.
    """

    def __init__(
        self,
        name: str,
        position: ArchitecturePosition,
        react_with: ArchitecturePosition | None = None,
    ) -> None:
        self._name = name
        self.timeout_sec = 30.0
        self.provider = MockProvider(name)
        self.propose = AsyncMock(return_value=position)
        self.react = AsyncMock(side_effect=lambda own, *args, **kwargs: react_with or own)
        self.review = AsyncMock(return_value=ValidationReport(coverage=100))
        self.brief = AsyncMock(return_value={"frameworks": ["Next.js"]})

    def name(self) -> str:
        return self._name

    def model_string(self) -> str:
        return f"{self._name}-model"


def make_service(gen_a: Any, gen_b: Any, **pipeline: Any) -> PlanningService:
    cfg = PipelineConfig(**pipeline)
    orchestrator = PlanningOrchestrator((gen_a, gen_b), Validator(cfg.coverage_threshold), cfg)
    return PlanningService(orchestrator, SessionStore(cfg.session_ttl_sec))


async def collect_events(service: PlanningService, session_id: str) -> list[PlanEvent]:
    return [event async for event in service.stream(session_id)]


@pytest.fixture
def concept() -> AppConcept:
    return make_concept()


@pytest.fixture
def layout() -> LayoutManifest:
    return make_layout()


@pytest.fixture
def position() -> ArchitecturePosition:
    return make_position()


@pytest.fixture
def sample_model_config() -> ModelConfig:
    return ModelConfig(
        name="test_model",
        sdk="anthropic",
        model="test-model-1",
        api_key_env="TEST_API_KEY",
        timeout_sec=30,
        max_tokens=1024,
    )


@pytest.fixture
def sample_prompts_config() -> PromptsConfig:
    return PromptsConfig(
        generate="{focus}\n{concept}\n{needs_backend}\n{backend_needs}\n{detected_features}\n{intelligence}",
        react="{focus}\nRound {round}\n{own_position}\n{counterpart_position}\n{disagreements}\n"
              "{feedback}\n{concept_features}",
        validate="{focus}\n{architecture}\n{concept}",
        intelligence="Brief for {concept}",
        focus={"claude": "Feasibility.", "gemini": "Agentic opportunities."},
    )


@pytest.fixture
def sample_app_config(tmp_path: Path, sample_prompts_config: PromptsConfig) -> AppConfig:
    models = {
        "claude": ModelConfig(
            name="claude", sdk="anthropic", model="claude-opus-4-6",
            api_key_env="ANTHROPIC_API_KEY", timeout_sec=60, max_tokens=4096,
        ),
        "gemini": ModelConfig(
            name="gemini", sdk="google-genai", model="gemini-3-pro-preview",
            api_key_env="GEMINI_API_KEY", timeout_sec=60, max_tokens=4096,
        ),
    }
    return AppConfig(
        defaults=DefaultsConfig(
            output_dir=tmp_path / "output",
            proposal_a="claude",
            proposal_b="gemini",
            preferences_path=tmp_path / "prefs.yaml",
        ),
        models=models,
        prompts=sample_prompts_config,
        available_providers={"claude", "gemini"},
    )
