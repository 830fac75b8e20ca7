"""Load settings.yaml into typed dataclasses. Checks generator API keys at startup."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"


@dataclass
class ModelConfig:
    name: str
    sdk: str
    model: str
    api_key_env: str
    timeout_sec: int
    max_tokens: int
    thinking_budget: int | None = None


@dataclass
class PromptsConfig:
    generate: str
    react: str
    validate: str
    intelligence: str
    focus: dict[str, str] = field(default_factory=dict)


@dataclass
class PipelineConfig:
    max_negotiation_rounds: int = 5
    materiality_threshold: int = 0
    escalate_on_stall: bool = False
    coverage_threshold: int = 95
    max_replan_attempts: int = 3
    generator_retries: int = 1
    global_timeout_sec: int = 600
    session_ttl_sec: int = 900
    escalation_default_coverage: int = 85
    ai_review: bool = False


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 8000


@dataclass
class DefaultsConfig:
    output_dir: Path
    proposal_a: str
    proposal_b: str
    preferences_path: Path = Path.home() / ".dualplan" / "preferences.yaml"


@dataclass
class AppConfig:
    defaults: DefaultsConfig
    models: dict[str, ModelConfig]
    prompts: PromptsConfig
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    available_providers: set[str] = field(default_factory=set)


def _load_pipeline(raw: dict) -> PipelineConfig:
    base = PipelineConfig()
    return PipelineConfig(
        max_negotiation_rounds=int(raw.get("max_negotiation_rounds", base.max_negotiation_rounds)),
        materiality_threshold=int(raw.get("materiality_threshold", base.materiality_threshold)),
        escalate_on_stall=bool(raw.get("escalate_on_stall", base.escalate_on_stall)),
        coverage_threshold=int(raw.get("coverage_threshold", base.coverage_threshold)),
        max_replan_attempts=int(raw.get("max_replan_attempts", base.max_replan_attempts)),
        generator_retries=int(raw.get("generator_retries", base.generator_retries)),
        global_timeout_sec=int(raw.get("global_timeout_sec", base.global_timeout_sec)),
        session_ttl_sec=int(raw.get("session_ttl_sec", base.session_ttl_sec)),
        escalation_default_coverage=int(
            raw.get("escalation_default_coverage", base.escalation_default_coverage)
        ),
        ai_review=bool(raw.get("ai_review", base.ai_review)),
    )


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppConfig:
    """Load and validate configuration from settings.yaml.

    Raises FileNotFoundError if settings file missing.
    Raises ValueError if a pipeline budget is out of range.
    Logs which generators lack API keys but does not raise; callers check
    available_providers.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    defaults_raw = raw["defaults"]
    defaults = DefaultsConfig(
        output_dir=Path(defaults_raw["output_dir"]),
        proposal_a=str(defaults_raw["proposal_a"]),
        proposal_b=str(defaults_raw["proposal_b"]),
    )
    if "preferences_path" in defaults_raw:
        defaults.preferences_path = Path(defaults_raw["preferences_path"]).expanduser()

    prompts_raw = raw["prompts"]
    prompts = PromptsConfig(
        generate=prompts_raw["generate"],
        react=prompts_raw["react"],
        validate=prompts_raw["validate"],
        intelligence=prompts_raw["intelligence"],
        focus={k: str(v) for k, v in raw.get("focus", {}).items()},
    )

    pipeline = _load_pipeline(raw.get("pipeline") or {})
    if pipeline.max_negotiation_rounds < 1:
        raise ValueError("pipeline.max_negotiation_rounds must be at least 1")
    if not 0 <= pipeline.coverage_threshold <= 100:
        raise ValueError("pipeline.coverage_threshold must be between 0 and 100")
    if pipeline.max_replan_attempts < 0 or pipeline.generator_retries < 0:
        raise ValueError("pipeline retry budgets must not be negative")

    server_raw = raw.get("server") or {}
    server = ServerConfig(
        host=str(server_raw.get("host", ServerConfig.host)),
        port=int(server_raw.get("port", ServerConfig.port)),
    )

    models: dict[str, ModelConfig] = {}
    available_providers: set[str] = set()

    for provider_name, model_raw in raw["models"].items():
        thinking = model_raw.get("thinking_budget")
        model_cfg = ModelConfig(
            name=provider_name,
            sdk=model_raw["sdk"],
            model=model_raw["model"],
            api_key_env=model_raw["api_key_env"],
            timeout_sec=int(model_raw["timeout_sec"]),
            max_tokens=int(model_raw["max_tokens"]),
            thinking_budget=int(thinking) if thinking is not None else None,
        )
        models[provider_name] = model_cfg

        api_key = os.environ.get(model_raw["api_key_env"], "").strip()
        if api_key:
            available_providers.add(provider_name)
            logger.info("Generator available: %s", provider_name)
        else:
            logger.info(
                "Generator skipped (no API key): %s, set %s in .env",
                provider_name,
                model_raw["api_key_env"],
            )

    for slot in (defaults.proposal_a, defaults.proposal_b):
        if slot not in models:
            raise ValueError(f"Proposal generator '{slot}' has no entry under models")

    return AppConfig(
        defaults=defaults,
        models=models,
        prompts=prompts,
        pipeline=pipeline,
        server=server,
        available_providers=available_providers,
    )
