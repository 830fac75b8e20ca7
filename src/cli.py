"""Click CLI: plan a concept in-process, serve the HTTP API, or check generator health."""

import asyncio
import json
import logging
import sys
from pathlib import Path

import click
import uvicorn
from dotenv import load_dotenv
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

from config.config_loader import AppConfig, load_config
from src.client import ClientPlanState, LocalTransport, PlanningClient
from src.concept_files import load_concept, load_layout
from src.generators import ProposalGenerator
from src.healthcheck import run_health_checks
from src.models import AppConcept, LayoutManifest, PlanChoice
from src.orchestrator import build_generators, build_service
from src.output import print_architecture, print_comparison, save_escalation, save_to_file
from src.preferences import PreferenceStore
from src.server import create_app

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

_ESCALATION_CHOICES = [PlanChoice.PROPOSAL_A.value, PlanChoice.PROPOSAL_B.value, PlanChoice.MERGE.value]
_REVIEW_CHOICES = [PlanChoice.CONSENSUS.value, *_ESCALATION_CHOICES]


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


def _load_config_or_exit() -> AppConfig:
    try:
        return load_config()
    except (FileNotFoundError, ValueError) as exc:
        console.print(f"[bold red]Config error:[/bold red] {exc}")
        sys.exit(1)


def _build_generators_or_exit(config: AppConfig) -> tuple[ProposalGenerator, ProposalGenerator]:
    try:
        return build_generators(config)
    except ValueError as exc:
        console.print(f"[bold red]Error:[/bold red] {exc}")
        sys.exit(1)


def _report_health(generators: tuple[ProposalGenerator, ProposalGenerator]) -> list[str]:
    """Ping both generators and print results. Returns the names that failed."""
    console.print("\n[bold]Checking generators...[/bold]")
    providers = {g.name(): g.provider for g in generators}
    results = asyncio.run(run_health_checks(providers))
    failed = []
    for name in sorted(results):
        ok, err = results[name]
        if ok:
            console.print(f"  [green]OK  [/green] {name}")
        else:
            short_err = err.splitlines()[0][:120] if err else "unknown error"
            console.print(f"  [red]FAIL[/red] {name}: {short_err}")
            failed.append(name)
    console.print()
    return failed


async def _run_plan(
    config: AppConfig,
    generators: tuple[ProposalGenerator, ProposalGenerator],
    concept: AppConcept,
    layout: LayoutManifest,
    cached_intelligence: dict | None,
    output_dir: Path,
    interactive: bool,
) -> Path | None:
    """Run one planning session in-process and save the result. None on error."""
    labels = (generators[0].name(), generators[1].name())
    service = build_service(config, generators)

    console.print(f"\n[bold cyan]Dual Plan[/bold cyan] - {concept.name}")
    console.print(f"Proposal A: {labels[0]} ({generators[0].model_string()})")
    console.print(f"Proposal B: {labels[1]} ({generators[1].model_string()})")
    console.print(f"Round budget: {config.pipeline.max_negotiation_rounds}, "
                  f"coverage threshold: {config.pipeline.coverage_threshold}%\n")

    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task("Starting...", total=100)

        def on_update(state: ClientPlanState) -> None:
            progress.update(
                task,
                completed=state.progress.percent,
                description=f"{client.stage_label}: {state.progress.message}",
            )

        client = PlanningClient(
            LocalTransport(service),
            preferences=PreferenceStore(config.defaults.preferences_path),
            cached_intelligence=cached_intelligence,
            escalation_default_coverage=config.pipeline.escalation_default_coverage,
            on_update=on_update,
        )
        await client.start_planning(concept, layout)
        await client.wait()

    state = client.state
    if state.error:
        console.print(f"[bold red]Planning failed:[/bold red] {state.error}")
        return None

    if client.is_escalated:
        print_comparison(state.escalation, labels)
        if not interactive:
            saved = save_escalation(state.escalation, concept, output_dir)
            console.print(f"\n[yellow]Escalation saved for review:[/yellow] {saved}")
            return saved
        choice = click.prompt(
            "Which architecture should be used?",
            type=click.Choice(_ESCALATION_CHOICES),
            default=PlanChoice.PROPOSAL_A.value,
        )
        client.resolve_escalation(choice)
    elif client.needs_review and interactive:
        choice = click.prompt(
            "Accept the consensus or pick a proposal",
            type=click.Choice(_REVIEW_CHOICES),
            default=PlanChoice.CONSENSUS.value,
        )
        client.confirm_architecture_choice(choice)

    print_architecture(state.result, concept, labels)
    saved = save_to_file(state.result, concept, output_dir, labels, state.proposal_a, state.proposal_b)
    console.print(f"\n[dim]Saved to: {saved}[/dim]")
    return saved


@click.group()
def main() -> None:
    """Dual Plan -- two AI architects, one negotiated architecture.

    \b
    Examples:
      python -m src.cli plan concept.md --layout layout.json
      python -m src.cli plan concept.yaml --rounds 3 --non-interactive
      python -m src.cli serve --port 8000
      python -m src.cli health
    """
    # Model output may contain characters the Windows console codepage can't render.
    if sys.platform == "win32":
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
        if hasattr(sys.stderr, "reconfigure"):
            sys.stderr.reconfigure(encoding="utf-8", errors="replace")
    load_dotenv()


@main.command()
@click.argument("concept_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--layout", "layout_file", type=click.Path(exists=True, dir_okay=False, path_type=Path),
              default=None, help="Layout manifest JSON (default: empty single-container layout)")
@click.option("--intelligence", "intelligence_file", type=click.Path(exists=True, dir_okay=False, path_type=Path),
              default=None, help="Cached intelligence JSON; skips the gathering call")
@click.option("--rounds", default=None, type=click.IntRange(min=1),
              help="Negotiation round budget (default: from config)")
@click.option("--output", "output_path", default=None, help="Output directory (default: from config)")
@click.option("--non-interactive", is_flag=True, help="Never prompt; save escalations for later review")
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
@click.option("--skip-health-check", is_flag=True, default=False,
              help="Skip the API connectivity check at startup")
def plan(
    concept_file: Path,
    layout_file: Path | None,
    intelligence_file: Path | None,
    rounds: int | None,
    output_path: str | None,
    non_interactive: bool,
    verbose: bool,
    skip_health_check: bool,
) -> None:
    """Plan an architecture for CONCEPT_FILE (markdown with frontmatter, or YAML)."""
    _setup_logging(verbose)
    config = _load_config_or_exit()
    if rounds is not None:
        config.pipeline.max_negotiation_rounds = rounds

    try:
        concept = load_concept(concept_file)
        layout = load_layout(layout_file)
        cached = json.loads(intelligence_file.read_text(encoding="utf-8")) if intelligence_file else None
    except (ValueError, OSError) as exc:
        console.print(f"[bold red]Input error:[/bold red] {exc}")
        sys.exit(1)

    generators = _build_generators_or_exit(config)
    if not skip_health_check:
        failed = _report_health(generators)
        if failed and not click.confirm(
            f"{', '.join(failed)} failed the health check. Continue anyway?", default=False
        ):
            sys.exit(1)

    output_dir = Path(output_path) if output_path else config.defaults.output_dir
    saved = asyncio.run(
        _run_plan(config, generators, concept, layout, cached, output_dir, not non_interactive)
    )
    if saved is None:
        sys.exit(1)


@main.command()
@click.option("--host", default=None, help="Bind address (default: from config)")
@click.option("--port", default=None, type=int, help="Port (default: from config)")
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
def serve(host: str | None, port: int | None, verbose: bool) -> None:
    """Run the planning HTTP API (start session, SSE stream, abort)."""
    _setup_logging(verbose)
    config = _load_config_or_exit()
    app = create_app(build_service(config, _build_generators_or_exit(config)))
    uvicorn.run(app, host=host or config.server.host, port=port or config.server.port)


@main.command()
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
def health(verbose: bool) -> None:
    """Ping both proposal generators."""
    _setup_logging(verbose)
    config = _load_config_or_exit()
    if _report_health(_build_generators_or_exit(config)):
        sys.exit(1)


if __name__ == "__main__":
    main()
