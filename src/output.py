"""Rich console output and report files (markdown + JSON) for planning results."""

import json
import logging
import re
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from src.codec import escalation_to_dict, final_to_dict, position_to_dict
from src.models import AppConcept, ArchitecturePosition, EscalationData, FinalValidatedArchitecture
from src.negotiation import STRUCTURAL_TOPICS, describe

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)


def _slug(text: str, max_len: int = 40) -> str:
    """Convert text to a filename-safe slug."""
    slug = re.sub(r"[^\w\s-]", "", text.lower())
    slug = re.sub(r"[\s_-]+", "-", slug).strip("-")
    return slug[:max_len]


def comparison_rows(a: ArchitecturePosition, b: ArchitecturePosition) -> list[tuple[str, str, str, bool]]:
    """(topic, A's stance, B's stance, differs) for every structural topic."""
    rows = []
    for topic, extract in STRUCTURAL_TOPICS:
        va, vb = extract(a), extract(b)
        rows.append((topic, describe(va), describe(vb), va != vb))
    return rows


def print_comparison(escalation: EscalationData, labels: tuple[str, str]) -> None:
    """Side-by-side view of both proposals, differences highlighted."""
    console.print(Rule("[bold yellow]Needs Your Input[/bold yellow]"))
    console.print(Text(escalation.reason, style="yellow"))
    table = Table(show_lines=False)
    table.add_column("Topic", style="bold")
    table.add_column(f"A: {labels[0]}")
    table.add_column(f"B: {labels[1]}")
    for topic, stance_a, stance_b, differs in comparison_rows(escalation.proposal_a, escalation.proposal_b):
        style = "red" if differs else "dim"
        table.add_row(topic, Text(stance_a, style=style), Text(stance_b, style=style))
    console.print(table)
    if escalation.best_candidate is not None:
        console.print(
            f"[dim]Best validated candidate reached {escalation.best_coverage}% coverage.[/dim]"
        )


def _architecture_lines(position: ArchitecturePosition) -> list[str]:
    db, api, auth = position.database, position.api, position.auth
    stack = position.tech_stack
    lines = [
        "## Tech Stack",
        "",
        f"- **Framework:** {stack.get('framework', 'unspecified')}",
        f"- **Database:** {stack.get('database', 'unspecified')}",
        f"- **ORM:** {stack.get('orm', 'unspecified')}",
    ]
    libraries = stack.get("libraries") or []
    if libraries:
        lines.append(f"- **Libraries:** {', '.join(str(lib) for lib in libraries)}")

    lines += ["", f"## Database ({db.get('provider', 'unspecified')})", ""]
    for model in db.get("models") or []:
        if not isinstance(model, dict):
            continue
        fields = [f.get("name", "") if isinstance(f, dict) else str(f) for f in model.get("fields") or []]
        lines.append(f"- **{model.get('name', '?')}**: {', '.join(fields) or 'no fields'}")

    lines += ["", f"## API ({api.get('style', 'unspecified')})", ""]
    for route in api.get("routes") or []:
        if isinstance(route, dict):
            lines.append(f"- `{str(route.get('method', '')).upper()} {route.get('path', '')}`")

    lines += [
        "",
        "## Auth",
        "",
        f"- **Provider:** {auth.get('provider', 'unspecified')}",
        f"- **Strategy:** {auth.get('strategy', 'unspecified')}",
        f"- **Flows:** {', '.join(str(f) for f in auth.get('flows') or []) or 'none'}",
    ]

    if position.agentic.get("enabled"):
        lines += ["", f"## Agentic Workflows ({position.agentic.get('framework', 'unspecified')})", ""]
        for wf in position.agentic.get("workflows") or []:
            if isinstance(wf, dict):
                lines.append(f"- **{wf.get('name', '?')}**: {wf.get('description', '')}")
    if position.realtime.get("enabled"):
        lines += ["", f"## Realtime ({position.realtime.get('technology', 'unspecified')})", ""]
        for channel in position.realtime.get("channels") or []:
            if isinstance(channel, dict):
                lines.append(f"- **{channel.get('name', '?')}**: {', '.join(channel.get('events') or [])}")
    return lines


def render_report(
    final: FinalValidatedArchitecture,
    concept: AppConcept,
    labels: tuple[str, str],
    proposal_a: ArchitecturePosition | None = None,
    proposal_b: ArchitecturePosition | None = None,
) -> str:
    """Markdown report for a final architecture."""
    report = final.consensus_report
    validation = final.validation
    lines: list[str] = [
        f"# Architecture Plan: {concept.name}",
        "",
        f"**Date:** {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        f"**Proposals:** A = {labels[0]}, B = {labels[1]}",
        f"**Negotiation rounds:** {report.rounds}",
        f"**Coverage:** {validation.coverage}%",
        f"**Approved at:** {validation.approved_at}",
        f"**Replan attempts:** {validation.replan_attempts}",
        f"**Issues resolved:** {validation.issues_resolved}",
        "",
        "---",
        "",
    ]
    lines += _architecture_lines(final.architecture)

    lines += ["", "## Consensus", "", "### Agreements", ""]
    lines += [f"- {a}" for a in report.final_agreements] or ["- none"]
    lines += ["", "### Compromises", ""]
    lines += [f"- {c}" for c in report.compromises] or ["- none"]

    if proposal_a is not None and proposal_b is not None:
        lines += ["", "## Proposal Comparison", "", f"| Topic | {labels[0]} | {labels[1]} |", "|---|---|---|"]
        for topic, stance_a, stance_b, _differs in comparison_rows(proposal_a, proposal_b):
            lines.append(f"| {topic} | {stance_a} | {stance_b} |")
    lines.append("")
    return "\n".join(lines)


def print_architecture(
    final: FinalValidatedArchitecture,
    concept: AppConcept,
    labels: tuple[str, str],
) -> None:
    """Print the final architecture to the console using Rich markdown."""
    console.print(Rule("[bold green]Final Architecture[/bold green]"))
    console.print(
        Panel(
            f"Coverage: {final.validation.coverage}% | "
            f"Rounds: {final.consensus_report.rounds} | "
            f"Replans: {final.validation.replan_attempts}",
            title=f"[bold]{concept.name}[/bold]",
            border_style="green",
        )
    )
    console.print(Markdown("\n".join(_architecture_lines(final.architecture))))


def save_to_file(
    final: FinalValidatedArchitecture,
    concept: AppConcept,
    output_dir: Path,
    labels: tuple[str, str],
    proposal_a: ArchitecturePosition | None = None,
    proposal_b: ArchitecturePosition | None = None,
) -> Path:
    """Save the markdown report and a JSON copy of the architecture.

    Returns:
        Path to the saved markdown file (the JSON sits beside it).
    """
    output_dir.mkdir(parents=True, exist_ok=True)

    stem = f"{datetime.now().strftime('%Y%m%d_%H%M%S')}_{_slug(concept.name) or 'plan'}"
    md_path = output_dir / f"{stem}.md"
    md_path.write_text(render_report(final, concept, labels, proposal_a, proposal_b), encoding="utf-8")

    payload = {"architecture": final_to_dict(final)}
    if proposal_a is not None and proposal_b is not None:
        payload["proposalA"] = position_to_dict(proposal_a)
        payload["proposalB"] = position_to_dict(proposal_b)
    (output_dir / f"{stem}.json").write_text(
        json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8"
    )
    logger.info("Plan saved to: %s", md_path)
    return md_path


def save_escalation(escalation: EscalationData, concept: AppConcept, output_dir: Path) -> Path:
    """Save an unresolved escalation as JSON so no proposal is lost."""
    output_dir.mkdir(parents=True, exist_ok=True)
    stem = f"{datetime.now().strftime('%Y%m%d_%H%M%S')}_{_slug(concept.name) or 'plan'}"
    path = output_dir / f"{stem}_escalation.json"
    path.write_text(json.dumps(escalation_to_dict(escalation), indent=2, ensure_ascii=False), encoding="utf-8")
    logger.info("Escalation saved to: %s", path)
    return path
