"""Rich output formatting for the evolver CLI."""

from __future__ import annotations

from collections.abc import Sequence

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from evolver.core.models import EvolutionResult, Improvement, ImprovementState, StopReason
from evolver.improvement.manager import ImprovementStatistics
from evolver.improvement.vcs import CommitInfo
from evolver.workflows import WorkflowCatalog

console = Console()


STATE_COLORS: dict[ImprovementState, str] = {
    ImprovementState.PROPOSED: "yellow",
    ImprovementState.APPLIED: "blue",
    ImprovementState.ACCEPTED: "green",
    ImprovementState.REJECTED: "red",
}

STOP_REASON_LABELS: dict[StopReason, str] = {
    StopReason.TARGET_REACHED: "[green]target reached[/green]",
    StopReason.PLATEAU: "[yellow]plateau[/yellow]",
    StopReason.MAX_GENERATIONS: "[yellow]max generations[/yellow]",
    StopReason.CANCELLED: "[dim]cancelled[/dim]",
}


def format_duration(seconds: float | None) -> str:
    """Format a duration in seconds (e.g., "5.2s", "3m 12s", "1h 30m")."""
    if seconds is None:
        return "N/A"
    if seconds < 60:
        return f"{seconds:.1f}s"
    if seconds < 3600:
        return f"{int(seconds // 60)}m {int(seconds % 60)}s"
    return f"{int(seconds // 3600)}h {int((seconds % 3600) // 60)}m"


def format_score(score: float | None) -> str:
    if score is None:
        return "-"
    color = "green" if score >= 85 else "yellow" if score >= 60 else "red"
    return f"[{color}]{score:.1f}[/{color}]"


def create_generations_table(result: EvolutionResult) -> Table:
    table = Table(title="Generations", show_header=True, header_style="bold")
    table.add_column("Gen", justify="right", style="cyan")
    table.add_column("Score", justify="right")
    table.add_column("Best", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Patterns", justify="right")
    table.add_column("Improvement")
    for gen in result.generation_results:
        table.add_row(
            str(gen.generation),
            format_score(gen.score),
            format_score(gen.best_score),
            str(len(gen.failed_runs)),
            str(len(gen.patterns)),
            gen.improvement_id or "-",
        )
    return table


def create_result_panel(workflow: str, result: EvolutionResult) -> Panel:
    gain = result.final_score - result.start_score
    body = (
        f"[bold]{workflow}[/bold]\n\n"
        f"Stop reason: {STOP_REASON_LABELS[result.stop_reason]}\n"
        f"Generations: {result.generations_run}\n"
        f"Score: {result.start_score:.1f} -> {result.final_score:.1f} ({gain:+.1f})\n"
        f"Best score: {result.best_score:.1f}\n"
        f"Improvements: {result.improvements_applied} applied, "
        f"{result.improvements_accepted} accepted, "
        f"{result.improvements_rejected} rejected\n"
        f"Duration: {format_duration(result.total_duration_seconds)}"
    )
    border = "green" if result.converged else "yellow"
    return Panel(body, title="Evolution Result", border_style=border)


def create_catalog_table(catalog: WorkflowCatalog) -> Table:
    table = Table(title="Workflows", show_header=True, header_style="bold")
    table.add_column("Category", style="cyan")
    table.add_column("Workflows", justify="right")
    table.add_column("Names")
    for category in catalog.categories:
        workflows = catalog.by_category(category)
        table.add_row(category, str(len(workflows)), ", ".join(w.name for w in workflows))
    return table


def create_statistics_table(stats: ImprovementStatistics) -> Table:
    table = Table(title="Improvements", show_header=False)
    table.add_column("Metric", style="bold")
    table.add_column("Value", justify="right")
    table.add_row("Attempted", str(stats.attempted))
    table.add_row("Accepted", f"[green]{stats.accepted}[/green]")
    table.add_row("Rejected", f"[red]{stats.rejected}[/red]")
    table.add_row("Pending", str(stats.pending))
    table.add_row("Acceptance rate", f"{stats.acceptance_rate * 100:.0f}%")
    table.add_row("Average impact", f"{stats.average_impact:+.1f}")
    for type_name, count in sorted(stats.by_type.items()):
        table.add_row(f"  {type_name}", str(count))
    return table


def create_improvements_table(improvements: Sequence[Improvement]) -> Table:
    table = Table(title="Improvement History", show_header=True, header_style="bold")
    table.add_column("Gen", justify="right")
    table.add_column("Id", style="dim")
    table.add_column("Tool", style="cyan")
    table.add_column("Type")
    table.add_column("Field")
    table.add_column("State")
    table.add_column("Impact", justify="right")
    table.add_column("Commit", style="dim")
    for imp in improvements:
        color = STATE_COLORS[imp.state]
        impact = f"{imp.impact:+.1f}" if imp.impact is not None else "-"
        table.add_row(
            str(imp.generation),
            imp.id,
            imp.tool,
            imp.type.value,
            imp.field,
            f"[{color}]{imp.state.value}[/{color}]",
            impact,
            imp.commit_id[:7] if imp.commit_id else "-",
        )
    return table


def create_commits_table(commits: Sequence[CommitInfo]) -> Table:
    table = Table(title="Evolution Commits", show_header=True, header_style="bold")
    table.add_column("Commit", style="dim")
    table.add_column("Date")
    table.add_column("Subject")
    for commit in commits:
        table.add_row(commit.hash[:7], commit.date, commit.subject)
    return table


def output_error(
    message: str,
    *,
    error_code: str | None = None,
    hints: list[str] | None = None,
    console_instance: Console | None = None,
) -> None:
    out = console_instance or console
    prefix = f"[red]Error [{error_code}]:[/red] " if error_code else "[red]Error:[/red] "
    out.print(f"{prefix}{message}")
    if hints:
        out.print()
        out.print("[dim]Hints:[/dim]")
        for hint in hints:
            out.print(f"  - {hint}")
