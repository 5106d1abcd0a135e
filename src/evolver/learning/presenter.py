"""Render a generation's patterns as a textual report for the proposer.

The report is markdown: context about the task, a severity summary, the
most common failure points, then every pattern ordered by significance.
"""

from __future__ import annotations

from collections import Counter, defaultdict
from collections.abc import Sequence
from dataclasses import dataclass, field

from evolver.core.models import Pattern, PatternKind, Run, Severity
from evolver.learning import statistics

MAX_REPORT_LENGTH = 15000
TRUNCATION_MARKER = "\n\n[Report truncated for length...]"

_KIND_TITLES: dict[PatternKind, str] = {
    PatternKind.TOOL_SEQUENCE: "Tool Sequence Patterns",
    PatternKind.PARAMETER_CHOICE: "Parameter Choice Patterns",
    PatternKind.VISUAL_DEVIATION: "Visual Deviation Patterns",
}

_KIND_SUGGESTIONS: dict[PatternKind, str] = {
    PatternKind.TOOL_SEQUENCE: "Document proper tool ordering in descriptions",
    PatternKind.PARAMETER_CHOICE: "Update parameter description or add validation/guidance",
    PatternKind.VISUAL_DEVIATION: "Add explicit size/positioning hints to tool descriptions",
}


@dataclass
class PatternReport:
    """Everything the proposer needs to know about one generation."""

    task: str
    reference: str
    patterns: list[Pattern]
    """Sorted by significance, most significant first."""

    total_runs: int
    average_score: float
    failure_points: list[str] = field(default_factory=list)
    document_type: str = "General Layout"


def sort_by_significance(patterns: Sequence[Pattern], total_runs: int) -> list[Pattern]:
    return sorted(
        patterns,
        key=lambda p: statistics.significance(p, total_runs),
        reverse=True,
    )


def _failure_points(runs: Sequence[Run], limit: int = 5) -> list[str]:
    counts: Counter[str] = Counter(dev.field for run in runs for dev in run.deviations)
    if not runs:
        return []
    return [
        f"{attribute} issues in {count / len(runs) * 100:.0f}% of runs"
        for attribute, count in counts.most_common(limit)
    ]


def _document_type(runs: Sequence[Run]) -> str:
    usage: Counter[str] = Counter(name for run in runs for name in run.tool_names)
    if usage["create_table"]:
        return "Data/Report Document"
    if usage["create_paragraph_style"] > 3:
        return "Text-Heavy Document"
    if usage["place_file"]:
        return "Image-Based Layout"
    return "General Layout"


def build_report(
    runs: Sequence[Run],
    patterns: Sequence[Pattern],
    task: str,
    reference: str = "",
) -> PatternReport:
    """Assemble a PatternReport from one generation's Runs and patterns."""
    return PatternReport(
        task=task,
        reference=reference,
        patterns=sort_by_significance(patterns, len(runs)),
        total_runs=len(runs),
        average_score=statistics.mean([r.score or 0.0 for r in runs]),
        failure_points=_failure_points(runs),
        document_type=_document_type(runs),
    )


def render_report(report: PatternReport, max_length: int = MAX_REPORT_LENGTH) -> str:
    """Format a report as markdown, truncated at a line boundary past max_length."""
    lines: list[str] = ["# Pattern Analysis Report", ""]

    lines.append("## Context")
    lines.append(f"- Task: {report.task}")
    lines.append(f"- Reference: {report.reference or 'none'}")
    lines.append(f"- Document Type: {report.document_type}")
    lines.append(f"- Runs: {report.total_runs}")
    lines.append(f"- Average Score: {report.average_score:.1f}")
    lines.append("")

    severities = Counter(p.severity for p in report.patterns)
    lines.append("## Summary")
    lines.append(f"- Total Patterns Detected: {len(report.patterns)}")
    for severity in (Severity.HIGH, Severity.MEDIUM, Severity.LOW):
        lines.append(f"- {severity.value.capitalize()} Severity: {severities[severity]}")
    lines.append("")

    if report.failure_points:
        lines.append("## Common Failure Points")
        lines.extend(f"- {point}" for point in report.failure_points)
        lines.append("")

    lines.append("## Detailed Pattern Analysis")
    lines.append("")
    by_kind: dict[PatternKind, list[Pattern]] = defaultdict(list)
    for pattern in report.patterns:
        by_kind[pattern.kind].append(pattern)

    for kind, patterns in by_kind.items():
        lines.append(f"### {_KIND_TITLES[kind]}")
        lines.append("")
        for number, pattern in enumerate(patterns, start=1):
            share = statistics.significance(pattern, report.total_runs)
            lines.append(f"#### Pattern {number}: {pattern.description}")
            lines.append(f"- **Frequency**: {pattern.frequency}/{report.total_runs} agents")
            lines.append(f"- **Confidence**: {pattern.confidence * 100:.1f}%")
            lines.append(f"- **Severity**: {pattern.severity.value}")
            lines.append(f"- **Significance**: {share:.2f}")
            if pattern.examples:
                lines.append("- **Examples**:")
                lines.extend(f"  - {example}" for example in pattern.examples[:3])
            lines.append("")

    text = "\n".join(lines)
    if len(text) <= max_length:
        return text
    truncated = text[:max_length]
    return truncated[: truncated.rfind("\n")] + TRUNCATION_MARKER


def improvement_context(report: PatternReport) -> str:
    """Short list of the issues worth fixing first, highest severity on top."""
    lines = ["Based on the pattern analysis, here are the key areas for improvement:", ""]

    high = [p for p in report.patterns if p.severity is Severity.HIGH]
    if high:
        lines.append("## Critical Issues (High Severity)")
        lines.append("")
        for pattern in high:
            lines.append(f"- **{pattern.description}**")
            lines.append(f"  - Occurs in {pattern.frequency} runs")
            lines.append(f"  - Confidence: {pattern.confidence * 100:.0f}%")
            lines.append(f"  - Suggested improvement: {_KIND_SUGGESTIONS[pattern.kind]}")
            lines.append("")

    medium = [p for p in report.patterns if p.severity is Severity.MEDIUM]
    if medium:
        lines.append("## Important Issues (Medium Severity)")
        lines.append("")
        lines.extend(f"- {p.description}" for p in medium[:5])
        lines.append("")

    return "\n".join(lines)
