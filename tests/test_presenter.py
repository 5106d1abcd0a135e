"""Tests for evolver.learning.presenter module."""

from evolver.core.models import Pattern, PatternKey, PatternKind, Severity
from evolver.learning.presenter import (
    TRUNCATION_MARKER,
    build_report,
    improvement_context,
    render_report,
    sort_by_significance,
)
from tests.helpers import make_run


def _pattern(
    kind: PatternKind,
    description: str,
    severity: Severity,
    frequency: int = 2,
    confidence: float = 0.8,
) -> Pattern:
    if kind is PatternKind.TOOL_SEQUENCE:
        key = PatternKey.for_sequence(description.split(" -> "))
    elif kind is PatternKind.PARAMETER_CHOICE:
        key = PatternKey.for_parameter(description)
    else:
        key = PatternKey.for_attribute(description)
    return Pattern(
        kind=kind,
        description=description,
        frequency=frequency,
        confidence=confidence,
        severity=severity,
        key=key,
    )


class TestBuildReport:
    def test_orders_patterns_by_significance(self):
        low = _pattern(PatternKind.TOOL_SEQUENCE, "A -> B", Severity.LOW, confidence=0.6)
        high = _pattern(PatternKind.VISUAL_DEVIATION, "fontSize", Severity.HIGH, confidence=0.9)
        runs = [make_run(f"agent-{i}", score=40) for i in range(1, 4)]

        report = build_report(runs, [low, high], task="Build a page")

        assert report.patterns == [high, low]
        assert report.total_runs == 3
        assert report.average_score == 40

    def test_failure_points_share_of_runs(self):
        runs = [
            make_run("agent-1", deviations=[("fontSize", 10)]),
            make_run("agent-2", deviations=[("fontSize", 12), ("margin", 3)]),
        ]
        report = build_report(runs, [], task="t")
        assert report.failure_points[0] == "fontSize issues in 100% of runs"
        assert report.failure_points[1] == "margin issues in 50% of runs"

    def test_document_type_from_tool_usage(self):
        tables = [make_run("agent-1", ["create_document", "create_table"])]
        images = [make_run("agent-1", ["place_file"])]
        assert build_report(tables, [], task="t").document_type == "Data/Report Document"
        assert build_report(images, [], task="t").document_type == "Image-Based Layout"
        assert build_report([make_run("agent-1")], [], task="t").document_type == "General Layout"

    def test_unscored_runs_count_as_zero(self):
        runs = [make_run("agent-1", score=60), make_run("agent-2", score=None)]
        assert build_report(runs, [], task="t").average_score == 30


class TestRenderReport:
    def test_sections(self):
        patterns = [
            _pattern(PatternKind.TOOL_SEQUENCE, "A -> B", Severity.HIGH),
            _pattern(PatternKind.VISUAL_DEVIATION, "fontSize", Severity.MEDIUM),
        ]
        runs = [make_run("agent-1", deviations=[("fontSize", 5)]), make_run("agent-2")]
        text = render_report(build_report(runs, patterns, task="Academic page", reference="ref"))

        assert text.startswith("# Pattern Analysis Report")
        assert "- Task: Academic page" in text
        assert "- Total Patterns Detected: 2" in text
        assert "- High Severity: 1" in text
        assert "## Common Failure Points" in text
        assert "### Tool Sequence Patterns" in text
        assert "#### Pattern 1: A -> B" in text
        assert "- **Frequency**: 2/2 agents" in text

    def test_truncates_at_line_boundary(self):
        patterns = [
            _pattern(PatternKind.PARAMETER_CHOICE, f"tool_{i}", Severity.LOW)
            for i in range(50)
        ]
        runs = [make_run("agent-1"), make_run("agent-2")]
        text = render_report(build_report(runs, patterns, task="t"), max_length=500)

        assert text.endswith(TRUNCATION_MARKER)
        body = text[: -len(TRUNCATION_MARKER)]
        assert len(body) <= 500
        assert not body.endswith(" ")

    def test_short_report_is_untouched(self):
        text = render_report(build_report([make_run("agent-1")], [], task="t"))
        assert TRUNCATION_MARKER not in text


class TestImprovementContext:
    def test_lists_high_then_medium(self):
        patterns = sort_by_significance(
            [
                _pattern(PatternKind.VISUAL_DEVIATION, "fontSize", Severity.HIGH),
                _pattern(PatternKind.TOOL_SEQUENCE, "A -> B", Severity.MEDIUM),
                _pattern(PatternKind.PARAMETER_CHOICE, "apply_style", Severity.LOW),
            ],
            3,
        )
        runs = [make_run(f"agent-{i}") for i in range(1, 4)]
        text = improvement_context(build_report(runs, patterns, task="t"))

        assert "## Critical Issues (High Severity)" in text
        assert "- **fontSize**" in text
        assert "Add explicit size/positioning hints" in text
        assert "## Important Issues (Medium Severity)" in text
        assert "- A -> B" in text
        assert "apply_style" not in text

    def test_no_patterns(self):
        text = improvement_context(build_report([make_run("agent-1")], [], task="t"))
        assert "Critical Issues" not in text
