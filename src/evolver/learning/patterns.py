"""Pattern detection over the Runs of one generation.

The detector looks for three kinds of recurring behavior:
- visual deviations: the produced document misses the reference on the same
  attribute in several Runs
- tool sequences: the same ordered run of tool calls shows up in several
  Runs that scored poorly
- parameter choices: the same argument value is picked repeatedly by Runs
  that scored poorly

Candidates sharing a PatternKey are merged, then filtered by confidence.
Patterns are recomputed from scratch every generation.
"""

from __future__ import annotations

import json
from collections import defaultdict
from collections.abc import Iterable, Sequence
from typing import Any, Protocol

from evolver.core.config import PatternConfig
from evolver.core.errors import PatternInvariantError
from evolver.core.logging import get_logger
from evolver.core.models import Pattern, PatternKey, PatternKind, Run, Severity
from evolver.learning import statistics

_logger = get_logger("detector")

MAX_EXAMPLES = 5
SEQUENCE_SEPARATOR = " -> "
SEQUENCE_SPREAD_PENALTY = 0.7
SEQUENCE_SPREAD_LIMIT = 20.0


class PatternDetectorProtocol(Protocol):
    """Protocol for pattern detection implementations."""

    def detect_all(self) -> list[Pattern]:
        ...


def _score(run: Run) -> float:
    return run.score if run.score is not None else 0.0


def _clamp(value: float) -> float:
    return min(1.0, max(0.0, value))


class PatternDetector:
    """Detects recurring patterns across the Runs of exactly one generation."""

    def __init__(self, runs: Sequence[Run], config: PatternConfig | None = None) -> None:
        """Initialize the detector.

        Args:
            runs: All Runs of one generation, failed ones included.
            config: Detection thresholds. Defaults to PatternConfig().
        """
        self.runs = list(runs)
        self.config = config or PatternConfig()

    def detect_all(self) -> list[Pattern]:
        """Detect, merge and filter patterns.

        Returns:
            Patterns whose confidence reaches the configured threshold, in no
            particular order.
        """
        if not self.runs:
            _logger.debug("no_runs_for_detection")
            return []

        candidates: list[Pattern] = []
        candidates.extend(self._detect_visual_deviations())
        candidates.extend(self._detect_tool_sequences())
        candidates.extend(self._detect_parameter_choices())

        merged = merge_patterns(candidates)
        kept = [p for p in merged if p.confidence >= self.config.confidence_threshold]

        _logger.debug(
            "patterns_detected",
            runs=len(self.runs),
            candidates=len(candidates),
            merged=len(merged),
            kept=len(kept),
        )
        return kept

    def _detect_visual_deviations(self) -> list[Pattern]:
        total = len(self.runs)
        agents_by_attribute: dict[str, list[str]] = defaultdict(list)
        examples_by_attribute: dict[str, list[str]] = defaultdict(list)
        observed_runs: dict[str, set[int]] = defaultdict(set)

        for index, run in enumerate(self.runs):
            for dev in run.deviations:
                if index not in observed_runs[dev.field]:
                    observed_runs[dev.field].add(index)
                    agents_by_attribute[dev.field].append(run.agent_id)
                examples_by_attribute[dev.field].append(
                    f"{run.agent_id}: {dev.field} expected {dev.expected}, actual {dev.actual}"
                )

        all_deviations = [dev for run in self.runs for dev in run.deviations]
        patterns: list[Pattern] = []
        for summary in statistics.analyze_deviations(all_deviations):
            frequency = len(observed_runs[summary.attribute])
            if summary.average_deviation > self.config.high_deviation:
                severity = Severity.HIGH
            elif summary.consistency < self.config.low_consistency:
                severity = Severity.LOW
            else:
                severity = Severity.MEDIUM

            patterns.append(
                Pattern(
                    kind=PatternKind.VISUAL_DEVIATION,
                    description=(
                        f"Consistent {summary.direction.value} deviation in "
                        f"{summary.attribute} (avg: {summary.average_deviation:.1f}%)"
                    ),
                    frequency=frequency,
                    confidence=_clamp(frequency / total),
                    severity=severity,
                    key=PatternKey.for_attribute(summary.attribute),
                    evidence=tuple(agents_by_attribute[summary.attribute]),
                    examples=tuple(examples_by_attribute[summary.attribute][:MAX_EXAMPLES]),
                )
            )
        return patterns

    def _sequences_of(self, tools: list[str]) -> set[tuple[str, ...]]:
        found: set[tuple[str, ...]] = set()
        longest = min(self.config.max_sequence_length, len(tools))
        for length in range(2, longest + 1):
            for start in range(len(tools) - length + 1):
                found.add(tuple(tools[start : start + length]))
        return found

    def _detect_tool_sequences(self) -> list[Pattern]:
        containing: dict[tuple[str, ...], list[int]] = defaultdict(list)
        for index, run in enumerate(self.runs):
            for sequence in self._sequences_of(run.tool_names):
                containing[sequence].append(index)

        patterns: list[Pattern] = []
        for sequence, indices in containing.items():
            if len(indices) < self.config.min_frequency:
                continue

            scores = [_score(self.runs[i]) for i in indices]
            center = statistics.mean(scores)
            spread = statistics.standard_deviation(scores, center)
            confidence = 1 - center / 100
            if spread > SEQUENCE_SPREAD_LIMIT:
                confidence *= SEQUENCE_SPREAD_PENALTY
            confidence = _clamp(confidence)

            if confidence > 0.8:
                severity = Severity.HIGH
            elif confidence > 0.5:
                severity = Severity.MEDIUM
            else:
                severity = Severity.LOW

            label = SEQUENCE_SEPARATOR.join(sequence)
            patterns.append(
                Pattern(
                    kind=PatternKind.TOOL_SEQUENCE,
                    description=f"Problematic tool sequence: {label}",
                    frequency=len(indices),
                    confidence=confidence,
                    severity=severity,
                    key=PatternKey.for_sequence(sequence),
                    evidence=tuple(self.runs[i].agent_id for i in indices),
                    examples=tuple(
                        f"{self.runs[i].agent_id}: {label} (score {_score(self.runs[i]):.0f})"
                        for i in indices[:MAX_EXAMPLES]
                    ),
                )
            )
        return patterns

    def _parameter_value(self, value: Any) -> str:
        if isinstance(value, float):
            value = round(value, self.config.parameter_precision)
        return json.dumps(value, sort_keys=True, default=str)

    def _detect_parameter_choices(self) -> list[Pattern]:
        choices: dict[tuple[str, str], list[int]] = defaultdict(list)
        for index, run in enumerate(self.runs):
            seen: set[tuple[str, str]] = set()
            for call in run.tool_calls:
                for param, value in call.args.items():
                    choice = (call.tool, f"{param}={self._parameter_value(value)}")
                    if choice not in seen:
                        seen.add(choice)
                        choices[choice].append(index)

        patterns: list[Pattern] = []
        for (tool, choice), indices in choices.items():
            if len(indices) < self.config.min_frequency:
                continue
            average = statistics.mean([_score(self.runs[i]) for i in indices])
            if average >= self.config.parameter_score_ceiling:
                continue

            patterns.append(
                Pattern(
                    kind=PatternKind.PARAMETER_CHOICE,
                    description=f"Common parameter choice for {tool}: {choice}",
                    frequency=len(indices),
                    confidence=_clamp(1 - average / 100),
                    severity=Severity.HIGH if average < 50 else Severity.MEDIUM,
                    key=PatternKey.for_parameter(tool),
                    evidence=tuple(self.runs[i].agent_id for i in indices),
                    examples=tuple(
                        f"{self.runs[i].agent_id}: {tool}({choice})"
                        for i in indices[:MAX_EXAMPLES]
                    ),
                )
            )
        return patterns


def _merge_group(group: list[Pattern]) -> Pattern:
    if len(group) == 1:
        return group[0]

    evidence: list[str] = []
    for pattern in group:
        for agent_id in pattern.evidence:
            if agent_id not in evidence:
                evidence.append(agent_id)

    weight = sum(p.frequency for p in group)
    confidence = (
        sum(p.confidence * p.frequency for p in group) / weight if weight else 0.0
    )
    strongest = max(group, key=lambda p: (p.severity.rank, p.confidence, p.frequency))
    severity = max((p.severity for p in group), key=lambda s: s.rank)

    examples: list[str] = []
    for pattern in group:
        examples.extend(e for e in pattern.examples if e not in examples)

    return Pattern(
        kind=strongest.kind,
        description=strongest.description,
        frequency=len(evidence),
        confidence=_clamp(confidence),
        severity=severity,
        key=strongest.key,
        evidence=tuple(evidence),
        examples=tuple(examples[:MAX_EXAMPLES]),
    )


def merge_patterns(patterns: Iterable[Pattern]) -> list[Pattern]:
    """Collapse patterns that share a PatternKey into one aggregate each.

    The aggregate counts the union of contributing Runs, so its frequency
    stays within the generation's Run count.
    """
    return [_merge_group(group) for group in statistics.group_patterns(patterns).values()]


def validate_patterns(patterns: Iterable[Pattern], run_count: int) -> None:
    """Check detector output against its frequency and confidence bounds.

    Raises:
        PatternInvariantError: On the first pattern out of bounds.
    """
    for pattern in patterns:
        if not 0 <= pattern.frequency <= run_count:
            raise PatternInvariantError(
                f"Pattern {pattern.key.label()} has frequency {pattern.frequency} "
                f"for {run_count} runs"
            )
        if not 0.0 <= pattern.confidence <= 1.0:
            raise PatternInvariantError(
                f"Pattern {pattern.key.label()} has confidence {pattern.confidence}"
            )
        if len(set(pattern.evidence)) > run_count:
            raise PatternInvariantError(
                f"Pattern {pattern.key.label()} cites more runs than exist"
            )
