"""Descriptive statistics used to judge pattern significance.

Every function is pure and deterministic. Degenerate input (empty or
undersized samples) never raises: each function answers with a documented
sentinel instead, so callers can feed raw generation data straight in.
"""

from __future__ import annotations

import math
from collections import defaultdict
from collections.abc import Iterable, Sequence
from typing import NamedTuple

from evolver.core.models import (
    Deviation,
    DeviationDirection,
    DeviationPattern,
    Pattern,
    PatternKey,
)

Z_SCORES: dict[float, float] = {
    0.90: 1.645,
    0.95: 1.96,
    0.99: 2.576,
}
DEFAULT_Z_SCORE = 1.96
IQR_FENCE = 1.5


class ConfidenceInterval(NamedTuple):
    lower: float
    upper: float
    mean: float
    margin: float


class OutlierResult(NamedTuple):
    outliers: list[float]
    lower_bound: float
    upper_bound: float


def mean(values: Sequence[float]) -> float:
    """Arithmetic mean; 0.0 for an empty sample."""
    if not values:
        return 0.0
    return sum(values) / len(values)


def median(values: Sequence[float]) -> float:
    if not values:
        return 0.0
    ordered = sorted(values)
    mid = len(ordered) // 2
    if len(ordered) % 2 == 0:
        return (ordered[mid - 1] + ordered[mid]) / 2
    return ordered[mid]


def standard_deviation(
    values: Sequence[float], precomputed_mean: float | None = None
) -> float:
    """Population standard deviation (divides by n); 0.0 for an empty sample.

    Args:
        values: The sample.
        precomputed_mean: Mean of ``values`` if the caller already has it.
    """
    if not values:
        return 0.0
    center = mean(values) if precomputed_mean is None else precomputed_mean
    variance = sum((v - center) ** 2 for v in values) / len(values)
    return math.sqrt(variance)


def confidence_interval(
    values: Sequence[float], confidence: float = 0.95
) -> ConfidenceInterval:
    """Normal-approximation confidence interval around the mean.

    Unknown confidence levels fall back to the 95% z-score. An empty sample
    yields a zero-width interval at 0.
    """
    center = mean(values)
    n = len(values)
    if n == 0:
        return ConfidenceInterval(lower=0.0, upper=0.0, mean=0.0, margin=0.0)

    z = Z_SCORES.get(confidence, DEFAULT_Z_SCORE)
    margin = z * (standard_deviation(values, center) / math.sqrt(n))
    return ConfidenceInterval(
        lower=center - margin,
        upper=center + margin,
        mean=center,
        margin=margin,
    )


def consistency(values: Sequence[float]) -> float:
    """How tightly values cluster, 0.0-1.0 (1.0 = identical).

    Computed as ``1 - coefficient of variation`` clamped at 0. A single
    value is perfectly consistent; an empty sample scores 0.
    """
    if not values:
        return 0.0
    if len(values) == 1:
        return 1.0

    center = mean(values)
    spread = standard_deviation(values, center)
    cv = spread / abs(center) if center != 0 else 0.0
    return min(1.0, max(0.0, 1.0 - cv))


def significance(pattern: Pattern, total_runs: int) -> float:
    """Rank score for a pattern: frequency share and confidence, weighted by severity."""
    if total_runs <= 0:
        return 0.0
    frequency_score = pattern.frequency / total_runs
    return (frequency_score + pattern.confidence) / 2 * pattern.severity.weight


def correlation(x: Sequence[float], y: Sequence[float]) -> float:
    """Pearson correlation; 0.0 on length mismatch, empty input or zero variance."""
    if len(x) != len(y) or not x:
        return 0.0

    mean_x = mean(x)
    mean_y = mean(y)
    numerator = 0.0
    denom_x = 0.0
    denom_y = 0.0
    for xi, yi in zip(x, y, strict=True):
        dx = xi - mean_x
        dy = yi - mean_y
        numerator += dx * dy
        denom_x += dx * dx
        denom_y += dy * dy

    denominator = math.sqrt(denom_x * denom_y)
    if denominator == 0:
        return 0.0
    return numerator / denominator


def find_outliers(values: Sequence[float]) -> OutlierResult:
    """Tukey IQR fences (1.5x).

    Quartiles are read at ``floor(n * 0.25)`` and ``floor(n * 0.75)`` of the
    sorted sample. Fewer than four values cannot support quartiles and give
    no outliers with zero bounds.
    """
    if len(values) < 4:
        return OutlierResult(outliers=[], lower_bound=0.0, upper_bound=0.0)

    ordered = sorted(values)
    q1 = ordered[math.floor(len(ordered) * 0.25)]
    q3 = ordered[math.floor(len(ordered) * 0.75)]
    iqr = q3 - q1
    lower = q1 - IQR_FENCE * iqr
    upper = q3 + IQR_FENCE * iqr
    return OutlierResult(
        outliers=[v for v in values if v < lower or v > upper],
        lower_bound=lower,
        upper_bound=upper,
    )


def _direction(values: Sequence[float]) -> DeviationDirection:
    over = sum(1 for v in values if v > 0)
    under = sum(1 for v in values if v < 0)
    if over > under:
        return DeviationDirection.OVER
    if under > over:
        return DeviationDirection.UNDER
    return DeviationDirection.WRONG


def analyze_deviations(deviations: Iterable[Deviation]) -> list[DeviationPattern]:
    """Summarize signed deviations per attribute.

    The direction is decided by majority sign; a tie (including all-zero
    deviations) is reported as ``wrong``. The average is the magnitude of
    the signed mean.
    """
    by_field: dict[str, list[float]] = defaultdict(list)
    for dev in deviations:
        by_field[dev.field].append(float(dev.deviation))

    return [
        DeviationPattern(
            attribute=attribute,
            direction=_direction(values),
            average_deviation=abs(mean(values)),
            consistency=consistency(values),
            occurrences=len(values),
        )
        for attribute, values in by_field.items()
    ]


def group_patterns(patterns: Iterable[Pattern]) -> dict[PatternKey, list[Pattern]]:
    """Group patterns sharing a PatternKey, preserving input order."""
    groups: dict[PatternKey, list[Pattern]] = defaultdict(list)
    for pattern in patterns:
        groups[pattern.key].append(pattern)
    return dict(groups)
