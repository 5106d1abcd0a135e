"""Tests for evolver.learning.statistics module."""

import math

import pytest

from evolver.core.models import (
    Deviation,
    DeviationDirection,
    Pattern,
    PatternKey,
    PatternKind,
    Severity,
)
from evolver.learning import statistics


def _pattern(severity: Severity, frequency: int = 2, confidence: float = 0.8) -> Pattern:
    return Pattern(
        kind=PatternKind.TOOL_SEQUENCE,
        description="seq",
        frequency=frequency,
        confidence=confidence,
        severity=severity,
        key=PatternKey.for_sequence(["a", "b"]),
    )


class TestCentralTendency:
    def test_mean_of_empty_sample_is_zero(self):
        assert statistics.mean([]) == 0.0

    def test_mean(self):
        assert statistics.mean([1, 2, 3, 4]) == 2.5

    def test_median_odd_and_even(self):
        assert statistics.median([3, 1, 2]) == 2
        assert statistics.median([4, 1, 3, 2]) == 2.5
        assert statistics.median([]) == 0.0


class TestStandardDeviation:
    def test_empty_and_single_value_are_zero(self):
        assert statistics.standard_deviation([]) == 0.0
        assert statistics.standard_deviation([5]) == 0.0

    def test_population_formula(self):
        """Test that the divisor is n, not n - 1."""
        assert statistics.standard_deviation([1, 2, 3, 4, 5]) == pytest.approx(math.sqrt(2))

    def test_precomputed_mean_is_used(self):
        assert statistics.standard_deviation([2, 4], precomputed_mean=3) == pytest.approx(1.0)


class TestConfidenceInterval:
    def test_constant_sample_has_zero_width(self):
        interval = statistics.confidence_interval([10, 10, 10], 0.95)
        assert interval.lower == interval.upper == 10
        assert interval.margin == 0

    def test_z_scores(self):
        values = [1, 2, 3, 4, 5]
        spread = math.sqrt(2) / math.sqrt(5)
        assert statistics.confidence_interval(values, 0.90).margin == pytest.approx(1.645 * spread)
        assert statistics.confidence_interval(values, 0.99).margin == pytest.approx(2.576 * spread)

    def test_unknown_level_falls_back_to_95(self):
        values = [1, 2, 3, 4, 5]
        assert statistics.confidence_interval(values, 0.5) == statistics.confidence_interval(
            values, 0.95
        )

    def test_empty_sample(self):
        interval = statistics.confidence_interval([])
        assert (interval.lower, interval.upper, interval.mean) == (0.0, 0.0, 0.0)


class TestConsistency:
    def test_single_value_is_fully_consistent(self):
        assert statistics.consistency([42]) == 1.0

    def test_identical_values(self):
        assert statistics.consistency([3, 3, 3]) == 1.0

    def test_empty_sample_scores_zero(self):
        assert statistics.consistency([]) == 0.0

    def test_widely_spread_values_clamp_at_zero(self):
        assert statistics.consistency([-100, 100, 1]) == 0.0

    def test_in_unit_range(self):
        value = statistics.consistency([10, 12, 14])
        assert 0.0 < value < 1.0


class TestSignificance:
    def test_high_severity_outranks_low(self):
        high = statistics.significance(_pattern(Severity.HIGH), 3)
        low = statistics.significance(_pattern(Severity.LOW), 3)
        assert high > low

    def test_formula(self):
        value = statistics.significance(_pattern(Severity.MEDIUM, frequency=2, confidence=0.8), 4)
        assert value == pytest.approx((0.5 + 0.8) / 2 * 0.7)

    def test_no_runs(self):
        assert statistics.significance(_pattern(Severity.HIGH), 0) == 0.0


class TestCorrelation:
    def test_self_correlation_is_one(self):
        assert statistics.correlation([1, 2, 3, 5], [1, 2, 3, 5]) == pytest.approx(1.0)

    def test_inverse(self):
        assert statistics.correlation([1, 2, 3], [3, 2, 1]) == pytest.approx(-1.0)

    def test_mismatched_lengths_give_zero(self):
        assert statistics.correlation([1, 2, 3], [1, 2]) == 0.0

    def test_constant_series_gives_zero(self):
        assert statistics.correlation([1, 1, 1], [1, 2, 3]) == 0.0


class TestOutliers:
    def test_too_few_values(self):
        result = statistics.find_outliers([1, 2, 3])
        assert result.outliers == []
        assert (result.lower_bound, result.upper_bound) == (0.0, 0.0)

    def test_flags_extreme_value(self):
        result = statistics.find_outliers([1, 2, 3, 4, 100])
        assert result.outliers == [100]
        assert result.lower_bound == pytest.approx(-1.0)
        assert result.upper_bound == pytest.approx(7.0)

    def test_no_outliers_in_tight_sample(self):
        assert statistics.find_outliers([10, 11, 12, 13, 14]).outliers == []


class TestAnalyzeDeviations:
    def _devs(self, field: str, *values: float) -> list[Deviation]:
        return [Deviation(field=field, expected=0, actual=v, deviation=v) for v in values]

    def test_majority_direction(self):
        [over] = statistics.analyze_deviations(self._devs("fontSize", 10, 12, -2))
        assert over.direction is DeviationDirection.OVER
        [under] = statistics.analyze_deviations(self._devs("margin", -5, -7))
        assert under.direction is DeviationDirection.UNDER

    def test_tie_is_reported_as_wrong(self):
        [summary] = statistics.analyze_deviations(self._devs("columns", 5, -5))
        assert summary.direction is DeviationDirection.WRONG
        assert summary.average_deviation == 0.0

    def test_groups_by_attribute(self):
        summaries = statistics.analyze_deviations(
            self._devs("fontSize", 20, 30) + self._devs("margin", -4)
        )
        by_attribute = {s.attribute: s for s in summaries}
        assert by_attribute["fontSize"].average_deviation == pytest.approx(25)
        assert by_attribute["fontSize"].occurrences == 2
        assert by_attribute["margin"].consistency == 1.0


class TestGroupPatterns:
    def test_groups_by_key_in_input_order(self):
        a = _pattern(Severity.LOW)
        b = Pattern(
            kind=PatternKind.PARAMETER_CHOICE,
            description="p",
            frequency=1,
            confidence=0.7,
            severity=Severity.MEDIUM,
            key=PatternKey.for_parameter("create_textframe"),
        )
        c = _pattern(Severity.HIGH)
        groups = statistics.group_patterns([a, b, c])
        assert list(groups) == [a.key, b.key]
        assert groups[a.key] == [a, c]
