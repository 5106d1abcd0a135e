"""Statistics, pattern detection and pattern reporting."""

from evolver.learning.patterns import (
    PatternDetector,
    PatternDetectorProtocol,
    merge_patterns,
    validate_patterns,
)
from evolver.learning.presenter import (
    PatternReport,
    build_report,
    improvement_context,
    render_report,
)

__all__ = [
    "PatternDetector",
    "PatternDetectorProtocol",
    "PatternReport",
    "build_report",
    "improvement_context",
    "merge_patterns",
    "render_report",
    "validate_patterns",
]
