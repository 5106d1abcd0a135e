"""Improvement proposal, application, validation and rollback."""

from evolver.improvement.docstore import DocumentationStore, YamlDocumentationStore
from evolver.improvement.manager import (
    ImprovementManager,
    ImprovementStatistics,
    validate_improvement,
)
from evolver.improvement.proposer import (
    AnthropicProposer,
    ImprovementPayload,
    Proposer,
    parse_improvement_payload,
)
from evolver.improvement.regression import RegressionCheck, RegressionReport, RegressionSuite
from evolver.improvement.vcs import (
    GitVersionControl,
    LocalVersionControl,
    VersionControl,
)

__all__ = [
    "AnthropicProposer",
    "DocumentationStore",
    "GitVersionControl",
    "ImprovementManager",
    "ImprovementPayload",
    "ImprovementStatistics",
    "LocalVersionControl",
    "Proposer",
    "RegressionCheck",
    "RegressionReport",
    "RegressionSuite",
    "VersionControl",
    "YamlDocumentationStore",
    "parse_improvement_payload",
    "validate_improvement",
]
