"""Core domain models, configuration, errors and logging."""

from evolver.core.config import EvolutionConfig, load_config
from evolver.core.errors import (
    ConfigurationError,
    DuplicateImprovementError,
    EvolverError,
    ExternalUnavailableError,
    ImprovementStateError,
    InvalidPhaseTransitionError,
    PatternInvariantError,
    ProposerMalformedError,
    TrialFailedError,
    TrialTimeoutError,
    VersionControlError,
)
from evolver.core.models import (
    GenerationPhase,
    Improvement,
    ImprovementState,
    ImprovementType,
    Pattern,
    PatternKey,
    PatternKind,
    Run,
    Severity,
    ToolCall,
)

__all__ = [
    "ConfigurationError",
    "DuplicateImprovementError",
    "EvolutionConfig",
    "EvolverError",
    "ExternalUnavailableError",
    "GenerationPhase",
    "Improvement",
    "ImprovementState",
    "ImprovementStateError",
    "ImprovementType",
    "InvalidPhaseTransitionError",
    "Pattern",
    "PatternInvariantError",
    "PatternKey",
    "PatternKind",
    "ProposerMalformedError",
    "Run",
    "Severity",
    "ToolCall",
    "TrialFailedError",
    "TrialTimeoutError",
    "VersionControlError",
    "load_config",
]
