"""Exception hierarchy for Evolver.

All Evolver exceptions inherit from EvolverError, enabling callers to catch
broad (EvolverError) or narrow (e.g., ExternalUnavailableError). The
hierarchy is flat.

Statistical degeneracy (empty or undersized samples) has no exception: the
statistics module answers with sentinel values instead. A regression after
an improvement is applied is not an exception either; it surfaces as the
``rejected`` improvement state.
"""

from __future__ import annotations


class EvolverError(Exception):
    """Base exception for all Evolver errors."""


class ConfigurationError(EvolverError):
    """Raised when configuration or a workflow catalog is invalid.

    Attributes:
        code: Machine-readable reason (e.g., ``CONFIG_NOT_FOUND``).
    """

    def __init__(self, message: str, code: str = "INVALID_CONFIG") -> None:
        super().__init__(message)
        self.code = code


class ExternalUnavailableError(EvolverError):
    """Raised when the scripting bridge is unreachable after bounded retries.

    Only the trial that hit the condition is failed.

    Attributes:
        targets: Connection targets that were tried.
        attempts: Number of full rounds over the targets.
    """

    def __init__(
        self,
        message: str,
        targets: list[str] | None = None,
        attempts: int = 0,
    ) -> None:
        super().__init__(message)
        self.targets = targets or []
        self.attempts = attempts


class TrialFailedError(EvolverError):
    """Raised by a trial executor when the agent trial crashes."""


class TrialTimeoutError(TrialFailedError):
    """Raised when a trial exceeds the orchestrator's watchdog."""


class ProposerMalformedError(EvolverError):
    """Raised when an improvement payload is unparseable or schema-invalid.

    Attributes:
        issues: Individual validation problems, if known.
    """

    def __init__(self, message: str, issues: list[str] | None = None) -> None:
        super().__init__(message)
        self.issues = issues or []


class ImprovementStateError(EvolverError):
    """Raised on an illegal improvement lifecycle transition.

    Examples: applying while another improvement awaits validation,
    validating when nothing is pending, touching an accepted improvement.
    """


class DuplicateImprovementError(ImprovementStateError):
    """Raised when an improvement identical to a tried one is proposed."""


class InvalidPhaseTransitionError(EvolverError):
    """Raised when a generation moves between phases out of order."""


class PatternInvariantError(EvolverError):
    """Raised when detected patterns violate frequency/confidence bounds."""


class VersionControlError(EvolverError):
    """Raised when a version-control command fails."""
