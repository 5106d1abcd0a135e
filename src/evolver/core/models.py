"""Data models for the evolutionary improvement loop.

Contains the records passed between the orchestrator, the pattern detector
and the improvement manager. Captured records (tool calls, sessions, runs,
patterns) are frozen; improvements are frozen too and move through their
lifecycle by producing new values via ``dataclasses.replace``.
"""

from __future__ import annotations

import copy
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Literal, NamedTuple


# =============================================================================
# Telemetry and comparison records
# =============================================================================


@dataclass(frozen=True)
class ToolCall:
    """One tool invocation captured during a trial.

    ``args`` is stored as a read-only copy of what the caller passed.
    """

    tool: str
    args: Mapping[str, Any] = field(default_factory=dict)
    duration_ms: float = 0.0
    result: Literal["success", "error"] = "success"
    error_message: str | None = None
    timestamp: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        object.__setattr__(self, "args", MappingProxyType(copy.deepcopy(dict(self.args))))

    @property
    def succeeded(self) -> bool:
        return self.result == "success"

    def to_dict(self) -> dict[str, Any]:
        return {
            "tool": self.tool,
            "args": dict(self.args),
            "duration_ms": self.duration_ms,
            "result": self.result,
            "error_message": self.error_message,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolCall:
        result = data.get("result", "success")
        if result not in ("success", "error"):
            result = "error" if data.get("error_message") else "success"
        return cls(
            tool=str(data["tool"]),
            args=dict(data.get("args") or data.get("parameters") or {}),
            duration_ms=float(data.get("duration_ms", data.get("executionTime", 0.0))),
            result=result,
            error_message=data.get("error_message", data.get("errorMessage")),
            timestamp=float(data.get("timestamp", 0.0)),
        )


@dataclass(frozen=True)
class TelemetrySession:
    """All tool calls captured for one agent trial."""

    id: str
    agent_id: str
    generation: int
    started_at: float
    ended_at: float | None = None
    calls: tuple[ToolCall, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "generation": self.generation,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "calls": [c.to_dict() for c in self.calls],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TelemetrySession:
        return cls(
            id=str(data["id"]),
            agent_id=str(data["agent_id"]),
            generation=int(data["generation"]),
            started_at=float(data["started_at"]),
            ended_at=data.get("ended_at"),
            calls=tuple(ToolCall.from_dict(c) for c in data.get("calls", [])),
        )


@dataclass(frozen=True)
class Deviation:
    """A measured difference between the produced document and the reference.

    ``deviation`` is signed: positive means the actual value is over the
    reference, negative means under.
    """

    field: str
    expected: Any
    actual: Any
    deviation: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "field": self.field,
            "expected": self.expected,
            "actual": self.actual,
            "deviation": self.deviation,
        }


@dataclass(frozen=True)
class ComparisonResult:
    """Result of comparing extracted metrics to the reference."""

    score: float
    """Similarity score, 0-100."""

    match: bool
    deviations: tuple[Deviation, ...] = ()


# =============================================================================
# Runs
# =============================================================================


@dataclass(frozen=True)
class Run:
    """Captured record of one trial. Immutable once built."""

    agent_id: str
    generation: int
    tool_calls: tuple[ToolCall, ...] = ()
    deviations: tuple[Deviation, ...] = ()
    success: bool = False
    error: str | None = None
    score: float | None = None
    """Comparison score, None when no comparison was produced."""

    duration_seconds: float = 0.0
    session_id: str | None = None
    metrics: dict[str, Any] | None = None

    @property
    def tool_names(self) -> list[str]:
        return [call.tool for call in self.tool_calls]

    @classmethod
    def failed(
        cls,
        agent_id: str,
        generation: int,
        error: str,
        duration_seconds: float = 0.0,
        session_id: str | None = None,
    ) -> Run:
        """Build the failed Run used for crashed, timed-out or unreset trials."""
        return cls(
            agent_id=agent_id,
            generation=generation,
            tool_calls=(),
            deviations=(),
            success=False,
            error=error,
            score=None,
            duration_seconds=duration_seconds,
            session_id=session_id,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "agent_id": self.agent_id,
            "generation": self.generation,
            "tool_calls": [c.to_dict() for c in self.tool_calls],
            "deviations": [d.to_dict() for d in self.deviations],
            "success": self.success,
            "error": self.error,
            "score": self.score,
            "duration_seconds": self.duration_seconds,
            "session_id": self.session_id,
        }


# =============================================================================
# Patterns
# =============================================================================


class PatternKind(str, Enum):
    """Kinds of recurring behavior detected across one generation."""

    TOOL_SEQUENCE = "tool-sequence"
    PARAMETER_CHOICE = "parameter-choice"
    VISUAL_DEVIATION = "visual-deviation"


class Severity(str, Enum):
    """Qualitative weight applied to a pattern's significance."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def weight(self) -> float:
        return _SEVERITY_WEIGHTS[self]

    @property
    def rank(self) -> int:
        return _SEVERITY_RANKS[self]


_SEVERITY_WEIGHTS: dict[Severity, float] = {
    Severity.HIGH: 1.0,
    Severity.MEDIUM: 0.7,
    Severity.LOW: 0.4,
}

_SEVERITY_RANKS: dict[Severity, int] = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
}


class PatternKey(NamedTuple):
    """Grouping key for merging patterns of the same behavior.

    The qualifier is the first two tool names for a tool sequence, the tool
    name for a parameter choice, and the attribute for a visual deviation.
    """

    kind: PatternKind
    qualifier: tuple[str, ...]

    @classmethod
    def for_sequence(cls, tools: list[str] | tuple[str, ...]) -> PatternKey:
        return cls(PatternKind.TOOL_SEQUENCE, tuple(tools[:2]))

    @classmethod
    def for_parameter(cls, tool: str) -> PatternKey:
        return cls(PatternKind.PARAMETER_CHOICE, (tool,))

    @classmethod
    def for_attribute(cls, attribute: str) -> PatternKey:
        return cls(PatternKind.VISUAL_DEVIATION, (attribute,))

    def label(self) -> str:
        return f"{self.kind.value}:{'-'.join(self.qualifier)}"


@dataclass(frozen=True)
class Pattern:
    """A recurring behavior or deviation detected in one generation."""

    kind: PatternKind
    description: str
    frequency: int
    """Number of Runs exhibiting the pattern (never above the Run count)."""

    confidence: float
    """Confidence in the pattern, 0.0-1.0."""

    severity: Severity
    key: PatternKey
    evidence: tuple[str, ...] = ()
    """Agent ids of the Runs that exhibit the pattern."""

    examples: tuple[str, ...] = ()


class DeviationDirection(str, Enum):
    OVER = "over"
    UNDER = "under"
    WRONG = "wrong"


@dataclass(frozen=True)
class DeviationPattern:
    """Aggregate of the deviations observed for one attribute."""

    attribute: str
    direction: DeviationDirection
    average_deviation: float
    consistency: float
    occurrences: int


# =============================================================================
# Generations
# =============================================================================


class GenerationPhase(str, Enum):
    """Lifecycle of one generation."""

    IDLE = "idle"
    PREPARING = "preparing"
    EXECUTING = "executing"
    COLLECTING = "collecting"
    ANALYZED = "analyzed"
    CLOSED = "closed"


@dataclass
class GenerationResult:
    """Outcome of one generation of trials."""

    generation: int
    runs: list[Run]
    score: float
    """Aggregate score: mean over Runs that produced a comparison."""

    patterns: list[Pattern] = field(default_factory=list)
    best_score: float = 0.0
    worst_score: float = 0.0
    phase: GenerationPhase = GenerationPhase.IDLE
    duration_seconds: float = 0.0
    improvement_id: str | None = None
    """Improvement applied after this generation, if any."""

    @property
    def failed_runs(self) -> list[Run]:
        return [r for r in self.runs if not r.success]

    def to_dict(self) -> dict[str, Any]:
        return {
            "generation": self.generation,
            "score": self.score,
            "best_score": self.best_score,
            "worst_score": self.worst_score,
            "phase": self.phase.value,
            "duration_seconds": self.duration_seconds,
            "improvement_id": self.improvement_id,
            "runs": [r.to_dict() for r in self.runs],
            "patterns": [
                {
                    "kind": p.kind.value,
                    "description": p.description,
                    "frequency": p.frequency,
                    "confidence": p.confidence,
                    "severity": p.severity.value,
                }
                for p in self.patterns
            ],
        }


# =============================================================================
# Improvements
# =============================================================================


class ImprovementType(str, Enum):
    DESCRIPTION = "description"
    PARAMETER = "parameter"
    EXAMPLE = "example"
    CONSTRAINT = "constraint"


class ImprovementState(str, Enum):
    PROPOSED = "proposed"
    APPLIED = "applied"
    ACCEPTED = "accepted"
    REJECTED = "rejected"

    @property
    def is_final(self) -> bool:
        return self in (ImprovementState.ACCEPTED, ImprovementState.REJECTED)


def _new_improvement_id() -> str:
    return f"imp_{uuid.uuid4().hex[:12]}"


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class Improvement:
    """A single proposed documentation edit and its lifecycle state."""

    type: ImprovementType
    tool: str
    field: str
    """Documentation field in the store (e.g., ``parameters.fontSize``)."""

    current: str
    proposed: str
    rationale: str
    expected_impact: float
    generation: int
    id: str = field(default_factory=_new_improvement_id)
    state: ImprovementState = ImprovementState.PROPOSED
    baseline_score: float | None = None
    after_score: float | None = None
    commit_id: str | None = None
    rollback_commit_id: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def impact(self) -> float | None:
        if self.baseline_score is None or self.after_score is None:
            return None
        return self.after_score - self.baseline_score

    def signature(self) -> tuple[str, str, str, str]:
        """Identity used to refuse re-proposing a tried improvement."""
        return (self.tool, self.type.value, self.field, self.proposed.strip())

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "tool": self.tool,
            "field": self.field,
            "current": self.current,
            "proposed": self.proposed,
            "rationale": self.rationale,
            "expected_impact": self.expected_impact,
            "generation": self.generation,
            "state": self.state.value,
            "baseline_score": self.baseline_score,
            "after_score": self.after_score,
            "commit_id": self.commit_id,
            "rollback_commit_id": self.rollback_commit_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Improvement:
        return cls(
            id=data["id"],
            type=ImprovementType(data["type"]),
            tool=data["tool"],
            field=data["field"],
            current=data.get("current", ""),
            proposed=data["proposed"],
            rationale=data.get("rationale", ""),
            expected_impact=float(data.get("expected_impact", 0.0)),
            generation=int(data["generation"]),
            state=ImprovementState(data["state"]),
            baseline_score=data.get("baseline_score"),
            after_score=data.get("after_score"),
            commit_id=data.get("commit_id"),
            rollback_commit_id=data.get("rollback_commit_id"),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )


@dataclass(frozen=True)
class ImprovementEvent:
    """One entry of the append-only improvement audit trail."""

    improvement_id: str
    from_state: ImprovementState | None
    to_state: ImprovementState
    score: float | None = None
    commit_id: str | None = None
    note: str = ""
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "improvement_id": self.improvement_id,
            "from_state": self.from_state.value if self.from_state else None,
            "to_state": self.to_state.value,
            "score": self.score,
            "commit_id": self.commit_id,
            "note": self.note,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ImprovementEvent:
        from_state = data.get("from_state")
        return cls(
            improvement_id=data["improvement_id"],
            from_state=ImprovementState(from_state) if from_state else None,
            to_state=ImprovementState(data["to_state"]),
            score=data.get("score"),
            commit_id=data.get("commit_id"),
            note=data.get("note", ""),
            timestamp=datetime.fromisoformat(data["timestamp"]),
        )


# =============================================================================
# Loop state
# =============================================================================


class StopReason(str, Enum):
    TARGET_REACHED = "target_reached"
    MAX_GENERATIONS = "max_generations"
    PLATEAU = "plateau"
    CANCELLED = "cancelled"


@dataclass
class ConvergenceState:
    """Tracks progress across generations for the termination checks."""

    best_score: float = 0.0
    plateau_generations: int = 0
    """Consecutive generations whose gain stayed below the threshold."""

    average_improvement: float = 0.0
    has_converged: bool = False
    reason: StopReason | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "best_score": self.best_score,
            "plateau_generations": self.plateau_generations,
            "average_improvement": self.average_improvement,
            "has_converged": self.has_converged,
            "reason": self.reason.value if self.reason else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConvergenceState:
        reason = data.get("reason")
        return cls(
            best_score=float(data.get("best_score", 0.0)),
            plateau_generations=int(data.get("plateau_generations", 0)),
            average_improvement=float(data.get("average_improvement", 0.0)),
            has_converged=bool(data.get("has_converged", False)),
            reason=StopReason(reason) if reason else None,
        )


@dataclass
class EvolutionResult:
    """Summary of a complete evolution run."""

    start_score: float
    final_score: float
    best_score: float
    generations_run: int
    improvements_applied: int
    improvements_accepted: int
    improvements_rejected: int
    stop_reason: StopReason
    score_history: list[float] = field(default_factory=list)
    generation_results: list[GenerationResult] = field(default_factory=list)
    total_duration_seconds: float = 0.0

    @property
    def converged(self) -> bool:
        return self.stop_reason in (StopReason.TARGET_REACHED, StopReason.PLATEAU)

    def to_dict(self) -> dict[str, Any]:
        return {
            "start_score": self.start_score,
            "final_score": self.final_score,
            "best_score": self.best_score,
            "generations_run": self.generations_run,
            "improvements_applied": self.improvements_applied,
            "improvements_accepted": self.improvements_accepted,
            "improvements_rejected": self.improvements_rejected,
            "stop_reason": self.stop_reason.value,
            "converged": self.converged,
            "score_history": self.score_history,
            "total_duration_seconds": self.total_duration_seconds,
            "generation_results": [g.to_dict() for g in self.generation_results],
        }
