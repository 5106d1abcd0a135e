"""Execution layer: trials, telemetry, the scripting bridge and the loop."""

from evolver.execution.bridge import (
    HttpBridge,
    MetricsCollaborator,
    ResetCollaborator,
    ToolInvoker,
    ToolResult,
    parse_comparison,
)
from evolver.execution.checkpoint import CheckpointStore, LoopCheckpoint
from evolver.execution.runner import EvolutionLoop, GenerationRunner
from evolver.execution.telemetry import (
    TelemetryRecorder,
    TelemetrySessionContext,
    TelemetryStore,
    TelemetrySummary,
)
from evolver.execution.trials import (
    CommandTrialExecutor,
    TrialExecutor,
    TrialOutcome,
    TrialRequest,
)

__all__ = [
    "CheckpointStore",
    "CommandTrialExecutor",
    "EvolutionLoop",
    "GenerationRunner",
    "HttpBridge",
    "LoopCheckpoint",
    "MetricsCollaborator",
    "ResetCollaborator",
    "TelemetryRecorder",
    "TelemetrySessionContext",
    "TelemetryStore",
    "TelemetrySummary",
    "ToolInvoker",
    "ToolResult",
    "TrialExecutor",
    "TrialOutcome",
    "TrialRequest",
    "parse_comparison",
]
