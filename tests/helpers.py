"""Shared test helpers and in-memory collaborators for evolver tests."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from evolver.core.config import EvolutionConfig
from evolver.core.errors import (
    ExternalUnavailableError,
    TrialFailedError,
    VersionControlError,
)
from evolver.core.models import ComparisonResult, Deviation, Run, ToolCall
from evolver.execution.telemetry import TelemetryRecorder, TelemetrySessionContext
from evolver.execution.trials import TrialOutcome, TrialRequest


def make_config(tmp_path: Path, **loop: Any) -> EvolutionConfig:
    """Config rooted in tmp_path with no pauses and short watchdogs."""
    return EvolutionConfig.model_validate(
        {
            "paths": {"base_dir": str(tmp_path / "evolution")},
            "timing": {
                "trial_timeout_seconds": 2.0,
                "reset_timeout_seconds": 1.0,
                "delay_between_trials_seconds": 0,
                "proposer_timeout_seconds": 2.0,
            },
            "loop": loop,
            "git": {"enabled": False},
            "telemetry": {"persist_sessions": False},
        }
    )


def make_run(
    agent_id: str,
    tools: Sequence[str] = (),
    score: float | None = 50.0,
    deviations: Sequence[tuple[str, float]] = (),
    args: dict[str, dict[str, Any]] | None = None,
    generation: int = 1,
) -> Run:
    """Build a Run from tool names and (field, signed deviation) pairs."""
    args = args or {}
    return Run(
        agent_id=agent_id,
        generation=generation,
        tool_calls=tuple(ToolCall(tool=t, args=args.get(t, {})) for t in tools),
        deviations=tuple(
            Deviation(field=f, expected=100, actual=100 + d, deviation=d) for f, d in deviations
        ),
        success=score is not None,
        score=score,
    )


class FakeExecutor:
    """Trial executor that feeds scripted tool calls into the session.

    Agents listed in ``failing`` raise TrialFailedError, agents in ``hanging``
    never finish (the watchdog must stop them).
    """

    def __init__(
        self,
        recorder: TelemetryRecorder,
        tools: Sequence[str] = ("create_document", "create_textframe", "apply_style"),
        failing: Sequence[str] = (),
        hanging: Sequence[str] = (),
    ) -> None:
        self.recorder = recorder
        self.tools = list(tools)
        self.failing = set(failing)
        self.hanging = set(hanging)
        self.requests: list[TrialRequest] = []
        self.events: list[str] | None = None

    async def run_trial(
        self, request: TrialRequest, ctx: TelemetrySessionContext
    ) -> TrialOutcome:
        self.requests.append(request)
        if self.events is not None:
            self.events.append(f"trial:{request.agent_id}")
        if request.agent_id in self.hanging:
            await asyncio.sleep(3600)
        if request.agent_id in self.failing:
            raise TrialFailedError(f"{request.agent_id} crashed")
        for tool in self.tools:
            self.recorder.capture(ctx, tool, {"page": 1}, duration_ms=5.0)
        return TrialOutcome(exit_code=0, duration_seconds=0.01, calls_ingested=len(self.tools))


class FakeBridge:
    """Reset and metrics collaborator scoring every trial from a score plan.

    ``scores`` maps a generation (inferred from the number of completed
    comparisons and ``agents_per_generation``) to the score every agent of
    that generation gets.
    """

    def __init__(
        self,
        scores: Sequence[float] = (50.0,),
        agents_per_generation: int = 3,
        deviations: Sequence[Deviation] = (),
        fail_resets: bool = False,
    ) -> None:
        self.scores = list(scores)
        self.agents_per_generation = agents_per_generation
        self.deviations = tuple(deviations)
        self.fail_resets = fail_resets
        self.reset_calls = 0
        self.comparisons = 0
        self.events: list[str] | None = None

    async def reset_external_state(self) -> None:
        self.reset_calls += 1
        if self.events is not None:
            self.events.append("reset")
        if self.fail_resets:
            raise ExternalUnavailableError("bridge down", targets=["http://fake"], attempts=3)

    async def extract_metrics(self) -> dict[str, Any]:
        return {"frames": 3}

    async def compare_to_reference(self, reference: dict[str, Any]) -> ComparisonResult:
        generation_index = self.comparisons // self.agents_per_generation
        self.comparisons += 1
        score = self.scores[min(generation_index, len(self.scores) - 1)]
        return ComparisonResult(score=score, match=score >= 85, deviations=self.deviations)


class FakeProposer:
    """Returns queued answers in order; the last answer repeats."""

    def __init__(self, *answers: str | dict[str, Any] | Exception) -> None:
        self.answers = list(answers)
        self.prompts: list[str] = []

    async def propose(self, prompt: str) -> str | dict[str, Any]:
        self.prompts.append(prompt)
        index = min(len(self.prompts) - 1, len(self.answers) - 1)
        answer = self.answers[index]
        if isinstance(answer, Exception):
            raise answer
        return answer


class MemoryDocStore:
    """Documentation store keeping fields in a dict."""

    def __init__(self, initial: dict[tuple[str, str], str] | None = None) -> None:
        self.fields: dict[tuple[str, str], str] = dict(initial or {})
        self.writes: list[tuple[str, str, str]] = []

    def read(self, tool: str, field: str) -> str:
        return self.fields.get((tool, field), "")

    def write(self, tool: str, field: str, text: str) -> None:
        self.writes.append((tool, field, text))
        if text:
            self.fields[(tool, field)] = text
        else:
            self.fields.pop((tool, field), None)


class RecordingVcs:
    """Version control collaborator that records commits instead of running git."""

    def __init__(self, fail: bool = False, fail_rollbacks: bool = False) -> None:
        self.commits: list[tuple[str, dict[str, str]]] = []
        self.reverts: list[str] = []
        self.fail = fail
        self.fail_rollbacks = fail_rollbacks

    async def commit(self, message: str, metadata: dict[str, str]) -> str:
        if self.fail or (self.fail_rollbacks and message.startswith("rollback")):
            raise VersionControlError("git commit failed")
        self.commits.append((message, dict(metadata)))
        return f"{len(self.commits):040x}"

    async def revert(self, commit_id: str) -> str:
        self.reverts.append(commit_id)
        return f"r{len(self.reverts):039x}"


def description_payload(
    tool: str = "create_textframe",
    proposed: str = "Create a text frame. Keep frames inside the page margins.",
) -> dict[str, Any]:
    return {
        "type": "description",
        "tool": tool,
        "proposed": proposed,
        "rationale": "Agents place frames outside the margins",
        "expected_impact": 0.6,
    }
