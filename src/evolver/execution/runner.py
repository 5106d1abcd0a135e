"""Generation runner and evolution loop.

GenerationRunner executes one generation: N agent trials, strictly one at a
time against the shared application session, with the external state reset
between consecutive trials. EvolutionLoop drives generations, validating the
previous improvement, checking convergence and applying at most one new
improvement per generation.

Everything runs in a single asyncio task. Each suspension point (trial,
reset, metrics, proposer, git) is awaited before the next step starts.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from pathlib import Path

from evolver.core.config import EvolutionConfig
from evolver.core.errors import (
    DuplicateImprovementError,
    EvolverError,
    ExternalUnavailableError,
    InvalidPhaseTransitionError,
    ProposerMalformedError,
    TrialTimeoutError,
    VersionControlError,
)
from evolver.core.logging import (
    GenerationContext,
    get_current_context,
    get_logger,
    with_context,
)
from evolver.core.models import (
    ConvergenceState,
    EvolutionResult,
    GenerationPhase,
    GenerationResult,
    Improvement,
    ImprovementState,
    Run,
    StopReason,
)
from evolver.execution.bridge import MetricsCollaborator, ResetCollaborator
from evolver.execution.checkpoint import CheckpointStore, LoopCheckpoint
from evolver.execution.telemetry import (
    TelemetryRecorder,
    TelemetrySessionContext,
    TelemetryStore,
)
from evolver.execution.trials import TrialExecutor, TrialRequest
from evolver.improvement.manager import ImprovementManager
from evolver.improvement.proposer import (
    Proposer,
    build_proposer_prompt,
    parse_improvement_payload,
)
from evolver.learning import statistics
from evolver.learning.patterns import PatternDetector, validate_patterns
from evolver.learning.presenter import build_report, improvement_context, render_report
from evolver.workflows import Workflow

_logger = get_logger("runner")

_PHASE_TRANSITIONS: dict[GenerationPhase, frozenset[GenerationPhase]] = {
    GenerationPhase.IDLE: frozenset({GenerationPhase.PREPARING}),
    GenerationPhase.PREPARING: frozenset({GenerationPhase.EXECUTING}),
    GenerationPhase.EXECUTING: frozenset({GenerationPhase.COLLECTING}),
    GenerationPhase.COLLECTING: frozenset({GenerationPhase.ANALYZED}),
    GenerationPhase.ANALYZED: frozenset({GenerationPhase.CLOSED}),
    GenerationPhase.CLOSED: frozenset(),
}


class GenerationRunner:
    """Runs the trials of one generation and analyzes them."""

    def __init__(
        self,
        workflow: Workflow,
        executor: TrialExecutor,
        reset: ResetCollaborator,
        metrics: MetricsCollaborator,
        config: EvolutionConfig,
        recorder: TelemetryRecorder | None = None,
        telemetry_store: TelemetryStore | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the runner.

        Args:
            workflow: Task every agent of the generation performs.
            executor: Launches one agent trial.
            reset: Restores the shared application state between trials.
            metrics: Extracts document metrics and scores them.
            config: Loop, timing and pattern settings.
            recorder: Telemetry recorder. Defaults to a fresh one.
            telemetry_store: Where finished sessions are persisted, if anywhere.
            sleep: Awaitable sleep used for the pause between trials.
        """
        self.workflow = workflow
        self.executor = executor
        self.reset = reset
        self.metrics = metrics
        self.config = config
        self.recorder = recorder or TelemetryRecorder()
        self.telemetry_store = telemetry_store
        self._sleep = sleep
        self._phase = GenerationPhase.IDLE

    @property
    def phase(self) -> GenerationPhase:
        return self._phase

    def _transition(self, to: GenerationPhase) -> None:
        if to not in _PHASE_TRANSITIONS[self._phase]:
            raise InvalidPhaseTransitionError(
                f"Cannot move generation from {self._phase.value} to {to.value}"
            )
        _logger.debug("phase_changed", from_phase=self._phase.value, to_phase=to.value)
        self._phase = to

    async def run_generation(self, generation: int) -> GenerationResult:
        """Run all trials of ``generation`` and detect patterns across them.

        Failed trials become failed Runs; they never abort the generation.

        Raises:
            InvalidPhaseTransitionError: If a generation is already in progress.
            PatternInvariantError: If the detector breaks its output bounds.
        """
        if self._phase not in (GenerationPhase.IDLE, GenerationPhase.CLOSED):
            raise InvalidPhaseTransitionError(
                f"Generation already in progress (phase {self._phase.value})"
            )
        self._phase = GenerationPhase.IDLE
        start = time.monotonic()

        self._transition(GenerationPhase.PREPARING)
        agent_count = self.config.loop.agent_count
        _logger.info(
            "generation_started",
            generation=generation,
            agent_count=agent_count,
        )

        self._transition(GenerationPhase.EXECUTING)
        runs: list[Run] = []
        for index in range(1, agent_count + 1):
            agent_id = f"agent-{index}"
            if index > 1:
                reset_error = await self._reset_between_trials()
                if reset_error is not None:
                    runs.append(Run.failed(agent_id, generation, reset_error))
                    continue
            runs.append(await self._run_trial(agent_id, generation))

        self._transition(GenerationPhase.COLLECTING)
        scores = [r.score for r in runs if r.score is not None]
        patterns = PatternDetector(runs, self.config.patterns).detect_all()
        validate_patterns(patterns, len(runs))

        self._transition(GenerationPhase.ANALYZED)
        result = GenerationResult(
            generation=generation,
            runs=runs,
            score=statistics.mean(scores),
            patterns=patterns,
            best_score=max(scores, default=0.0),
            worst_score=min(scores, default=0.0),
            phase=GenerationPhase.ANALYZED,
            duration_seconds=time.monotonic() - start,
        )
        _logger.info(
            "generation_analyzed",
            generation=generation,
            score=round(result.score, 2),
            scored_runs=len(scores),
            failed_runs=len(result.failed_runs),
            patterns=len(patterns),
        )

        self._transition(GenerationPhase.CLOSED)
        result.phase = GenerationPhase.CLOSED
        return result

    async def _reset_between_trials(self) -> str | None:
        """Pause, then reset the shared state. Returns an error message on failure."""
        delay = self.config.timing.delay_between_trials_seconds
        if delay > 0:
            await self._sleep(delay)

        timeout = self.config.timing.reset_timeout_seconds
        try:
            await asyncio.wait_for(self.reset.reset_external_state(), timeout=timeout)
        except TimeoutError:
            _logger.warning("reset_timed_out", timeout_seconds=timeout)
            return f"State reset timed out after {timeout:.0f}s"
        except EvolverError as e:
            _logger.warning("reset_failed", error=str(e))
            return f"State reset failed: {e}"
        return None

    def _telemetry_file(self, session_id: str) -> Path | None:
        telemetry_dir = self.config.paths.telemetry_dir
        if not self.config.telemetry.enabled or telemetry_dir is None:
            return None
        return telemetry_dir / "calls" / f"{session_id}.json"

    async def _run_with_watchdog(
        self, request: TrialRequest, ctx: TelemetrySessionContext, timeout: float
    ) -> None:
        try:
            await asyncio.wait_for(self.executor.run_trial(request, ctx), timeout=timeout)
        except TimeoutError as e:
            raise TrialTimeoutError(f"Trial timed out after {timeout:.0f}s") from e

    async def _run_trial(self, agent_id: str, generation: int) -> Run:
        ctx = TelemetrySessionContext()
        session_id = self.recorder.start_session(ctx, agent_id, generation)
        current = get_current_context() or GenerationContext(
            workflow=self.workflow.name, generation=generation
        )

        with with_context(current.with_agent(agent_id)):
            request = TrialRequest(
                agent_id=agent_id,
                generation=generation,
                workflow=self.workflow.name,
                prompt=self.workflow.build_prompt(session_id),
                telemetry_file=self._telemetry_file(session_id),
            )
            timeout = self.config.timing.trial_timeout_seconds
            start = time.monotonic()
            error: str | None = None

            _logger.info("trial_started", session_id=session_id)
            try:
                await self._run_with_watchdog(request, ctx, timeout)
            except EvolverError as e:
                error = str(e)
            except Exception as e:
                _logger.exception("trial_crashed", error=str(e))
                error = f"Trial crashed: {e}"

            duration = time.monotonic() - start
            session = self.recorder.end_session(ctx)

            if error is not None:
                _logger.warning("trial_failed", error=error, duration_seconds=round(duration, 2))
                return Run.failed(agent_id, generation, error, duration, session_id)
            if session is None:
                _logger.warning("trial_without_telemetry")
                return Run.failed(
                    agent_id, generation, "No telemetry session captured", duration, session_id
                )

            if self.telemetry_store is not None and self.config.telemetry.persist_sessions:
                try:
                    self.telemetry_store.save(session)
                except OSError as e:
                    _logger.error("session_persist_failed", session_id=session.id, error=str(e))

            try:
                metrics = await self.metrics.extract_metrics()
                comparison = await self.metrics.compare_to_reference(
                    self.workflow.reference_metrics
                )
            except EvolverError as e:
                _logger.warning("comparison_failed", error=str(e))
                return Run(
                    agent_id=agent_id,
                    generation=generation,
                    tool_calls=session.calls,
                    success=False,
                    error=f"Comparison failed: {e}",
                    duration_seconds=duration,
                    session_id=session.id,
                )

            _logger.info(
                "trial_completed",
                score=round(comparison.score, 2),
                tool_calls=len(session.calls),
                deviations=len(comparison.deviations),
                duration_seconds=round(duration, 2),
            )
            return Run(
                agent_id=agent_id,
                generation=generation,
                tool_calls=session.calls,
                deviations=comparison.deviations,
                success=True,
                score=comparison.score,
                duration_seconds=duration,
                session_id=session.id,
                metrics=metrics,
            )


class EvolutionLoop:
    """Drives generations until convergence, the generation cap or a stop request."""

    def __init__(
        self,
        workflow: Workflow,
        runner: GenerationRunner,
        manager: ImprovementManager,
        proposer: Proposer,
        config: EvolutionConfig,
        checkpoints: CheckpointStore | None = None,
        history_path: Path | None = None,
    ) -> None:
        self.workflow = workflow
        self.runner = runner
        self.manager = manager
        self.proposer = proposer
        self.config = config
        self.checkpoints = checkpoints
        self.history_path = history_path
        self.convergence = ConvergenceState()
        self.score_history: list[float] = []
        self.generation_results: list[GenerationResult] = []
        self._stop_requested = False

    def request_stop(self) -> None:
        """Finish the current generation, then stop with ``cancelled``."""
        self._stop_requested = True

    def update_convergence(self, generation: int, score: float) -> StopReason | None:
        """Record ``score`` and return the reason to stop, if any."""
        loop = self.config.loop
        previous = self.score_history[-1] if self.score_history else None
        self.score_history.append(score)

        state = self.convergence
        state.best_score = max(state.best_score, score)
        if previous is not None:
            if score - previous < loop.improvement_threshold:
                state.plateau_generations += 1
            else:
                state.plateau_generations = 0
        if len(self.score_history) > 1:
            state.average_improvement = (self.score_history[-1] - self.score_history[0]) / (
                len(self.score_history) - 1
            )

        reason: StopReason | None = None
        if score >= loop.target_score:
            reason = StopReason.TARGET_REACHED
        elif state.plateau_generations >= loop.plateau_generations:
            reason = StopReason.PLATEAU
        elif generation >= loop.max_generations:
            reason = StopReason.MAX_GENERATIONS
        elif self._stop_requested:
            reason = StopReason.CANCELLED

        if reason is not None:
            state.has_converged = reason in (StopReason.TARGET_REACHED, StopReason.PLATEAU)
            state.reason = reason
        return reason

    def _resume_point(self) -> int:
        if self.checkpoints is None:
            return 1
        checkpoint = self.checkpoints.latest()
        if checkpoint is None or checkpoint.workflow != self.workflow.name:
            return 1
        self.score_history = list(checkpoint.score_history)
        self.convergence = checkpoint.convergence
        _logger.info(
            "resuming_from_checkpoint",
            generation=checkpoint.generation,
            best_score=checkpoint.convergence.best_score,
        )
        return checkpoint.generation + 1

    async def _propose(self, result: GenerationResult) -> Improvement | None:
        report = build_report(
            result.runs,
            result.patterns,
            task=self.workflow.task,
            reference=self.workflow.reference_image,
        )
        context = improvement_context(report)
        if self.workflow.tools:
            context += f"\nOnly edit the documentation of: {', '.join(self.workflow.tools)}\n"
        prompt = build_proposer_prompt(render_report(report), context)
        timeout = self.config.timing.proposer_timeout_seconds
        try:
            raw = await asyncio.wait_for(self.proposer.propose(prompt), timeout=timeout)
            payload = parse_improvement_payload(raw)
            return self.manager.create(
                payload, result.generation, allowed_tools=self.workflow.tools
            )
        except ProposerMalformedError as e:
            _logger.warning("proposal_malformed", error=str(e), issues=e.issues)
        except DuplicateImprovementError as e:
            _logger.info("proposal_duplicate", error=str(e))
        except ExternalUnavailableError as e:
            _logger.warning("proposer_unavailable", error=str(e))
        except TimeoutError:
            _logger.warning("proposer_timed_out", timeout_seconds=timeout)
        return None

    async def _step(self, generation: int) -> StopReason | None:
        result = await self.runner.run_generation(generation)
        self.generation_results.append(result)

        if self.manager.pending is not None:
            await self.manager.validate(result.score)

        reason = self.update_convergence(generation, result.score)
        if reason is None and result.patterns:
            improvement = await self._propose(result)
            if improvement is not None:
                try:
                    applied = await self.manager.apply(improvement, result.score)
                    if applied.state is ImprovementState.APPLIED:
                        result.improvement_id = applied.id
                except VersionControlError as e:
                    _logger.error("improvement_apply_failed", error=str(e))
        elif reason is None:
            _logger.info("no_patterns_detected", generation=generation)

        self._save_state(generation)
        return reason

    def _save_state(self, generation: int) -> None:
        if self.checkpoints is not None:
            pending = self.manager.pending
            self.checkpoints.save(
                LoopCheckpoint(
                    workflow=self.workflow.name,
                    generation=generation,
                    score_history=list(self.score_history),
                    convergence=self.convergence,
                    pending_improvement_id=pending.id if pending else None,
                )
            )
        if self.history_path is not None:
            self.manager.save_history(self.history_path)

    async def run(self, resume: bool = False) -> EvolutionResult:
        """Run generations until a stop condition holds.

        Args:
            resume: Continue after the latest checkpoint of this workflow.

        Returns:
            Summary of the run. Cancellation ends the run normally.
        """
        start = time.monotonic()
        generation = self._resume_point() if resume else 1
        reason: StopReason | None = self.convergence.reason if resume else None

        context = GenerationContext(workflow=self.workflow.name)
        _logger.info(
            "evolution_started",
            workflow=self.workflow.name,
            start_generation=generation,
            max_generations=self.config.loop.max_generations,
            target_score=self.config.loop.target_score,
        )

        while reason is None:
            if generation > self.config.loop.max_generations:
                reason = StopReason.MAX_GENERATIONS
                break
            try:
                with with_context(context.with_generation(generation)):
                    reason = await self._step(generation)
            except (asyncio.CancelledError, KeyboardInterrupt):
                _logger.warning("evolution_cancelled", generation=generation)
                reason = StopReason.CANCELLED
                self.convergence.reason = reason
                break
            generation += 1

        result = self._result(reason, time.monotonic() - start)
        _logger.info(
            "evolution_finished",
            workflow=self.workflow.name,
            stop_reason=result.stop_reason.value,
            generations=result.generations_run,
            start_score=round(result.start_score, 2),
            final_score=round(result.final_score, 2),
        )
        if self.checkpoints is not None:
            self.checkpoints.save_report(
                self.workflow.name, result, self.manager.summary_markdown()
            )
        return result

    def _result(self, reason: StopReason, duration: float) -> EvolutionResult:
        history = self.manager.history()
        return EvolutionResult(
            start_score=self.score_history[0] if self.score_history else 0.0,
            final_score=self.score_history[-1] if self.score_history else 0.0,
            best_score=max(self.score_history, default=0.0),
            generations_run=len(self.score_history),
            improvements_applied=sum(1 for i in history if i.commit_id is not None),
            improvements_accepted=len(self.manager.by_state(ImprovementState.ACCEPTED)),
            improvements_rejected=len(self.manager.by_state(ImprovementState.REJECTED)),
            stop_reason=reason,
            score_history=list(self.score_history),
            generation_results=list(self.generation_results),
            total_duration_seconds=duration,
        )
