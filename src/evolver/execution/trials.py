"""Trial executors: run one agent against the shared application session.

The orchestrator owns timing (watchdog) and telemetry sessions; an executor
only launches the agent and feeds whatever telemetry the agent produced into
the session context it was given.

Security Note: CommandTrialExecutor uses asyncio.create_subprocess_exec(),
so the agent command is never interpolated by a shell.
"""

from __future__ import annotations

import asyncio
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from evolver.core.errors import TrialFailedError
from evolver.core.logging import get_logger
from evolver.execution.telemetry import (
    TelemetryRecorder,
    TelemetrySessionContext,
    load_calls_file,
)

_logger = get_logger("trials")

ENV_AGENT_ID = "EVOLVER_AGENT_ID"
ENV_GENERATION = "EVOLVER_GENERATION"
ENV_TELEMETRY_FILE = "EVOLVER_TELEMETRY_FILE"
ENV_WORKFLOW = "EVOLVER_WORKFLOW"

STDERR_TAIL = 500
TERMINATE_GRACE_SECONDS = 5.0


@dataclass(frozen=True)
class TrialRequest:
    agent_id: str
    generation: int
    workflow: str
    prompt: str
    telemetry_file: Path | None = None
    """Where the agent should dump its tool calls, if it records them itself."""


@dataclass(frozen=True)
class TrialOutcome:
    exit_code: int
    duration_seconds: float
    stdout: str = ""
    stderr: str = ""
    calls_ingested: int = 0


class TrialExecutor(Protocol):
    """Runs one agent trial to completion."""

    async def run_trial(
        self, request: TrialRequest, ctx: TelemetrySessionContext
    ) -> TrialOutcome:
        ...


class CommandTrialExecutor:
    """Runs an external agent command as one trial.

    The agent receives the task prompt on stdin and its identity through
    EVOLVER_* environment variables. If it writes its tool calls to
    EVOLVER_TELEMETRY_FILE, they are ingested into the trial's session.
    """

    def __init__(
        self,
        command: list[str],
        recorder: TelemetryRecorder,
        env: dict[str, str] | None = None,
        working_directory: Path | None = None,
    ) -> None:
        if not command:
            raise ValueError("CommandTrialExecutor needs a command")
        self.command = command
        self.recorder = recorder
        self.env = env or {}
        self.working_directory = working_directory

    def _environment(self, request: TrialRequest) -> dict[str, str]:
        env = {**os.environ, **self.env}
        env[ENV_AGENT_ID] = request.agent_id
        env[ENV_GENERATION] = str(request.generation)
        env[ENV_WORKFLOW] = request.workflow
        if request.telemetry_file is not None:
            env[ENV_TELEMETRY_FILE] = str(request.telemetry_file)
        return env

    async def run_trial(
        self, request: TrialRequest, ctx: TelemetrySessionContext
    ) -> TrialOutcome:
        """Run the agent command and ingest its telemetry.

        Raises:
            TrialFailedError: If the command cannot start or exits non-zero.
        """
        if request.telemetry_file is not None:
            request.telemetry_file.parent.mkdir(parents=True, exist_ok=True)
            request.telemetry_file.unlink(missing_ok=True)

        _logger.debug(
            "starting_trial_command",
            command=self.command[0],
            args_count=len(self.command) - 1,
            prompt_length=len(request.prompt),
        )
        start = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.working_directory,
                env=self._environment(request),
            )
        except OSError as e:
            raise TrialFailedError(f"Cannot start agent command {self.command[0]}: {e}") from e

        try:
            stdout_bytes, stderr_bytes = await process.communicate(request.prompt.encode("utf-8"))
        except asyncio.CancelledError:
            # Watchdog cancellation; stop the agent process too.
            await self._stop(process)
            raise

        duration = time.monotonic() - start
        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")
        exit_code = process.returncode if process.returncode is not None else -1

        ingested = 0
        if request.telemetry_file is not None and request.telemetry_file.exists():
            ingested = self.recorder.ingest(ctx, load_calls_file(request.telemetry_file))

        if exit_code != 0:
            _logger.warning(
                "trial_command_failed",
                exit_code=exit_code,
                stderr=stderr[-STDERR_TAIL:],
            )
            raise TrialFailedError(
                f"Agent exited with code {exit_code}: {stderr[-STDERR_TAIL:].strip()}"
            )

        return TrialOutcome(
            exit_code=exit_code,
            duration_seconds=duration,
            stdout=stdout,
            stderr=stderr,
            calls_ingested=ingested,
        )

    @staticmethod
    async def _stop(process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        process.terminate()
        try:
            await asyncio.wait_for(process.wait(), timeout=TERMINATE_GRACE_SECONDS)
        except TimeoutError:
            process.kill()
            await process.wait()
