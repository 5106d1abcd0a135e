"""Telemetry capture for agent trials.

A trial's tool calls are collected into a TelemetrySessionContext that the
orchestrator creates and passes explicitly to whoever records calls (the
HTTP bridge, or the trial executor when it ingests a telemetry file written
by an external agent). There is no process-wide session: two contexts never
share state.

Example:
    recorder = TelemetryRecorder()
    ctx = TelemetrySessionContext()
    recorder.start_session(ctx, "agent-1", generation=1)
    recorder.capture(ctx, "create_textframe", {"x": 10}, duration_ms=12.0)
    session = recorder.end_session(ctx)
"""

from __future__ import annotations

import json
import time
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from evolver.core.errors import TrialFailedError
from evolver.core.files import atomic_write_json
from evolver.core.logging import get_logger, redact
from evolver.core.models import TelemetrySession, ToolCall

_logger = get_logger("telemetry")


@dataclass
class TelemetrySessionContext:
    """Mutable per-trial capture state, owned by the orchestrator."""

    active: bool = False
    session_id: str | None = None
    agent_id: str | None = None
    generation: int | None = None
    started_at: float | None = None
    calls: list[ToolCall] = field(default_factory=list)


@dataclass(frozen=True)
class ErrorPattern:
    tool: str
    error: str
    count: int


@dataclass(frozen=True)
class TelemetrySummary:
    total_calls: int
    tool_usage: dict[str, int]
    error_rate: float
    average_execution_time: float
    error_patterns: list[ErrorPattern]


class TelemetryRecorder:
    """Starts, feeds and closes telemetry sessions on explicit contexts."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock

    def start_session(
        self, ctx: TelemetrySessionContext, agent_id: str, generation: int
    ) -> str:
        """Open a session on ``ctx``; an already active session is ended first."""
        if ctx.active:
            _logger.warning(
                "session_already_active",
                previous_session_id=ctx.session_id,
                agent_id=agent_id,
            )
            self.end_session(ctx)

        now = self._clock()
        session_id = f"{int(now * 1000)}-{agent_id}-gen{generation}"
        ctx.active = True
        ctx.session_id = session_id
        ctx.agent_id = agent_id
        ctx.generation = generation
        ctx.started_at = now
        ctx.calls = []
        _logger.debug("session_started", session_id=session_id)
        return session_id

    def capture(
        self,
        ctx: TelemetrySessionContext,
        tool: str,
        args: dict[str, Any],
        duration_ms: float,
        success: bool = True,
        error: str | None = None,
    ) -> ToolCall | None:
        """Record one tool call. Calls outside an active session are dropped."""
        if not ctx.active:
            _logger.debug("capture_without_session", tool=tool)
            return None

        call = ToolCall(
            tool=tool,
            args=redact(args),
            duration_ms=duration_ms,
            result="success" if success else "error",
            error_message=error,
            timestamp=self._clock(),
        )
        ctx.calls.append(call)
        return call

    def ingest(self, ctx: TelemetrySessionContext, calls: Iterable[ToolCall]) -> int:
        """Append calls recorded elsewhere (e.g., by an agent process)."""
        if not ctx.active:
            return 0
        added = 0
        for call in calls:
            ctx.calls.append(
                ToolCall(
                    tool=call.tool,
                    args=redact(call.args),
                    duration_ms=call.duration_ms,
                    result=call.result,
                    error_message=call.error_message,
                    timestamp=call.timestamp,
                )
            )
            added += 1
        return added

    def end_session(self, ctx: TelemetrySessionContext) -> TelemetrySession | None:
        """Close the active session and return it, or None if none is active."""
        if not ctx.active or ctx.session_id is None:
            return None

        session = TelemetrySession(
            id=ctx.session_id,
            agent_id=ctx.agent_id or "",
            generation=ctx.generation or 0,
            started_at=ctx.started_at or self._clock(),
            ended_at=self._clock(),
            calls=tuple(ctx.calls),
        )
        ctx.active = False
        ctx.session_id = None
        ctx.calls = []
        _logger.debug("session_ended", session_id=session.id, calls=len(session.calls))
        return session

    @staticmethod
    def summarize(session: TelemetrySession) -> TelemetrySummary:
        calls = session.calls
        usage = Counter(call.tool for call in calls)
        errors = [call for call in calls if not call.succeeded]
        error_counts = Counter(
            (call.tool, call.error_message) for call in errors if call.error_message
        )
        total = len(calls)
        return TelemetrySummary(
            total_calls=total,
            tool_usage=dict(usage),
            error_rate=len(errors) / total if total else 0.0,
            average_execution_time=(
                sum(call.duration_ms for call in calls) / total if total else 0.0
            ),
            error_patterns=[
                ErrorPattern(tool=tool, error=error, count=count)
                for (tool, error), count in error_counts.most_common()
            ],
        )


def load_calls_file(path: Path) -> list[ToolCall]:
    """Parse a telemetry dump written by an agent process.

    Accepts either a JSON list of calls or an object with a ``calls`` list.

    Raises:
        TrialFailedError: If the file is not valid telemetry JSON.
    """
    try:
        data = json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise TrialFailedError(f"Unreadable telemetry file {path}: {e}") from e

    raw_calls = data.get("calls") if isinstance(data, dict) else data
    if not isinstance(raw_calls, list):
        raise TrialFailedError(f"Telemetry file {path} has no call list")

    try:
        return [ToolCall.from_dict(item) for item in raw_calls]
    except (KeyError, TypeError, ValueError) as e:
        raise TrialFailedError(f"Malformed tool call in {path}: {e}") from e


class TelemetryStore:
    """Persists telemetry sessions as ``session_<id>.json`` files."""

    def __init__(self, directory: Path, max_sessions: int = 100) -> None:
        self.directory = directory
        self.max_sessions = max_sessions

    def _path(self, session_id: str) -> Path:
        return self.directory / f"session_{session_id}.json"

    def save(self, session: TelemetrySession) -> Path:
        path = self._path(session.id)
        atomic_write_json(path, session.to_dict())
        self.prune()
        return path

    def _read(self, path: Path) -> TelemetrySession | None:
        try:
            with open(path) as f:
                return TelemetrySession.from_dict(json.load(f))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            _logger.warning("session_file_corrupt", path=str(path), error=str(e))
            return None

    def load(self, session_id: str) -> TelemetrySession | None:
        """A saved session; None when missing or unreadable."""
        path = self._path(session_id)
        if not path.exists():
            return None
        return self._read(path)

    def list_sessions(self) -> list[Path]:
        """Session files, newest first."""
        if not self.directory.exists():
            return []
        files = list(self.directory.glob("session_*.json"))
        return sorted(files, key=lambda p: p.stat().st_mtime, reverse=True)

    def load_all(self) -> list[TelemetrySession]:
        """Every readable session, newest first. Corrupt files are skipped."""
        sessions = []
        for path in self.list_sessions():
            session = self._read(path)
            if session is not None:
                sessions.append(session)
        return sessions

    def prune(self) -> int:
        """Delete the oldest session files beyond max_sessions."""
        stale = self.list_sessions()[self.max_sessions :]
        for path in stale:
            path.unlink(missing_ok=True)
        if stale:
            _logger.debug("sessions_pruned", count=len(stale))
        return len(stale)
