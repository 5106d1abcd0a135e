"""Structured logging for the evolution loop.

Wraps structlog with evolver-specific context (workflow, run_id, generation,
agent_id) so every event emitted while a generation is running can be
correlated. Console rendering for interactive use, JSON for files.

Example usage:
    from evolver.core.logging import GenerationContext, get_logger, with_context

    configure_logging(level="DEBUG", format="console")
    logger = get_logger("runner")

    ctx = GenerationContext(workflow="text-layout", generation=2)
    with with_context(ctx.with_agent("agent-1")):
        logger.info("trial_started")  # includes workflow, generation, agent_id
"""

from __future__ import annotations

import logging
import sys
import uuid
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Literal

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

SENSITIVE_PATTERNS = frozenset({
    "api_key",
    "apikey",
    "token",
    "secret",
    "password",
    "credential",
    "authorization",
})

REDACTED = "[REDACTED]"


@dataclass(frozen=True)
class GenerationContext:
    """Correlation identifiers attached to every log entry inside `with_context()`.

    Attributes:
        workflow: Name of the workflow being evolved.
        run_id: Unique id of one `evolver run` invocation.
        generation: Current generation number (1-based), None outside a generation.
        agent_id: Agent whose trial is running, None between trials.
    """

    workflow: str
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    generation: int | None = None
    agent_id: str | None = None

    def with_generation(self, generation: int) -> GenerationContext:
        return replace(self, generation=generation, agent_id=None)

    def with_agent(self, agent_id: str) -> GenerationContext:
        return replace(self, agent_id=agent_id)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"workflow": self.workflow, "run_id": self.run_id}
        if self.generation is not None:
            result["generation"] = self.generation
        if self.agent_id is not None:
            result["agent_id"] = self.agent_id
        return result


_current_context: ContextVar[GenerationContext | None] = ContextVar(
    "evolver_context", default=None
)


def get_current_context() -> GenerationContext | None:
    return _current_context.get()


@contextmanager
def with_context(ctx: GenerationContext) -> Iterator[GenerationContext]:
    """Bind a GenerationContext for the duration of a block."""
    token = _current_context.set(ctx)
    try:
        yield ctx
    finally:
        _current_context.reset(token)


def is_sensitive(key: str) -> bool:
    key_lower = key.lower()
    return any(pattern in key_lower for pattern in SENSITIVE_PATTERNS)


def redact(mapping: Mapping[str, Any]) -> dict[str, Any]:
    """Return a copy of ``mapping`` with sensitive values replaced."""
    return {k: REDACTED if is_sensitive(k) else v for k, v in mapping.items()}


def _sanitize_event_dict(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    sanitized: EventDict = {}
    for key, value in event_dict.items():
        if is_sensitive(key):
            sanitized[key] = REDACTED
        elif isinstance(value, dict):
            sanitized[key] = redact(value)
        else:
            sanitized[key] = value
    return sanitized


def _add_timestamp(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    event_dict["timestamp"] = datetime.now(UTC).isoformat()
    return event_dict


def _add_context(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Add the active GenerationContext; explicit bindings take precedence."""
    ctx = get_current_context()
    if ctx is not None:
        for key, value in ctx.to_dict().items():
            event_dict.setdefault(key, value)
    return event_dict


class EvolverLogger:
    """Component logger around structlog.

    The structlog logger is fetched lazily on every call so module-level
    loggers pick up a configuration applied later by `configure_logging()`.
    """

    def __init__(self, component: str, **initial_context: Any) -> None:
        self._component = component
        self._context: dict[str, Any] = {"component": component, **initial_context}

    def _get_logger(self) -> structlog.stdlib.BoundLogger:
        logger: structlog.stdlib.BoundLogger = structlog.get_logger().bind(**self._context)
        return logger

    def bind(self, **context: Any) -> EvolverLogger:
        """Create a new logger with additional bound context."""
        new_logger = EvolverLogger.__new__(EvolverLogger)
        new_logger._component = self._component
        new_logger._context = {**self._context, **context}
        return new_logger

    def debug(self, event: str, **kw: Any) -> None:
        self._get_logger().debug(event, **kw)

    def info(self, event: str, **kw: Any) -> None:
        self._get_logger().info(event, **kw)

    def warning(self, event: str, **kw: Any) -> None:
        self._get_logger().warning(event, **kw)

    def error(self, event: str, **kw: Any) -> None:
        self._get_logger().error(event, **kw)

    def exception(self, event: str, **kw: Any) -> None:
        """Log an exception with traceback; call from an exception handler."""
        self._get_logger().exception(event, **kw)


def _build_processors(renderer: Processor, include_timestamps: bool) -> list[Processor]:
    processors: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        _sanitize_event_dict,
        _add_context,
    ]
    if include_timestamps:
        processors.append(_add_timestamp)
    processors.extend([
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        renderer,
    ])
    return processors


def configure_logging(
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO",
    format: Literal["json", "console"] = "console",  # noqa: A002
    file_path: Path | None = None,
    max_file_size_mb: int = 20,
    backup_count: int = 3,
    include_timestamps: bool = True,
) -> None:
    """Configure structured logging. Call once at startup.

    Args:
        level: Minimum log level to capture.
        format: "console" for human-readable stderr output, "json" for
            structured records.
        file_path: Optional rotating log file. Records written there use the
            selected renderer.
        max_file_size_mb: Size before the log file rotates.
        backup_count: Number of rotated files kept.
        include_timestamps: Whether to add ISO8601 UTC timestamps.
    """
    log_level = getattr(logging, level)

    handlers: list[logging.Handler] = []
    if format == "console":
        handlers.append(logging.StreamHandler(sys.stderr))
    elif file_path is None:
        handlers.append(logging.StreamHandler(sys.stdout))

    if file_path is not None:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                file_path,
                maxBytes=max_file_size_mb * 1024 * 1024,
                backupCount=backup_count,
                encoding="utf-8",
            )
        )

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in handlers:
        handler.setLevel(log_level)
        root_logger.addHandler(handler)

    renderer: Processor
    if format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())

    structlog.configure(
        processors=_build_processors(renderer, include_timestamps),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(component: str, **initial_context: Any) -> EvolverLogger:
    """Get a logger bound to a component name (e.g., "runner", "detector")."""
    return EvolverLogger(component, **initial_context)


__all__ = [
    "EvolverLogger",
    "GenerationContext",
    "SENSITIVE_PATTERNS",
    "configure_logging",
    "get_current_context",
    "get_logger",
    "is_sensitive",
    "redact",
    "with_context",
]
