"""Shared utilities for evolver CLI commands.

Holds the global output/logging state set by the root callback and the
factories that turn an EvolutionConfig into a wired EvolutionLoop.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Literal

import typer
from rich.console import Console

from evolver.core.config import EvolutionConfig, load_config
from evolver.core.errors import ConfigurationError
from evolver.core.logging import configure_logging, get_logger
from evolver.core.models import EvolutionResult
from evolver.execution.bridge import HttpBridge
from evolver.execution.checkpoint import CheckpointStore
from evolver.execution.runner import EvolutionLoop, GenerationRunner
from evolver.execution.telemetry import TelemetryRecorder, TelemetryStore
from evolver.execution.trials import CommandTrialExecutor
from evolver.improvement.docstore import YamlDocumentationStore
from evolver.improvement.manager import ImprovementManager
from evolver.improvement.proposer import AnthropicProposer
from evolver.improvement.regression import RegressionSuite
from evolver.improvement.vcs import GitVersionControl, LocalVersionControl, VersionControl
from evolver.workflows import Workflow, WorkflowCatalog

_logger = get_logger("cli")


# =============================================================================
# Output level management
# =============================================================================


class OutputLevel(str, Enum):
    QUIET = "quiet"
    NORMAL = "normal"
    VERBOSE = "verbose"


_output_level: OutputLevel = OutputLevel.NORMAL


def set_output_level(level: OutputLevel) -> None:
    global _output_level
    _output_level = level


def is_verbose() -> bool:
    return _output_level == OutputLevel.VERBOSE


def is_quiet() -> bool:
    return _output_level == OutputLevel.QUIET


# =============================================================================
# Logging configuration
# =============================================================================


@dataclass
class CliLoggingConfig:
    """Logging options collected from the root callback."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "WARNING"
    file: Path | None = None
    format: Literal["json", "console"] = "console"
    configured: bool = False
    explicit: bool = False
    """True once any logging option was given on the command line."""


_log_config = CliLoggingConfig()


def set_log_level(level: str) -> None:
    _log_config.explicit = True
    _log_config.level = level.upper()  # type: ignore[assignment]


def set_log_file(path: Path | None) -> None:
    _log_config.explicit = True
    _log_config.file = path


def set_log_format(fmt: str) -> None:
    _log_config.explicit = True
    _log_config.format = fmt  # type: ignore[assignment]


def configure_global_logging(console: Console) -> None:
    """Configure structlog once per process from the collected options.

    Raises:
        typer.Exit: If logging configuration fails.
    """
    if _log_config.configured:
        return
    try:
        configure_logging(
            level=_log_config.level,
            format=_log_config.format,
            file_path=_log_config.file,
        )
        _log_config.configured = True
    except ValueError as e:
        console.print(f"[red]Logging configuration error:[/red] {e}")
        raise typer.Exit(1) from None


def reset_logging_state() -> None:
    """Allow logging to be reconfigured (tests)."""
    _log_config.configured = False
    _log_config.explicit = False


# =============================================================================
# Config and component factories
# =============================================================================


def load_config_or_exit(path: Path | None, console: Console) -> EvolutionConfig:
    """Load configuration; logging follows its ``logging`` section unless
    logging options were given on the command line.

    Raises:
        typer.Exit: On configuration errors.
    """
    try:
        config = load_config(path)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error [{e.code}]:[/red] {e}")
        raise typer.Exit(1) from None

    if not _log_config.explicit:
        configure_logging(
            level=config.logging.level,
            format=config.logging.format,
            file_path=config.logging.file_path,
        )
    return config


def load_catalog(config: EvolutionConfig) -> WorkflowCatalog:
    """The configured workflow catalog, or the built-in one."""
    if config.trial.workflows_file is not None:
        return WorkflowCatalog.from_yaml(config.trial.workflows_file)
    return WorkflowCatalog.builtin()


def docs_directory(config: EvolutionConfig) -> Path:
    docs_dir = config.paths.docs_dir
    if docs_dir.is_absolute():
        return docs_dir
    return config.git.repo_path / docs_dir


def create_version_control(config: EvolutionConfig) -> VersionControl:
    if not config.git.enabled:
        return LocalVersionControl()
    return create_git(config)


def create_git(config: EvolutionConfig) -> GitVersionControl:
    return GitVersionControl(
        config.git.repo_path,
        paths=[docs_directory(config)],
        message_prefix=config.git.commit_message_prefix,
    )


def create_manager(config: EvolutionConfig) -> ImprovementManager:
    """Improvement manager with the saved audit trail loaded."""
    manager = ImprovementManager(
        YamlDocumentationStore(docs_directory(config)),
        create_version_control(config),
        noise_threshold=config.loop.noise_threshold,
    )
    if config.paths.history_file is not None:
        manager.load_history(config.paths.history_file)
    return manager


def create_manager_or_exit(config: EvolutionConfig, console: Console) -> ImprovementManager:
    """Improvement manager for a command; a corrupt history ends the command.

    Raises:
        typer.Exit: If the saved history cannot be read.
    """
    try:
        return create_manager(config)
    except ConfigurationError as e:
        console.print(f"[red]Configuration error [{e.code}]:[/red] {e}")
        raise typer.Exit(1) from None


async def run_workflow(
    config: EvolutionConfig,
    workflow: Workflow,
    manager: ImprovementManager,
    resume: bool = False,
) -> EvolutionResult:
    """Wire the collaborators for one workflow and run its evolution.

    Raises:
        ConfigurationError: If no agent command is configured, the regression
            check file is invalid or the proposer has no API key.
    """
    if not config.trial.command:
        raise ConfigurationError(
            "trial.command must name the agent to run", code="MISSING_COMMAND"
        )

    if config.paths.documents_dir is not None:
        config.paths.documents_dir.mkdir(parents=True, exist_ok=True)
    recorder = TelemetryRecorder()
    executor = CommandTrialExecutor(
        config.trial.command,
        recorder,
        env=config.trial.env,
        working_directory=config.paths.documents_dir,
    )
    telemetry_store = None
    if config.telemetry.enabled and config.paths.telemetry_dir is not None:
        telemetry_store = TelemetryStore(
            config.paths.telemetry_dir / "sessions",
            max_sessions=config.telemetry.max_sessions,
        )
    results_dir = config.paths.results_dir or config.paths.base_dir / "results"

    async with HttpBridge.from_config(config.bridge) as bridge:
        if config.regression.enabled:
            manager.regression = RegressionSuite.from_config(config.regression, bridge, bridge)
        runner = GenerationRunner(
            workflow,
            executor,
            reset=bridge,
            metrics=bridge,
            config=config,
            recorder=recorder,
            telemetry_store=telemetry_store,
        )
        loop = EvolutionLoop(
            workflow,
            runner,
            manager,
            AnthropicProposer.from_config(
                config.proposer, timeout_seconds=config.timing.proposer_timeout_seconds
            ),
            config,
            checkpoints=CheckpointStore(results_dir / workflow.name),
            history_path=config.paths.history_file,
        )
        _logger.info("workflow_starting", workflow=workflow.name, resume=resume)
        return await loop.run(resume=resume)
