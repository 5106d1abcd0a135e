"""Pytest fixtures for evolver tests."""

import logging
from collections.abc import Generator
from pathlib import Path

import pytest
import structlog

from evolver.core.config import EvolutionConfig
from evolver.execution.telemetry import TelemetryRecorder
from evolver.workflows import Workflow, WorkflowCatalog
from tests.helpers import make_config


@pytest.fixture(autouse=True)
def reset_logging_state() -> Generator[None, None, None]:
    """Reset logging state before and after each test."""
    from evolver.cli import helpers as cli_helpers

    cli_helpers.reset_logging_state()
    cli_helpers.set_output_level(cli_helpers.OutputLevel.NORMAL)
    structlog.reset_defaults()

    root_logger = logging.getLogger()
    original_handlers = root_logger.handlers[:]
    for handler in original_handlers:
        root_logger.removeHandler(handler)

    yield

    cli_helpers.reset_logging_state()
    cli_helpers.set_output_level(cli_helpers.OutputLevel.NORMAL)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in original_handlers:
        root_logger.addHandler(handler)


@pytest.fixture
def config(tmp_path: Path) -> EvolutionConfig:
    """Three agents, ten generations, target 85, no pauses."""
    return make_config(tmp_path)


@pytest.fixture
def recorder() -> TelemetryRecorder:
    return TelemetryRecorder()


@pytest.fixture
def workflow() -> Workflow:
    return WorkflowCatalog.builtin().get("academic-page")  # type: ignore[return-value]


@pytest.fixture
def sample_config_yaml(tmp_path: Path) -> Path:
    """A YAML configuration file rooted in tmp_path."""
    import yaml

    config_path = tmp_path / "evolver.yaml"
    data = {
        "paths": {"base_dir": str(tmp_path / "evolution")},
        "loop": {"agent_count": 4, "target_score": 90},
        "git": {"enabled": False},
        "trial": {"command": ["my-agent", "--fast"]},
        "bridge": {"endpoints": ["http://127.0.0.1:3000", "http://127.0.0.1:3001"]},
    }
    with open(config_path, "w") as f:
        yaml.safe_dump(data, f)
    return config_path
