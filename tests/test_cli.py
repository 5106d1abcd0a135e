"""Tests for evolver CLI commands."""

import importlib
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
import yaml
from typer.testing import CliRunner

from evolver import __version__
from evolver.cli import app
from evolver.cli.output import console
from evolver.core.config import load_config
from evolver.core.errors import ExternalUnavailableError
from evolver.core.models import EvolutionResult, StopReason
from evolver.improvement.manager import ImprovementManager
from evolver.improvement.proposer import parse_improvement_payload
from tests.helpers import MemoryDocStore, RecordingVcs, description_payload

runner = CliRunner()
run_module = importlib.import_module("evolver.cli.commands.run")


@pytest.fixture(autouse=True)
def wide_console(monkeypatch) -> None:
    monkeypatch.setattr(console, "width", 200)


def _result(**overrides) -> EvolutionResult:
    values = {
        "start_score": 45.0,
        "final_score": 88.0,
        "best_score": 88.0,
        "generations_run": 3,
        "improvements_applied": 2,
        "improvements_accepted": 2,
        "improvements_rejected": 0,
        "stop_reason": StopReason.TARGET_REACHED,
        "score_history": [45.0, 67.0, 88.0],
    }
    values.update(overrides)
    return EvolutionResult(**values)


@pytest.fixture
def fake_run_workflow(monkeypatch) -> AsyncMock:
    mock = AsyncMock(return_value=_result())
    monkeypatch.setattr(run_module, "run_workflow", mock)
    return mock


class TestVersion:
    def test_version_flag(self) -> None:
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert f"evolver v{__version__}" in result.stdout


class TestRunCommand:
    """Tests for `evolver run`."""

    def test_stats_lists_catalog(self, sample_config_yaml: Path) -> None:
        result = runner.invoke(app, ["run", "--stats", "--config", str(sample_config_yaml)])
        assert result.exit_code == 0
        assert "layout" in result.stdout
        assert "typography" in result.stdout

    def test_no_selector_shows_stats(self, sample_config_yaml: Path, fake_run_workflow) -> None:
        result = runner.invoke(app, ["run", "--config", str(sample_config_yaml)])
        assert result.exit_code == 0
        assert "Workflows" in result.stdout
        fake_run_workflow.assert_not_called()

    def test_stats_include_improvement_history(self, sample_config_yaml: Path) -> None:
        config = load_config(sample_config_yaml)
        manager = ImprovementManager(MemoryDocStore(), RecordingVcs())
        manager.create(parse_improvement_payload(description_payload()), generation=1)
        manager.save_history(config.paths.history_file)

        result = runner.invoke(app, ["run", "--stats", "--config", str(sample_config_yaml)])

        assert result.exit_code == 0
        assert "Acceptance rate" in result.stdout

    def test_unknown_workflow(self, sample_config_yaml: Path, fake_run_workflow) -> None:
        result = runner.invoke(
            app, ["run", "-w", "poster", "--config", str(sample_config_yaml)]
        )
        assert result.exit_code == 1
        assert "NO_WORKFLOW" in result.stdout
        fake_run_workflow.assert_not_called()

    def test_missing_config_file(self, tmp_path: Path) -> None:
        result = runner.invoke(app, ["run", "--all", "--config", str(tmp_path / "nope.yaml")])
        assert result.exit_code == 1
        assert "CONFIG_NOT_FOUND" in result.stdout

    def test_runs_selected_workflow(self, sample_config_yaml: Path, fake_run_workflow) -> None:
        result = runner.invoke(
            app, ["run", "-w", "academic-page", "--config", str(sample_config_yaml)]
        )

        assert result.exit_code == 0, result.stdout
        assert "Evolution Result" in result.stdout
        assert "target reached" in result.stdout
        fake_run_workflow.assert_awaited_once()
        config, workflow, _manager = fake_run_workflow.await_args.args
        assert workflow.name == "academic-page"
        assert config.loop.agent_count == 4
        assert fake_run_workflow.await_args.kwargs == {"resume": False}

    def test_all_runs_each_workflow(self, sample_config_yaml: Path, fake_run_workflow) -> None:
        result = runner.invoke(
            app, ["run", "--all", "--resume", "--config", str(sample_config_yaml)]
        )
        assert result.exit_code == 0
        assert fake_run_workflow.await_count == 2
        assert fake_run_workflow.await_args.kwargs == {"resume": True}

    def test_verbose_prints_generations(self, sample_config_yaml: Path, fake_run_workflow) -> None:
        result = runner.invoke(
            app,
            ["--verbose", "run", "-c", "typography", "--config", str(sample_config_yaml)],
        )
        assert result.exit_code == 0
        assert "Generations" in result.stdout

    def test_failed_workflow_exits_nonzero(
        self, sample_config_yaml: Path, monkeypatch
    ) -> None:
        mock = AsyncMock(side_effect=ExternalUnavailableError("bridge down"))
        monkeypatch.setattr(run_module, "run_workflow", mock)

        result = runner.invoke(app, ["run", "--all", "--config", str(sample_config_yaml)])

        assert result.exit_code == 1
        assert mock.await_count == 2
        assert "2 workflow(s) failed" in result.stdout

    def test_missing_agent_command(self, tmp_path: Path) -> None:
        config_path = tmp_path / "evolver.yaml"
        config_path.write_text(
            yaml.safe_dump(
                {"paths": {"base_dir": str(tmp_path / "evolution")}, "git": {"enabled": False}}
            )
        )
        result = runner.invoke(app, ["run", "-w", "academic-page", "--config", str(config_path)])
        assert result.exit_code == 1
        assert "MISSING_COMMAND" in result.stdout


class TestHistoryCommand:
    """Tests for `evolver history` and `evolver revert`."""

    def test_empty_history(self, sample_config_yaml: Path) -> None:
        result = runner.invoke(app, ["history", "--config", str(sample_config_yaml)])
        assert result.exit_code == 0
        assert "No improvements recorded." in result.stdout

    def test_lists_improvements(self, sample_config_yaml: Path) -> None:
        config = load_config(sample_config_yaml)
        manager = ImprovementManager(MemoryDocStore(), RecordingVcs())
        manager.create(parse_improvement_payload(description_payload(tool="apply_style")), 2)
        manager.save_history(config.paths.history_file)

        result = runner.invoke(app, ["history", "--config", str(sample_config_yaml)])

        assert result.exit_code == 0
        assert "apply_style" in result.stdout
        assert "proposed" in result.stdout

    def test_corrupt_history(self, sample_config_yaml: Path) -> None:
        config = load_config(sample_config_yaml)
        config.paths.history_file.parent.mkdir(parents=True, exist_ok=True)
        config.paths.history_file.write_text('{"improvements": [')

        result = runner.invoke(app, ["history", "--config", str(sample_config_yaml)])

        assert result.exit_code == 1
        assert "CORRUPT_HISTORY" in result.stdout

    def test_revert_requires_git(self, sample_config_yaml: Path) -> None:
        result = runner.invoke(app, ["revert", "abc1234", "--config", str(sample_config_yaml)])
        assert result.exit_code == 1
        assert "git is disabled" in result.stdout
