"""Loop checkpoints and final reports.

A checkpoint is written after every generation so an interrupted evolution
can resume from the last completed generation. The final report is one JSON
document plus a markdown summary of the improvements that were tried.
"""

from __future__ import annotations

import json
import re
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, Field

from evolver.core.files import atomic_write_json, atomic_write_text
from evolver.core.logging import get_logger
from evolver.core.models import ConvergenceState, EvolutionResult

_logger = get_logger("checkpoint")

_CHECKPOINT_NAME = re.compile(r"^checkpoint-gen(\d+)\.json$")


class LoopCheckpoint(BaseModel):
    """Loop state after a completed generation."""

    workflow: str
    generation: int = Field(ge=1)
    score_history: list[float]
    convergence: ConvergenceState = Field(default_factory=ConvergenceState)
    pending_improvement_id: str | None = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))


class CheckpointStore:
    """Reads and writes checkpoints and reports under one results directory."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory

    @property
    def checkpoint_dir(self) -> Path:
        return self.directory / "checkpoints"

    @property
    def report_dir(self) -> Path:
        return self.directory / "reports"

    def save(self, checkpoint: LoopCheckpoint) -> Path:
        path = self.checkpoint_dir / f"checkpoint-gen{checkpoint.generation}.json"
        atomic_write_json(path, checkpoint.model_dump(mode="json"))
        _logger.debug("checkpoint_saved", generation=checkpoint.generation, path=str(path))
        return path

    def load(self, generation: int) -> LoopCheckpoint | None:
        """Checkpoint of one generation; None when missing or corrupt."""
        path = self.checkpoint_dir / f"checkpoint-gen{generation}.json"
        if not path.exists():
            return None
        try:
            with open(path) as f:
                data = json.load(f)
            return LoopCheckpoint.model_validate(data)
        except (json.JSONDecodeError, ValueError) as e:
            _logger.warning("checkpoint_corrupt", path=str(path), error=str(e))
            return None

    def latest(self) -> LoopCheckpoint | None:
        """Newest readable checkpoint, skipping corrupt ones."""
        if not self.checkpoint_dir.exists():
            return None
        generations = [
            int(match.group(1))
            for path in self.checkpoint_dir.iterdir()
            if (match := _CHECKPOINT_NAME.match(path.name))
        ]
        for generation in sorted(generations, reverse=True):
            checkpoint = self.load(generation)
            if checkpoint is not None:
                return checkpoint
        return None

    def save_report(
        self,
        workflow: str,
        result: EvolutionResult,
        improvement_summary: str,
    ) -> tuple[Path, Path]:
        """Write the final JSON report and the markdown improvement summary.

        Returns:
            Paths of the JSON report and the markdown summary.
        """
        stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S")
        report_path = self.report_dir / f"evolution-report-{workflow}-{stamp}.json"
        summary_path = report_path.with_name(report_path.stem + "-improvements.md")

        atomic_write_json(report_path, {"workflow": workflow, **result.to_dict()})
        atomic_write_text(summary_path, improvement_summary)
        _logger.info(
            "report_saved",
            report=str(report_path),
            summary=str(summary_path),
        )
        return report_path, summary_path
