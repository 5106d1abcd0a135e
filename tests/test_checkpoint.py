"""Tests for evolver.execution.checkpoint module."""

import json
from datetime import UTC, datetime
from pathlib import Path

import pytest
from pydantic import ValidationError

from evolver.core.models import ConvergenceState, EvolutionResult, StopReason
from evolver.execution.checkpoint import CheckpointStore, LoopCheckpoint


def _checkpoint(generation: int, workflow: str = "academic-page") -> LoopCheckpoint:
    return LoopCheckpoint(
        workflow=workflow,
        generation=generation,
        score_history=[45.0 + 10 * i for i in range(generation)],
        convergence=ConvergenceState(best_score=55.0, plateau_generations=1),
        pending_improvement_id="imp-1" if generation > 1 else None,
        timestamp=datetime(2026, 3, 1, 12, 0, tzinfo=UTC),
    )


@pytest.fixture
def store(tmp_path: Path) -> CheckpointStore:
    return CheckpointStore(tmp_path / "results")


class TestLoopCheckpoint:
    """Tests for LoopCheckpoint serialization."""

    def test_dump(self):
        data = _checkpoint(2).model_dump(mode="json")
        assert data["workflow"] == "academic-page"
        assert data["score_history"] == [45.0, 55.0]
        assert data["convergence"]["best_score"] == 55.0
        assert data["convergence"]["reason"] is None
        assert data["pending_improvement_id"] == "imp-1"
        assert datetime.fromisoformat(data["timestamp"]) == datetime(
            2026, 3, 1, 12, 0, tzinfo=UTC
        )

    def test_validate_restores_stop_reason(self):
        data = _checkpoint(3).model_dump(mode="json")
        data["convergence"]["reason"] = "plateau"
        data["convergence"]["has_converged"] = True

        restored = LoopCheckpoint.model_validate(data)

        assert restored.generation == 3
        assert isinstance(restored.convergence, ConvergenceState)
        assert restored.convergence.reason is StopReason.PLATEAU
        assert restored.convergence.has_converged
        assert restored.timestamp == datetime(2026, 3, 1, 12, 0, tzinfo=UTC)

    def test_rejects_partial_data(self):
        with pytest.raises(ValidationError):
            LoopCheckpoint.model_validate({"workflow": "academic-page"})


class TestCheckpointStore:
    """Tests for CheckpointStore."""

    def test_save_and_load(self, store: CheckpointStore):
        path = store.save(_checkpoint(1))

        assert path.name == "checkpoint-gen1.json"
        assert path.parent == store.checkpoint_dir
        loaded = store.load(1)
        assert loaded is not None
        assert loaded.score_history == [45.0]
        assert loaded.pending_improvement_id is None

    def test_load_missing(self, store: CheckpointStore):
        assert store.load(4) is None

    def test_latest_empty(self, store: CheckpointStore):
        assert store.latest() is None

    def test_latest_picks_highest_generation(self, store: CheckpointStore):
        for generation in (2, 10, 9):
            store.save(_checkpoint(generation))
        (store.checkpoint_dir / "notes.json").write_text("{}")
        (store.checkpoint_dir / "checkpoint-gen99.json.tmp").write_text("{}")

        latest = store.latest()

        assert latest is not None
        assert latest.generation == 10

    def test_overwrites_same_generation(self, store: CheckpointStore):
        store.save(_checkpoint(2))
        store.save(_checkpoint(2, workflow="typography-basics"))
        assert store.load(2).workflow == "typography-basics"  # type: ignore[union-attr]

    @pytest.mark.parametrize(
        "content",
        [
            '{"workflow": "academic-page", "generation": 3, "score_hist',
            json.dumps({"workflow": "academic-page", "generation": 3}),
            json.dumps(["not", "a", "checkpoint"]),
        ],
        ids=["truncated", "missing-fields", "wrong-shape"],
    )
    def test_corrupt_file_loads_as_none(self, store: CheckpointStore, content: str):
        store.checkpoint_dir.mkdir(parents=True)
        (store.checkpoint_dir / "checkpoint-gen3.json").write_text(content)

        assert store.load(3) is None

    def test_latest_skips_corrupt_newest(self, store: CheckpointStore):
        store.save(_checkpoint(1))
        store.save(_checkpoint(2))
        (store.checkpoint_dir / "checkpoint-gen3.json").write_text('{"generation": ')

        latest = store.latest()

        assert latest is not None
        assert latest.generation == 2


class TestSaveReport:
    def test_writes_json_and_summary(self, store: CheckpointStore):
        result = EvolutionResult(
            start_score=45.0,
            final_score=70.0,
            best_score=70.0,
            generations_run=3,
            improvements_applied=1,
            improvements_accepted=1,
            improvements_rejected=0,
            stop_reason=StopReason.MAX_GENERATIONS,
            score_history=[45.0, 67.0, 70.0],
        )

        report_path, summary_path = store.save_report(
            "academic-page", result, "# Improvements\n"
        )

        assert report_path.parent == store.report_dir
        assert report_path.name.startswith("evolution-report-academic-page-")
        assert summary_path.name == report_path.stem + "-improvements.md"
        report = json.loads(report_path.read_text())
        assert report["workflow"] == "academic-page"
        assert report["stop_reason"] == "max_generations"
        assert report["converged"] is False
        assert report["score_history"] == [45.0, 67.0, 70.0]
        assert summary_path.read_text() == "# Improvements\n"
