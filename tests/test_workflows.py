"""Tests for evolver.workflows module."""

from pathlib import Path

import pytest

from evolver.core.errors import ConfigurationError
from evolver.workflows import Workflow, WorkflowCatalog


def _workflow(name: str, category: str = "layout") -> Workflow:
    return Workflow(name=name, category=category, task="Lay out a page.")


class TestWorkflow:
    def test_name_and_category_normalized(self):
        workflow = Workflow(name="  Academic-Page ", category="LAYOUT", task="t")
        assert workflow.name == "academic-page"
        assert workflow.category == "layout"

    def test_prompt_contains_session_and_task(self, workflow: Workflow):
        prompt = workflow.build_prompt("gen1-agent-2")
        assert prompt.startswith("SESSION ID: gen1-agent-2\n")
        assert f"TASK: {workflow.task}" in prompt
        assert "REFERENCE IMAGE" not in prompt

    def test_prompt_reference_image(self):
        workflow = Workflow(
            name="cover", category="layout", task="t", reference_image="refs/cover.png"
        )
        assert "REFERENCE IMAGE: refs/cover.png" in workflow.build_prompt("s")


class TestWorkflowCatalog:
    def test_builtin(self):
        catalog = WorkflowCatalog.builtin()
        assert len(catalog) == 2
        assert catalog.categories == ["layout", "typography"]
        assert catalog.get("academic-page").reference_metrics["frames"] == 4  # type: ignore[union-attr]

    def test_lookup_is_case_insensitive(self):
        catalog = WorkflowCatalog.builtin()
        assert catalog.get(" Text-Hierarchy") is catalog.get("text-hierarchy")
        assert catalog.get("poster") is None
        assert [w.name for w in catalog.by_category("Typography")] == ["text-hierarchy"]

    def test_duplicate_names(self):
        with pytest.raises(ConfigurationError) as exc_info:
            WorkflowCatalog([_workflow("a"), _workflow("b"), _workflow("A")])
        assert exc_info.value.code == "DUPLICATE_WORKFLOW"

    @pytest.mark.parametrize(
        ("kwargs", "expected"),
        [
            ({"name": "b"}, ["b"]),
            ({"name": "missing"}, []),
            ({"category": "typography"}, ["c"]),
            ({"run_all": True}, ["a", "b", "c"]),
            ({"run_all": True, "category": "layout"}, ["a", "b"]),
            ({}, []),
        ],
    )
    def test_select(self, kwargs, expected):
        catalog = WorkflowCatalog(
            [_workflow("a"), _workflow("b"), _workflow("c", category="typography")]
        )
        assert [w.name for w in catalog.select(**kwargs)] == expected


class TestFromYaml:
    def test_load(self, tmp_path: Path):
        path = tmp_path / "workflows.yaml"
        path.write_text(
            "workflows:\n"
            "  - name: cover\n"
            "    category: layout\n"
            "    task: Design a book cover.\n"
            "    reference_metrics: {frames: 3}\n"
            "    tools: [create_textframe]\n"
        )
        catalog = WorkflowCatalog.from_yaml(path)
        cover = catalog.get("cover")
        assert cover is not None
        assert cover.reference_metrics == {"frames": 3}
        assert cover.tools == ["create_textframe"]

    def test_bare_list(self, tmp_path: Path):
        path = tmp_path / "workflows.yaml"
        path.write_text("- {name: cover, category: layout, task: t}\n")
        assert len(WorkflowCatalog.from_yaml(path)) == 1

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(ConfigurationError) as exc_info:
            WorkflowCatalog.from_yaml(tmp_path / "none.yaml")
        assert exc_info.value.code == "CATALOG_NOT_FOUND"

    def test_invalid_yaml(self, tmp_path: Path):
        path = tmp_path / "workflows.yaml"
        path.write_text("workflows: [unclosed\n")
        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            WorkflowCatalog.from_yaml(path)

    def test_missing_list(self, tmp_path: Path):
        path = tmp_path / "workflows.yaml"
        path.write_text("name: cover\n")
        with pytest.raises(ConfigurationError, match="'workflows' list"):
            WorkflowCatalog.from_yaml(path)

    def test_invalid_entry(self, tmp_path: Path):
        path = tmp_path / "workflows.yaml"
        path.write_text("workflows:\n  - {name: cover, category: layout}\n")
        with pytest.raises(ConfigurationError, match="Invalid workflow"):
            WorkflowCatalog.from_yaml(path)
