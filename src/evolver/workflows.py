"""Workflow catalog: the tasks agents are asked to perform.

A workflow names a layout task, the category it belongs to, the reference
metrics a finished document is compared against and, optionally, a
reference image shown to agents. Catalogs are YAML files:

    workflows:
      - name: academic-page
        category: layout
        task: Recreate the academic book page ...
        reference_image: refs/academic-page.png
        reference_metrics:
          frames: 4
          margins: {top: 36, bottom: 36}
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from evolver.core.errors import ConfigurationError


class Workflow(BaseModel):
    name: str = Field(min_length=1)
    category: str = Field(min_length=1)
    task: str = Field(min_length=1)
    reference_metrics: dict[str, Any] = Field(default_factory=dict)
    reference_image: str = ""
    tools: list[str] = Field(
        default_factory=list,
        description="Tools whose documentation the loop may edit. Empty means any.",
    )

    @field_validator("name", "category")
    @classmethod
    def _normalize(cls, value: str) -> str:
        return value.strip().lower()

    def build_prompt(self, session_id: str) -> str:
        """Task prompt handed to an agent: the goal only, no steps."""
        lines = [
            f"SESSION ID: {session_id}",
            "",
            "CONTEXT: The document has been cleared and is ready for your layout.",
            "",
            f"TASK: {self.task}",
        ]
        if self.reference_image:
            lines.extend(["", f"REFERENCE IMAGE: {self.reference_image}"])
        return "\n".join(lines) + "\n"


BUILTIN_WORKFLOWS: list[dict[str, Any]] = [
    {
        "name": "academic-page",
        "category": "layout",
        "task": (
            "Recreate this academic book page layout using the available tools: "
            "a running header, a two-level heading hierarchy and justified body text "
            "in a single column."
        ),
        "reference_metrics": {
            "frames": 4,
            "columns": 1,
            "margins": {"top": 54, "bottom": 54, "inside": 54, "outside": 36},
            "styles": {"heading1": {"fontSize": 18}, "body": {"fontSize": 10.5}},
        },
    },
    {
        "name": "text-hierarchy",
        "category": "typography",
        "task": (
            "Set the supplied article text with a clear typographic hierarchy: "
            "title, subtitle, section headings and body text using paragraph styles."
        ),
        "reference_metrics": {
            "frames": 2,
            "styles": {
                "title": {"fontSize": 28},
                "subtitle": {"fontSize": 16},
                "heading": {"fontSize": 13},
                "body": {"fontSize": 10},
            },
        },
    },
]


class WorkflowCatalog:
    """An ordered set of workflows addressable by name or category."""

    def __init__(self, workflows: list[Workflow]) -> None:
        names = [w.name for w in workflows]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ConfigurationError(
                f"Duplicate workflow names: {', '.join(duplicates)}",
                code="DUPLICATE_WORKFLOW",
            )
        self.workflows = list(workflows)

    @classmethod
    def builtin(cls) -> WorkflowCatalog:
        return cls([Workflow.model_validate(w) for w in BUILTIN_WORKFLOWS])

    @classmethod
    def from_yaml(cls, path: Path) -> WorkflowCatalog:
        """Load a catalog file.

        Raises:
            ConfigurationError: If the file is missing or not a valid catalog.
        """
        if not path.exists():
            raise ConfigurationError(
                f"Workflow catalog not found: {path}", code="CATALOG_NOT_FOUND"
            )
        try:
            data = yaml.safe_load(path.read_text()) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

        entries = data.get("workflows") if isinstance(data, dict) else data
        if not isinstance(entries, list):
            raise ConfigurationError(f"{path} must contain a 'workflows' list")
        try:
            return cls([Workflow.model_validate(entry) for entry in entries])
        except ValidationError as e:
            raise ConfigurationError(f"Invalid workflow in {path}: {e}") from e

    @property
    def categories(self) -> list[str]:
        return sorted({w.category for w in self.workflows})

    def get(self, name: str) -> Workflow | None:
        wanted = name.strip().lower()
        return next((w for w in self.workflows if w.name == wanted), None)

    def by_category(self, category: str) -> list[Workflow]:
        wanted = category.strip().lower()
        return [w for w in self.workflows if w.category == wanted]

    def select(
        self,
        run_all: bool = False,
        category: str | None = None,
        name: str | None = None,
    ) -> list[Workflow]:
        """Resolve CLI selection flags to workflows; empty when nothing matches."""
        if name is not None:
            workflow = self.get(name)
            return [workflow] if workflow else []
        if category is not None:
            return self.by_category(category)
        if run_all:
            return list(self.workflows)
        return []

    def __len__(self) -> int:
        return len(self.workflows)
