"""Regression checks run against the bridge before an edit is committed.

A check exercises a handful of tools through the bridge and passes when
every step succeeds and, where a step names an ``expect`` string, that text
appears in the step's result. Only checks covering the edited tool run. The
shared session is reset afterwards so the next generation starts clean.

Check files are YAML:

    checks:
      - name: textframe-operations
        tools: [create_textframe, get_textframe_info]
        steps:
          - tool: create_textframe
            args: {x: 100, y: 100, width: 200, height: 100, text_content: Frame check}
          - tool: get_textframe_info
            expect: Frame check
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

import yaml
from pydantic import BaseModel, Field, ValidationError

from evolver.core.config import RegressionConfig
from evolver.core.errors import ConfigurationError, EvolverError
from evolver.core.logging import get_logger
from evolver.core.models import Improvement

if TYPE_CHECKING:
    from evolver.execution.bridge import ResetCollaborator, ToolInvoker

_logger = get_logger("regression")


class RegressionStep(BaseModel):
    tool: str = Field(min_length=1)
    args: dict[str, Any] = Field(default_factory=dict)
    expect: str | None = Field(
        default=None,
        description="Text that must appear in the tool's result.",
    )


class RegressionCheck(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    tools: list[str] = Field(min_length=1, description="Tools this check covers.")
    steps: list[RegressionStep] = Field(min_length=1)


BUILTIN_CHECKS: list[dict[str, Any]] = [
    {
        "name": "basic-text-operations",
        "description": "Text can be added and read back",
        "tools": ["add_text", "remove_text", "get_document_text"],
        "steps": [
            {"tool": "add_text", "args": {"text": "Regression check text", "position": "start"}},
            {"tool": "get_document_text", "expect": "Regression check text"},
        ],
    },
    {
        "name": "style-operations",
        "description": "Paragraph styles can be created and listed",
        "tools": ["create_paragraph_style", "apply_paragraph_style", "list_paragraph_styles"],
        "steps": [
            {
                "tool": "create_paragraph_style",
                "args": {"style_name": "RegressionCheckStyle", "font_size": 14},
            },
            {"tool": "list_paragraph_styles", "expect": "RegressionCheckStyle"},
        ],
    },
    {
        "name": "textframe-operations",
        "description": "Text frames can be created and inspected",
        "tools": ["create_textframe", "position_textframe", "get_textframe_info"],
        "steps": [
            {
                "tool": "create_textframe",
                "args": {
                    "x": 100,
                    "y": 100,
                    "width": 200,
                    "height": 100,
                    "text_content": "Frame check",
                },
            },
            {"tool": "get_textframe_info", "expect": "Frame check"},
        ],
    },
    {
        "name": "page-operations",
        "description": "Pages can be added",
        "tools": ["add_pages", "get_page_info"],
        "steps": [
            {"tool": "add_pages", "args": {"page_count": 1, "location": "end"}},
            {"tool": "get_page_info"},
        ],
    },
    {
        "name": "special-characters",
        "description": "Special characters can be inserted",
        "tools": ["insert_special_character"],
        "steps": [
            {"tool": "add_text", "args": {"text": "Page ", "position": "end"}},
            {
                "tool": "insert_special_character",
                "args": {"character_type": "auto_page_number", "position": "end"},
            },
        ],
    },
]


def builtin_checks() -> list[RegressionCheck]:
    return [RegressionCheck.model_validate(c) for c in BUILTIN_CHECKS]


def load_checks(path: Path) -> list[RegressionCheck]:
    """Load a check file.

    Raises:
        ConfigurationError: If the file is missing or not a valid check list.
    """
    if not path.exists():
        raise ConfigurationError(
            f"Regression check file not found: {path}", code="CHECKS_NOT_FOUND"
        )
    try:
        data = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

    entries = data.get("checks") if isinstance(data, dict) else data
    if not isinstance(entries, list):
        raise ConfigurationError(f"{path} must contain a 'checks' list")
    try:
        return [RegressionCheck.model_validate(entry) for entry in entries]
    except ValidationError as e:
        raise ConfigurationError(f"Invalid regression check in {path}: {e}") from e


@dataclass
class RegressionReport:
    affected: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    @property
    def safe(self) -> bool:
        return not self.errors


class RegressionGate(Protocol):
    """Decides whether an edit written to the documentation may be committed."""

    async def check(self, improvement: Improvement) -> RegressionReport:
        ...


def _result_text(result: Any) -> str:
    if isinstance(result, str):
        return result
    return json.dumps(result, default=str)


class RegressionSuite:
    """Runs the checks covering an improved tool through the bridge."""

    def __init__(
        self,
        invoker: ToolInvoker,
        reset: ResetCollaborator,
        checks: list[RegressionCheck] | None = None,
    ) -> None:
        self.invoker = invoker
        self.reset = reset
        self.checks = builtin_checks() if checks is None else list(checks)

    @classmethod
    def from_config(
        cls, config: RegressionConfig, invoker: ToolInvoker, reset: ResetCollaborator
    ) -> RegressionSuite:
        checks = load_checks(config.checks_file) if config.checks_file is not None else None
        return cls(invoker, reset, checks)

    def checks_for(self, tool: str) -> list[RegressionCheck]:
        return [c for c in self.checks if tool in c.tools]

    async def _run(self, check: RegressionCheck) -> str | None:
        """Run one check; returns the failure message, if any."""
        for step in check.steps:
            try:
                outcome = await self.invoker.invoke(step.tool, step.args)
            except EvolverError as e:
                return f"{check.name}: {step.tool} raised {e}"
            if not outcome.success:
                return f"{check.name}: {step.tool} failed: {outcome.error or 'unknown error'}"
            if step.expect is not None and step.expect not in _result_text(outcome.result):
                return f"{check.name}: {step.tool} result lacks {step.expect!r}"
        return None

    async def check(self, improvement: Improvement) -> RegressionReport:
        affected = self.checks_for(improvement.tool)
        report = RegressionReport(affected=[c.name for c in affected])
        if not affected:
            return report

        for regression_check in affected:
            error = await self._run(regression_check)
            if error is not None:
                report.errors.append(error)

        try:
            await self.reset.reset_external_state()
        except EvolverError as e:
            report.errors.append(f"state reset after regression checks failed: {e}")

        _logger.info(
            "regression_checked",
            tool=improvement.tool,
            checks=len(affected),
            failures=len(report.errors),
        )
        return report
