"""Tests for evolver.improvement.regression module."""

from typing import Any

import pytest

from evolver.core.config import RegressionConfig
from evolver.core.errors import ConfigurationError, ExternalUnavailableError
from evolver.core.models import Improvement, ImprovementType
from evolver.execution.bridge import ToolResult
from evolver.improvement.regression import (
    RegressionCheck,
    RegressionSuite,
    builtin_checks,
    load_checks,
)


class ScriptedInvoker:
    """Answers tool calls from a table; unknown tools succeed with no result."""

    def __init__(self, results: dict[str, ToolResult | Exception] | None = None) -> None:
        self.results = results or {}
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def invoke(self, tool: str, args: dict[str, Any]) -> ToolResult:
        self.calls.append((tool, dict(args)))
        result = self.results.get(tool, ToolResult(success=True))
        if isinstance(result, Exception):
            raise result
        return result


class CountingReset:
    def __init__(self, error: Exception | None = None) -> None:
        self.calls = 0
        self.error = error

    async def reset_external_state(self) -> None:
        self.calls += 1
        if self.error is not None:
            raise self.error


def _improvement(tool: str = "create_textframe") -> Improvement:
    return Improvement(
        type=ImprovementType.DESCRIPTION,
        tool=tool,
        field="description",
        current="Create a frame.",
        proposed="Create a frame inside the margins.",
        rationale="Frames overflow",
        expected_impact=0.5,
        generation=1,
    )


FRAME_INFO = ToolResult(success=True, result={"frames": [{"contents": "Frame check"}]})


class TestChecks:
    def test_builtin_checks_cover_common_tools(self):
        names = {c.name for c in builtin_checks()}
        assert "textframe-operations" in names
        assert "style-operations" in names

    def test_checks_for(self):
        suite = RegressionSuite(ScriptedInvoker(), CountingReset())
        assert [c.name for c in suite.checks_for("get_textframe_info")] == [
            "textframe-operations"
        ]
        assert suite.checks_for("export_pdf") == []

    def test_load_checks(self, tmp_path):
        path = tmp_path / "checks.yaml"
        path.write_text(
            "checks:\n"
            "  - name: frames\n"
            "    tools: [create_textframe]\n"
            "    steps:\n"
            "      - tool: create_textframe\n"
            "        args: {x: 10}\n"
            "      - tool: get_textframe_info\n"
            "        expect: Frame\n"
        )

        [check] = load_checks(path)

        assert check.name == "frames"
        assert check.steps[0].args == {"x": 10}
        assert check.steps[1].expect == "Frame"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError) as exc_info:
            load_checks(tmp_path / "missing.yaml")
        assert exc_info.value.code == "CHECKS_NOT_FOUND"

    @pytest.mark.parametrize(
        "content",
        ["checks: [unclosed\n", "checks: 3\n", "checks:\n  - name: no-steps\n    tools: [a]\n"],
        ids=["invalid-yaml", "not-a-list", "no-steps"],
    )
    def test_invalid_file(self, tmp_path, content):
        path = tmp_path / "checks.yaml"
        path.write_text(content)
        with pytest.raises(ConfigurationError):
            load_checks(path)

    def test_from_config_uses_builtins_by_default(self):
        suite = RegressionSuite.from_config(
            RegressionConfig(), ScriptedInvoker(), CountingReset()
        )
        assert len(suite.checks) == len(builtin_checks())

    def test_from_config_loads_file(self, tmp_path):
        path = tmp_path / "checks.yaml"
        path.write_text(
            "checks:\n  - name: only\n    tools: [add_text]\n    steps:\n      - tool: add_text\n"
        )
        suite = RegressionSuite.from_config(
            RegressionConfig(checks_file=path), ScriptedInvoker(), CountingReset()
        )
        assert [c.name for c in suite.checks] == ["only"]


class TestRegressionSuite:
    @pytest.mark.asyncio
    async def test_passing_checks(self):
        invoker = ScriptedInvoker({"get_textframe_info": FRAME_INFO})
        reset = CountingReset()
        suite = RegressionSuite(invoker, reset)

        report = await suite.check(_improvement())

        assert report.safe
        assert report.affected == ["textframe-operations"]
        assert [tool for tool, _ in invoker.calls] == ["create_textframe", "get_textframe_info"]
        assert reset.calls == 1

    @pytest.mark.asyncio
    async def test_missing_expected_text(self):
        invoker = ScriptedInvoker(
            {"get_textframe_info": ToolResult(success=True, result={"frames": []})}
        )
        suite = RegressionSuite(invoker, CountingReset())

        report = await suite.check(_improvement())

        assert not report.safe
        assert report.errors == [
            "textframe-operations: get_textframe_info result lacks 'Frame check'"
        ]

    @pytest.mark.asyncio
    async def test_failed_step_stops_check(self):
        invoker = ScriptedInvoker(
            {"create_textframe": ToolResult(success=False, error="no document open")}
        )
        suite = RegressionSuite(invoker, CountingReset())

        report = await suite.check(_improvement())

        assert report.errors == [
            "textframe-operations: create_textframe failed: no document open"
        ]
        assert [tool for tool, _ in invoker.calls] == ["create_textframe"]

    @pytest.mark.asyncio
    async def test_unreachable_bridge(self):
        invoker = ScriptedInvoker(
            {"create_textframe": ExternalUnavailableError("connection refused")}
        )
        suite = RegressionSuite(invoker, CountingReset())

        report = await suite.check(_improvement())

        assert not report.safe
        assert "connection refused" in report.errors[0]

    @pytest.mark.asyncio
    async def test_failed_reset_is_reported(self):
        invoker = ScriptedInvoker({"get_textframe_info": FRAME_INFO})
        suite = RegressionSuite(
            invoker, CountingReset(error=ExternalUnavailableError("bridge gone"))
        )

        report = await suite.check(_improvement())

        assert report.errors == ["state reset after regression checks failed: bridge gone"]

    @pytest.mark.asyncio
    async def test_string_results_are_matched(self):
        check = RegressionCheck.model_validate(
            {
                "name": "text",
                "tools": ["add_text"],
                "steps": [{"tool": "get_document_text", "expect": "hello"}],
            }
        )
        invoker = ScriptedInvoker(
            {"get_document_text": ToolResult(success=True, result="say hello")}
        )
        suite = RegressionSuite(invoker, CountingReset(), checks=[check])

        assert (await suite.check(_improvement("add_text"))).safe

    @pytest.mark.asyncio
    async def test_uncovered_tool_skips_bridge(self):
        invoker = ScriptedInvoker()
        reset = CountingReset()
        suite = RegressionSuite(invoker, reset)

        report = await suite.check(_improvement("export_pdf"))

        assert report.safe
        assert report.affected == []
        assert invoker.calls == []
        assert reset.calls == 0
