"""Tool documentation store.

Each tool's documentation lives in ``<directory>/<tool>.yaml``:

    description: Create a text frame on the active page.
    parameters:
      fontSize: Point size, 6-72. Headings usually 14-28.
    examples: |
      create_textframe(x=36, y=36, width=300, height=200)
    constraints: Frames must fit inside the page margins.

Fields are addressed with dotted paths (``parameters.fontSize``). Every value
is text; writing empty text removes the field.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any, Protocol

import yaml

from evolver.core.files import atomic_write_text

TOOL_NAME_PATTERN = r"^[A-Za-z0-9_.-]+$"
_TOOL_NAME = re.compile(TOOL_NAME_PATTERN)


class DocumentationStore(Protocol):
    def read(self, tool: str, field: str) -> str:
        ...

    def write(self, tool: str, field: str, text: str) -> None:
        ...


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, list):
        return "\n".join(str(item) for item in value)
    if isinstance(value, dict):
        return yaml.safe_dump(value, sort_keys=False).strip()
    return str(value)


class YamlDocumentationStore:
    """One YAML document per tool, written atomically."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory

    def path_for(self, tool: str) -> Path:
        if not _TOOL_NAME.match(tool):
            raise ValueError(f"Invalid tool name: {tool!r}")
        return self.directory / f"{tool}.yaml"

    def _load(self, tool: str) -> dict[str, Any]:
        path = self.path_for(tool)
        if not path.exists():
            return {}
        try:
            data = yaml.safe_load(path.read_text()) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"{path} is not valid YAML: {e}") from e
        if not isinstance(data, dict):
            raise ValueError(f"{path} does not contain a mapping")
        return data

    def tools(self) -> list[str]:
        if not self.directory.exists():
            return []
        return sorted(p.stem for p in self.directory.glob("*.yaml"))

    def read(self, tool: str, field: str) -> str:
        """Text of a documentation field; "" for unknown tools or fields."""
        node: Any = self._load(tool)
        for part in field.split("."):
            if not isinstance(node, dict) or part not in node:
                return ""
            node = node[part]
        return _as_text(node)

    def write(self, tool: str, field: str, text: str) -> None:
        data = self._load(tool)
        *parents, leaf = field.split(".")
        node = data
        for part in parents:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child

        if text:
            node[leaf] = text
        else:
            node.pop(leaf, None)

        atomic_write_text(
            self.path_for(tool),
            yaml.safe_dump(data, sort_keys=False, allow_unicode=True, width=100),
        )

    def read_all(self, tool: str) -> dict[str, Any]:
        return self._load(tool)
