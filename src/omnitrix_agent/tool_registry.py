from __future__ import annotations

from typing import Any

from omnitrix_agent.errors import ValidationError
from omnitrix_agent.models import ToolSpec
from omnitrix_agent.tool import Tool
from omnitrix_agent.tools.list_dir_tool import ListDirTool
from omnitrix_agent.tools.read_file_tool import ReadFileTool
from omnitrix_agent.tools.write_file_tool import WriteFileTool

_JSON_TYPE_NAMES = {
    "string": "a string",
    "integer": "an integer",
    "number": "a number",
    "boolean": "a boolean",
    "array": "an array",
    "object": "an object",
}


def _coerce(name: str, value: Any, expected: str) -> Any:
    if expected == "string" and isinstance(value, str):
        return value
    if expected == "boolean" and isinstance(value, bool):
        return value
    if expected == "integer" and not isinstance(value, bool):
        if isinstance(value, int):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
    if expected == "number" and not isinstance(value, bool) and isinstance(value, (int, float)):
        return value
    if expected == "array" and isinstance(value, list):
        return value
    if expected == "object" and isinstance(value, dict):
        return value
    if expected not in _JSON_TYPE_NAMES:
        return value
    raise ValidationError(
        f"argument '{name}' must be {_JSON_TYPE_NAMES[expected]}, got {type(value).__name__}"
    )


def validate_arguments(schema: dict[str, Any], arguments: Any) -> dict[str, Any]:
    """Check arguments against a tool's input schema and return a normalized copy."""
    if not isinstance(arguments, dict):
        raise ValidationError(f"arguments must be an object, got {type(arguments).__name__}")

    properties: dict[str, Any] = schema.get("properties", {})
    missing = [key for key in schema.get("required", []) if arguments.get(key) is None]
    if missing:
        raise ValidationError(f"missing required argument(s): {', '.join(missing)}")

    normalized = dict(arguments)
    for key, value in arguments.items():
        prop = properties.get(key)
        if prop is None or value is None:
            continue
        expected = prop.get("type")
        if expected:
            normalized[key] = _coerce(key, value, expected)
        allowed = prop.get("enum")
        if allowed is not None and normalized[key] not in allowed:
            raise ValidationError(f"argument '{key}' must be one of {allowed}, got {value!r}")
    return normalized


class ToolRegistry:
    def __init__(self, tools: list[Tool] | None = None):
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"Duplicate tool name: {tool.name!r}")
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def catalog(self) -> list[ToolSpec]:
        return [
            ToolSpec(name=t.name, description=t.description, input_schema=t.input_schema)
            for t in self._tools.values()
        ]

    def validate(self, name: str, arguments: Any) -> dict[str, Any]:
        tool = self._tools.get(name)
        if tool is None:
            raise ValidationError(f'unknown tool "{name}"')
        return validate_arguments(tool.input_schema, arguments)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)


def get_all(working_directory: str) -> list[Tool]:
    return [
        ReadFileTool(working_directory),
        WriteFileTool(working_directory),
        ListDirTool(working_directory),
    ]
