import asyncio
from typing import Any

from omnitrix_agent.errors import NotFound, ValidationError
from omnitrix_agent.tools.paths import display_path, resolve_within
from omnitrix_agent.tools.read_file_tool import split_lines


def _line_count(text: str) -> int:
    return len(split_lines(text))


class WriteFileTool:
    def __init__(self, working_directory: str):
        self._working_directory = working_directory

    @property
    def name(self) -> str:
        return "write_file"

    @property
    def description(self) -> str:
        return (
            "Write content to a file, creating it if it doesn't exist or overwriting if it does.\n\n"
            "Usage:\n"
            "- Provide the file path (relative to working directory or absolute)\n"
            "- Provide the content to write\n"
            "- Optionally create parent directories\n\n"
            "Use this to create new files or modify existing ones. "
            "Always read the file first before modifying to avoid conflicts."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "file_path": {
                    "type": "string",
                    "description": "Path to the file to write (relative or absolute)",
                },
                "content": {
                    "type": "string",
                    "description": "Content to write to the file",
                },
                "create_dirs": {
                    "type": "boolean",
                    "description": "Create parent directories if they don't exist (default: true)",
                },
            },
            "required": ["file_path", "content"],
        }

    async def execute(self, tool_input: dict[str, Any]) -> str:
        return await asyncio.to_thread(self._write, tool_input)

    def _write(self, tool_input: dict[str, Any]) -> str:
        raw_path: str = tool_input["file_path"]
        content: str = tool_input["content"]
        create_dirs: bool = tool_input.get("create_dirs", True)

        path = resolve_within(self._working_directory, raw_path)
        shown = display_path(self._working_directory, path)
        if path.is_dir():
            raise ValidationError(f"path is a directory, not a file: {raw_path}")

        if not path.parent.exists():
            if not create_dirs:
                raise NotFound(f"parent directory does not exist: {display_path(self._working_directory, path.parent)}")
            path.parent.mkdir(parents=True, exist_ok=True)

        new_bytes = content.encode("utf-8")
        existed = path.exists()
        old_text = ""
        if existed:
            old_bytes = path.read_bytes()
            if old_bytes == new_bytes:
                return f"File {shown} already contains the exact content. No changes made."
            old_text = old_bytes.decode("utf-8", errors="replace")

        path.write_bytes(new_bytes)

        if not existed:
            return f"Created file: {shown}\nLines written: {_line_count(content)}\n"
        old_lines = _line_count(old_text)
        new_lines = _line_count(content)
        return f"Modified file: {shown}\nLines: {old_lines} -> {new_lines} ({new_lines - old_lines:+d})\n"
