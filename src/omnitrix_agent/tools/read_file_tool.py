import asyncio
from typing import Any

from omnitrix_agent.errors import NotFound, TooLarge, ValidationError
from omnitrix_agent.tools.paths import display_path, resolve_within

MAX_FILE_SIZE = 10 * 1024 * 1024


def split_lines(text: str) -> list[str]:
    """Split on line feeds only, so form feeds and other Unicode breaks stay inside their line."""
    if not text:
        return []
    lines = text.split("\n")
    if lines[-1] == "":
        lines.pop()
    return [line[:-1] if line.endswith("\r") else line for line in lines]


class ReadFileTool:
    def __init__(self, working_directory: str):
        self._working_directory = working_directory

    @property
    def name(self) -> str:
        return "read_file"

    @property
    def description(self) -> str:
        return (
            "Read the contents of a file from the filesystem. Use this to examine source code, "
            "configuration files, or any text-based files.\n\n"
            "Usage:\n"
            "- Provide the file path (relative to working directory or absolute)\n"
            "- Optionally specify line range to read partial content\n\n"
            "The tool will return the file contents with line numbers for easy reference."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "file_path": {
                    "type": "string",
                    "description": "Path to the file to read (relative or absolute)",
                },
                "start_line": {
                    "type": "integer",
                    "description": "Optional: Line number to start reading from (1-indexed)",
                },
                "end_line": {
                    "type": "integer",
                    "description": "Optional: Line number to stop reading at (inclusive)",
                },
            },
            "required": ["file_path"],
        }

    async def execute(self, tool_input: dict[str, Any]) -> str:
        return await asyncio.to_thread(self._read, tool_input)

    def _read(self, tool_input: dict[str, Any]) -> str:
        raw_path: str = tool_input["file_path"]
        start_line: int | None = tool_input.get("start_line")
        end_line: int | None = tool_input.get("end_line")

        if start_line is not None and end_line is not None and start_line > end_line:
            raise ValidationError(f"start_line ({start_line}) must be <= end_line ({end_line})")

        path = resolve_within(self._working_directory, raw_path)
        if not path.exists():
            raise NotFound(f"file not found: {raw_path}")
        if path.is_dir():
            raise ValidationError(f"path is a directory, not a file: {raw_path}")

        size = path.stat().st_size
        if size > MAX_FILE_SIZE:
            raise TooLarge(f"file too large ({size} bytes, max {MAX_FILE_SIZE} bytes)")

        lines = split_lines(path.read_bytes().decode("utf-8", errors="replace"))
        total = len(lines)
        shown = display_path(self._working_directory, path)
        if total == 0:
            return f"File: {shown}\nLines: 0-0 of 0\n\n"

        start = max(1, start_line if start_line is not None else 1)
        end = min(total, end_line if end_line is not None else total)
        if start > end:
            raise ValidationError(f"start_line ({start}) is beyond the end of the file ({total} lines)")

        out = [f"File: {shown}\n", f"Lines: {start}-{end} of {total}\n\n"]
        for number in range(start, end + 1):
            out.append(f"{number:4d} | {lines[number - 1]}\n")
        return "".join(out)
