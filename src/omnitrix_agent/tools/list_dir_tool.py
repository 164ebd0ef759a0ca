import asyncio
from typing import Any

from omnitrix_agent.errors import NotFound, ValidationError
from omnitrix_agent.tools.paths import display_path, resolve_within

_KB = 1024
_MB = 1024 * _KB
_GB = 1024 * _MB


def format_size(size: int) -> str:
    if size >= _GB:
        return f"{size / _GB:.1f} GB"
    if size >= _MB:
        return f"{size / _MB:.1f} MB"
    if size >= _KB:
        return f"{size / _KB:.1f} KB"
    return f"{size} B"


class ListDirTool:
    def __init__(self, working_directory: str):
        self._working_directory = working_directory

    @property
    def name(self) -> str:
        return "list_dir"

    @property
    def description(self) -> str:
        return (
            "List contents of a directory to explore the project structure.\n\n"
            "Usage:\n"
            "- Provide directory path (defaults to current directory)\n"
            "- Optionally show hidden files\n\n"
            "Use this to understand project organization before reading or modifying files."
        )

    @property
    def input_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "dir_path": {
                    "type": "string",
                    "description": "Directory path to list (defaults to current directory)",
                },
                "show_hidden": {
                    "type": "boolean",
                    "description": "Include hidden files (starting with .)",
                },
            },
        }

    async def execute(self, tool_input: dict[str, Any]) -> str:
        return await asyncio.to_thread(self._list, tool_input)

    def _list(self, tool_input: dict[str, Any]) -> str:
        raw_path: str = tool_input.get("dir_path") or "."
        show_hidden: bool = tool_input.get("show_hidden", False)

        path = resolve_within(self._working_directory, raw_path)
        if not path.exists():
            raise NotFound(f"directory not found: {raw_path}")
        if not path.is_dir():
            raise ValidationError(f"path is not a directory: {raw_path}")

        dirs: list[str] = []
        files: list[str] = []
        for entry in sorted(path.iterdir(), key=lambda p: p.name):
            if not show_hidden and entry.name.startswith("."):
                continue
            if entry.is_dir():
                dirs.append(f"{entry.name}/")
            else:
                try:
                    size = format_size(entry.stat().st_size)
                except OSError:
                    size = ""
                files.append(f"{entry.name:<40} {size}".rstrip())

        out = [
            f"Directory: {display_path(self._working_directory, path)}\n",
            f"Entries: {len(dirs) + len(files)}\n\n",
        ]
        if dirs:
            out.append("Directories:\n")
            out.extend(f"  {d}\n" for d in dirs)
            out.append("\n")
        if files:
            out.append("Files:\n")
            out.extend(f"  {f}\n" for f in files)
        return "".join(out)
