from pathlib import Path

from loguru import logger

from omnitrix_agent.errors import AccessDenied
from omnitrix_agent.tools.paths import resolve_within

_MAX_CONTEXT_FILE_CHARS = 20_000


def _read_context_files(working_directory: str, context_paths: list[str]) -> list[tuple[str, str]]:
    found: list[tuple[str, str]] = []
    for raw in context_paths:
        try:
            path = resolve_within(working_directory, raw)
        except AccessDenied:
            logger.warning(f"Ignoring context file outside the working directory: {raw}")
            continue
        if not path.is_file():
            continue
        try:
            text = path.read_text(encoding="utf-8", errors="replace")
        except OSError as ex:
            logger.warning(f"Could not read context file {path}: {ex}")
            continue
        found.append((raw, text[:_MAX_CONTEXT_FILE_CHARS]))
    return found


def build_system_prompt(working_directory: str | None = None, context_paths: list[str] | None = None) -> str:
    prompt = """\
You are a coding assistant running in the user's terminal. You can read files, \
write files and list directories to help the user with their tasks.

When the user asks you to do something, use the available tools to accomplish it. \
Think step by step about what tools you need to use, then use them.

If a tool call fails, read the error message carefully and try a different approach.

Be concise in your responses. When you've completed a task, briefly summarize what you did."""

    if working_directory:
        prompt += f"""

The working directory is: {Path(working_directory)}
All file paths are resolved relative to this directory, and tools refuse paths \
that lead outside of it. When the user references a file by name, pass the \
relative path to the tool."""

        for name, text in _read_context_files(working_directory, context_paths or []):
            prompt += f"\n\n# Project context from {name}\n\n{text}"

    return prompt
