from __future__ import annotations

from pathlib import Path

from omnitrix_agent.errors import AccessDenied


def resolve_within(working_root: str | Path, raw_path: str) -> Path:
    """Resolve ``raw_path`` against the working root and refuse anything outside it.

    Symlinks are resolved on both sides before comparing, so a link inside the
    root that points elsewhere is rejected. The comparison is by path
    components, which keeps ``/work`` from matching ``/workspace``.
    """
    root = Path(working_root).resolve()
    candidate = Path(raw_path).expanduser()
    if not candidate.is_absolute():
        candidate = root / candidate
    resolved = candidate.resolve()

    if resolved != root and not resolved.is_relative_to(root):
        raise AccessDenied(f"access denied: {raw_path} is outside the working directory")
    return resolved


def display_path(working_root: str | Path, resolved: Path) -> str:
    return resolved.relative_to(Path(working_root).resolve()).as_posix()
