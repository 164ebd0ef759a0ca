import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from loguru import logger

LOG_FILENAME = "omnitrix.log"

_CONSOLE_FORMAT = (
    "<level>{level:<8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
_FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {name}:{function}:{line} - {message}"

_SINK_KEYS: dict[str, frozenset[str]] = {
    "console": frozenset({"type", "level"}),
    "file": frozenset({"type", "level", "path", "rotation", "retention"}),
}


@dataclass(frozen=True)
class LogSink:
    kind: str
    level: str
    path: Path | None = None
    rotation: str = "10 MB"
    retention: int | str = 3

    def describe(self) -> str:
        if self.kind == "file":
            return f"file ({self.path}, {self.level})"
        return f"console (stderr, {self.level})"


def _normalize_level(value: Any, fallback: str, problems: list[str]) -> str:
    name = str(value).upper()
    try:
        logger.level(name)
    except ValueError:
        problems.append(f"Unknown log level {value!r}, using {fallback}")
        return fallback
    return name


def parse_log_consumers(
    consumers: list[dict[str, Any]] | None,
    *,
    level: str = "INFO",
    data_dir: str | None = None,
    debug: bool = False,
) -> tuple[list[LogSink], list[str]]:
    """Turn ``log_consumers`` config entries into sinks.

    With no entries configured the agent logs to the console and to
    ``<data_dir>/omnitrix.log``. Relative file paths are placed under
    ``data_dir``. ``debug`` forces every sink to DEBUG. Entries that cannot be
    used are returned as problem messages rather than raised.
    """
    if consumers is None:
        consumers = [{"type": "console"}, {"type": "file"}]

    problems: list[str] = []
    default_level = _normalize_level(level, "INFO", problems)
    base_dir = Path(data_dir) if data_dir else Path.cwd()
    sinks: list[LogSink] = []

    for entry in consumers:
        kind = entry.get("type", "")
        allowed = _SINK_KEYS.get(kind)
        if allowed is None:
            problems.append(f"Unknown log consumer type: {kind!r}")
            continue
        unknown = sorted(set(entry) - allowed)
        if unknown:
            problems.append(f"Ignoring unsupported keys for {kind} log consumer: {', '.join(unknown)}")

        sink_level = "DEBUG" if debug else _normalize_level(entry.get("level", default_level), default_level, problems)
        if kind == "console":
            sinks.append(LogSink(kind="console", level=sink_level))
            continue

        path = Path(entry.get("path", LOG_FILENAME)).expanduser()
        if not path.is_absolute():
            path = base_dir / path
        sinks.append(
            LogSink(
                kind="file",
                level=sink_level,
                path=path,
                rotation=str(entry.get("rotation", "10 MB")),
                retention=entry.get("retention", 3),
            )
        )

    return sinks, problems


def _register(sink: LogSink) -> None:
    if sink.kind == "console":
        logger.add(sys.stderr, level=sink.level, format=_CONSOLE_FORMAT)
        return
    sink.path.parent.mkdir(parents=True, exist_ok=True)
    logger.add(
        str(sink.path),
        level=sink.level,
        format=_FILE_FORMAT,
        rotation=sink.rotation,
        retention=sink.retention,
    )


def setup_logging(
    level: str = "INFO",
    consumers: list[dict[str, Any]] | None = None,
    *,
    data_dir: str | None = None,
    debug: bool = False,
) -> list[str]:
    """Replace loguru's default handler with the configured sinks. Returns their descriptions."""
    sinks, problems = parse_log_consumers(consumers, level=level, data_dir=data_dir, debug=debug)

    logger.remove()
    for sink in sinks:
        _register(sink)

    # Problems are logged only after the new sinks exist.
    for problem in problems:
        logger.warning(problem)

    return [sink.describe() for sink in sinks]
