from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path

from loguru import logger

CONFIG_FILENAME = ".omnitrix.json"

DEFAULT_PROVIDER = "ollama"
DEFAULT_MODEL = "deepseek-coder:6.7b"
DEFAULT_BASE_URLS = {
    "ollama": "http://localhost:11434",
    "openai": "https://api.openai.com/v1",
    "anthropic": "https://api.anthropic.com",
}
DEFAULT_CONTEXT_PATHS = [
    ".cursorrules",
    ".github/copilot-instructions.md",
    "omnitrix.md",
]

_API_KEY_ENV_VARS = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
}


@dataclass
class ProviderSettings:
    enabled: bool = True
    base_url: str = ""
    api_key: str = ""
    models: list[str] = field(default_factory=list)


@dataclass
class AppConfig:
    data_dir: str
    work_dir: str
    default_model: str
    default_provider: str
    providers: dict[str, ProviderSettings]
    context_paths: list[str]
    debug: bool
    max_iterations: int
    temperature: float
    max_tokens: int
    max_tool_result_chars: int
    log_level: str
    log_consumers: list | None

    def provider_settings(self, name: str) -> ProviderSettings:
        settings = self.providers.get(name)
        if settings is None:
            return ProviderSettings(base_url=DEFAULT_BASE_URLS.get(name, ""))
        return settings


def expand_home(path: str) -> str:
    if path.startswith("~"):
        return str(Path.home()) + path[1:]
    return path


def _to_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return bool(value)


def load_json_config(work_dir: str) -> dict:
    """Read the project config, then the user config. Returns {} when neither exists."""
    candidates = [
        Path(work_dir) / CONFIG_FILENAME,
        Path.home() / ".config" / "omnitrix" / "config.json",
    ]
    for config_path in candidates:
        if config_path.exists():
            logger.debug(f"Loading config from {config_path}")
            with open(config_path) as f:
                return json.load(f)
    return {}


def _default_providers() -> dict:
    return {
        "ollama": {
            "enabled": True,
            "base_url": DEFAULT_BASE_URLS["ollama"],
            "models": [DEFAULT_MODEL],
        }
    }


def _parse_providers(raw: dict, environ: dict[str, str]) -> dict[str, ProviderSettings]:
    providers: dict[str, ProviderSettings] = {}
    for name, settings in raw.items():
        key = name.strip().lower()
        api_key = str(settings.get("api_key", "") or "")
        if not api_key and key in _API_KEY_ENV_VARS:
            api_key = environ.get(_API_KEY_ENV_VARS[key], "")
        providers[key] = ProviderSettings(
            enabled=_to_bool(settings.get("enabled", True), default=True),
            base_url=str(settings.get("base_url") or DEFAULT_BASE_URLS.get(key, "")),
            api_key=api_key,
            models=list(settings.get("models", [])),
        )
    for key, env_var in _API_KEY_ENV_VARS.items():
        if key not in providers and environ.get(env_var):
            providers[key] = ProviderSettings(base_url=DEFAULT_BASE_URLS[key], api_key=environ[env_var])
    return providers


def parse_app_config(config: dict, work_dir: str, environ: dict[str, str] | None = None) -> AppConfig:
    environ = dict(os.environ) if environ is None else environ
    data_dir = config.get("data_dir") or str(Path.home() / ".local" / "share" / "omnitrix")
    debug = _to_bool(config.get("debug", False), default=False)
    return AppConfig(
        data_dir=expand_home(str(data_dir)),
        work_dir=str(Path(expand_home(str(config.get("work_dir") or work_dir))).resolve()),
        default_model=config.get("default_model", DEFAULT_MODEL),
        default_provider=(config.get("default_provider") or DEFAULT_PROVIDER).strip().lower(),
        providers=_parse_providers(config.get("providers") or _default_providers(), environ),
        context_paths=list(config.get("context_paths", DEFAULT_CONTEXT_PATHS)),
        debug=debug,
        max_iterations=int(config.get("max_iterations", 10)),
        temperature=float(config.get("temperature", 0.7)),
        max_tokens=int(config.get("max_tokens", 4096)),
        max_tool_result_chars=int(config.get("max_tool_result_chars", 40_000)),
        log_level="DEBUG" if debug else config.get("log_level", "INFO"),
        log_consumers=config.get("log_consumers"),
    )


def load_config(work_dir: str) -> AppConfig:
    return parse_app_config(load_json_config(work_dir), work_dir)
