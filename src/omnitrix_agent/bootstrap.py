from __future__ import annotations

from dataclasses import dataclass

from loguru import logger

from omnitrix_agent.agent import Agent
from omnitrix_agent.agent_config import AgentConfig
from omnitrix_agent.app_config import AppConfig
from omnitrix_agent.logging_config import setup_logging
from omnitrix_agent.memory import FileChangeTracker, MemoryStore, SessionManager
from omnitrix_agent.provider import LLMProvider, create_provider
from omnitrix_agent.system_prompt import build_system_prompt
from omnitrix_agent.tool_registry import ToolRegistry, get_all


@dataclass
class AppRuntime:
    agent: Agent
    provider: LLMProvider
    registry: ToolRegistry
    memory_store: MemoryStore
    sessions: SessionManager
    file_changes: FileChangeTracker
    log_descriptions: list[str]

    async def aclose(self) -> None:
        await self.provider.aclose()
        self.memory_store.close()


def bootstrap_runtime(app: AppConfig, *, setup_logs: bool = True) -> AppRuntime:
    log_descriptions: list[str] = []
    if setup_logs:
        log_descriptions = setup_logging(
            level=app.log_level, consumers=app.log_consumers, data_dir=app.data_dir, debug=app.debug
        )

    settings = app.provider_settings(app.default_provider)
    if not settings.enabled:
        raise ValueError(f"Provider {app.default_provider!r} is disabled in the configuration")
    provider = create_provider(
        app.default_provider,
        settings,
        app.default_model,
        temperature=app.temperature,
        max_tokens=app.max_tokens,
    )

    memory_store = MemoryStore.open_in(app.data_dir)
    sessions = SessionManager(memory_store)
    registry = ToolRegistry(get_all(app.work_dir))

    agent = Agent(
        AgentConfig(
            max_iterations=app.max_iterations,
            system_prompt=build_system_prompt(app.work_dir, app.context_paths),
            max_tool_result_chars=app.max_tool_result_chars,
        ),
        provider=provider,
        registry=registry,
        sessions=sessions,
    )
    logger.info(
        f"Runtime ready: provider={provider.name}, model={provider.model_id}, "
        f"tools={', '.join(registry.names())}, db={memory_store.path}"
    )

    return AppRuntime(
        agent=agent,
        provider=provider,
        registry=registry,
        memory_store=memory_store,
        sessions=sessions,
        file_changes=FileChangeTracker(memory_store),
        log_descriptions=log_descriptions,
    )
