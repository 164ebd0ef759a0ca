from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Protocol, runtime_checkable

import httpx

from omnitrix_agent.app_config import ProviderSettings
from omnitrix_agent.models import ChatResponse, Message, StreamChunk, ToolSpec


@runtime_checkable
class LLMProvider(Protocol):
    @property
    def name(self) -> str: ...

    @property
    def model_id(self) -> str: ...

    async def chat(self, messages: list[Message], tools: list[ToolSpec]) -> ChatResponse:
        """Single blocking completion."""
        ...

    def stream_chat(self, messages: list[Message], tools: list[ToolSpec]) -> AsyncIterator[StreamChunk]:
        """Stream a completion. The last chunk yielded has ``done`` set."""
        ...

    async def aclose(self) -> None: ...


SUPPORTED_PROVIDERS = ("ollama", "openai", "anthropic")


def create_provider(
    provider_name: str,
    settings: ProviderSettings,
    model: str,
    *,
    temperature: float = 0.7,
    max_tokens: int = 4096,
    transport: httpx.AsyncBaseTransport | None = None,
) -> LLMProvider:
    """Factory: create an LLMProvider by name."""
    name = provider_name.strip().lower()
    if name == "ollama":
        from omnitrix_agent.providers.ollama_provider import OllamaProvider
        return OllamaProvider(
            settings.base_url,
            model,
            temperature=temperature,
            max_tokens=max_tokens,
            transport=transport,
        )
    if name == "openai":
        from omnitrix_agent.providers.openai_provider import OpenAIProvider
        return OpenAIProvider(
            settings.api_key,
            model,
            base_url=settings.base_url or None,
            temperature=temperature,
            max_tokens=max_tokens,
            transport=transport,
        )
    if name == "anthropic":
        from omnitrix_agent.providers.anthropic_provider import AnthropicProvider
        return AnthropicProvider(
            settings.api_key,
            model,
            base_url=settings.base_url or None,
            temperature=temperature,
            max_tokens=max_tokens,
        )
    raise ValueError(f"Unknown provider: {provider_name!r}. Supported: {', '.join(SUPPORTED_PROVIDERS)}")
