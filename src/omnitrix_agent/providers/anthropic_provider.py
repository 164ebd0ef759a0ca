from collections.abc import AsyncIterator, Iterator
from contextlib import contextmanager
from typing import Any

import anthropic
from loguru import logger

from omnitrix_agent.errors import TransportError
from omnitrix_agent.models import (
    ROLE_ASSISTANT,
    ROLE_SYSTEM,
    ROLE_TOOL,
    ChatResponse,
    Message,
    StreamChunk,
    TokenUsage,
    ToolCall,
    ToolCallFragment,
    ToolSpec,
)

_STOP_REASON_MAP = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "tool_use": "tool_calls",
    "max_tokens": "length",
}


def _to_anthropic_messages(messages: list[Message]) -> tuple[str, list[dict]]:
    """Split out the system prompt and convert the rest to Anthropic content blocks.

    Consecutive tool results are merged into a single user turn.
    """
    system_parts: list[str] = []
    out: list[dict] = []
    for msg in messages:
        if msg.role == ROLE_SYSTEM:
            system_parts.append(msg.content)
            continue

        if msg.role == ROLE_TOOL:
            block = {"type": "tool_result", "tool_use_id": msg.tool_call_id, "content": msg.content}
            if out and out[-1]["role"] == "user" and isinstance(out[-1]["content"], list):
                out[-1]["content"].append(block)
            else:
                out.append({"role": "user", "content": [block]})
            continue

        if msg.role == ROLE_ASSISTANT:
            content: list[dict] = []
            if msg.content:
                content.append({"type": "text", "text": msg.content})
            for tc in msg.tool_calls:
                content.append({"type": "tool_use", "id": tc.id, "name": tc.name, "input": tc.arguments})
            if not content:
                content.append({"type": "text", "text": ""})
            out.append({"role": "assistant", "content": content})
            continue

        out.append({"role": "user", "content": msg.content})
    return "\n\n".join(p for p in system_parts if p), out


def _map_stop_reason(stop_reason: str | None) -> str:
    if not stop_reason:
        return "stop"
    return _STOP_REASON_MAP.get(stop_reason, stop_reason)


@contextmanager
def _sdk_errors() -> Iterator[None]:
    try:
        yield
    except anthropic.APIStatusError as ex:
        body = ex.response.text if ex.response is not None else str(ex.body)
        logger.error(f"anthropic API error: status={ex.status_code}, body={body[:500]}")
        raise TransportError("anthropic API error", status_code=ex.status_code, body=body) from ex
    except anthropic.APIConnectionError as ex:
        logger.error(f"anthropic request failed: {type(ex).__name__}: {ex}")
        raise TransportError(f"failed to reach anthropic: {type(ex).__name__}: {ex}") from ex


class AnthropicProvider:
    def __init__(
        self,
        api_key: str,
        model: str,
        *,
        base_url: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
    ):
        self._client = anthropic.AsyncAnthropic(api_key=api_key, base_url=base_url)
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens

    @property
    def name(self) -> str:
        return "anthropic"

    @property
    def model_id(self) -> str:
        return self._model

    async def aclose(self) -> None:
        await self._client.close()

    def convert_tools(self, tools: list[ToolSpec]) -> list[dict]:
        return [
            {
                "name": t.name,
                "description": t.description,
                "input_schema": t.input_schema,
            }
            for t in tools
        ]

    def _build_request(self, messages: list[Message], tools: list[ToolSpec]) -> dict:
        system, anthropic_messages = _to_anthropic_messages(messages)
        request: dict[str, Any] = {
            "model": self._model,
            "max_tokens": self._max_tokens,
            "temperature": self._temperature,
            "messages": anthropic_messages,
        }
        if system:
            request["system"] = system
        if tools:
            request["tools"] = self.convert_tools(tools)
        logger.debug(
            f"API request: provider=anthropic, model={self._model}, max_tokens={self._max_tokens}, "
            f"messages={len(anthropic_messages)}, tools={len(tools)}"
        )
        return request

    async def chat(self, messages: list[Message], tools: list[ToolSpec]) -> ChatResponse:
        request = self._build_request(messages, tools)
        with _sdk_errors():
            response = await self._client.messages.create(**request)

        text_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        for block in response.content:
            if block.type == "text":
                text_parts.append(block.text)
            elif block.type == "tool_use":
                tool_calls.append(ToolCall(id=block.id, name=block.name, arguments=dict(block.input or {})))

        usage = TokenUsage(
            prompt_tokens=response.usage.input_tokens,
            completion_tokens=response.usage.output_tokens,
        )
        logger.debug(
            f"API response: stop_reason={response.stop_reason}, "
            f"input_tokens={usage.prompt_tokens}, output_tokens={usage.completion_tokens}"
        )
        return ChatResponse(
            id=getattr(response, "id", ""),
            model=getattr(response, "model", self._model),
            content="".join(text_parts),
            tool_calls=tool_calls,
            finish_reason=_map_stop_reason(response.stop_reason),
            usage=usage,
        )

    async def stream_chat(self, messages: list[Message], tools: list[ToolSpec]) -> AsyncIterator[StreamChunk]:
        """Translate the SDK's raw stream events into chunks.

        Tool-use blocks become fragments keyed by their content block index.
        """
        request = self._build_request(messages, tools)
        prompt_tokens = 0
        completion_tokens = 0
        stop_reason: str | None = None

        with _sdk_errors():
            async with self._client.messages.stream(**request) as stream:
                async for event in stream:
                    if event.type == "message_start":
                        prompt_tokens = event.message.usage.input_tokens
                    elif event.type == "content_block_start":
                        block = event.content_block
                        if block.type == "tool_use":
                            yield StreamChunk(
                                tool_call_fragments=[
                                    ToolCallFragment(index=event.index, id=block.id, name=block.name)
                                ]
                            )
                    elif event.type == "content_block_delta":
                        if event.delta.type == "text_delta":
                            yield StreamChunk(delta=event.delta.text)
                        elif event.delta.type == "input_json_delta":
                            yield StreamChunk(
                                tool_call_fragments=[
                                    ToolCallFragment(index=event.index, arguments_delta=event.delta.partial_json)
                                ]
                            )
                    elif event.type == "message_delta":
                        stop_reason = event.delta.stop_reason or stop_reason
                        completion_tokens = event.usage.output_tokens

        logger.debug(
            f"API response: stop_reason={stop_reason}, "
            f"input_tokens={prompt_tokens}, output_tokens={completion_tokens}"
        )
        yield StreamChunk(
            finish_reason=_map_stop_reason(stop_reason),
            usage=TokenUsage(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
            done=True,
        )
