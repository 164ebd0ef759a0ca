import json
from collections.abc import AsyncIterator
from typing import Any

import httpx
from loguru import logger

from omnitrix_agent.models import (
    ChatResponse,
    Message,
    StreamChunk,
    TokenUsage,
    ToolCall,
    ToolCallFragment,
    ToolSpec,
)
from omnitrix_agent.providers.common import (
    DEFAULT_TIMEOUT,
    decode_json_body,
    ensure_success,
    new_tool_call_id,
    parse_arguments,
    to_function_tools,
    transport_errors,
)

DEFAULT_BASE_URL = "http://localhost:11434"


def _to_ollama_messages(messages: list[Message]) -> list[dict]:
    out: list[dict] = []
    for msg in messages:
        ollama_msg: dict[str, Any] = {"role": msg.role, "content": msg.content}
        if msg.tool_calls:
            ollama_msg["tool_calls"] = [
                {"function": {"name": tc.name, "arguments": tc.arguments}}
                for tc in msg.tool_calls
            ]
        if msg.tool_call_id:
            ollama_msg["tool_call_id"] = msg.tool_call_id
        out.append(ollama_msg)
    return out


def _parse_usage(data: dict) -> TokenUsage:
    return TokenUsage(
        prompt_tokens=int(data.get("prompt_eval_count") or 0),
        completion_tokens=int(data.get("eval_count") or 0),
    )


def _parse_tool_calls(message: dict) -> list[ToolCall]:
    calls = []
    for tc in message.get("tool_calls") or []:
        function = tc.get("function") or {}
        calls.append(
            ToolCall(
                id=tc.get("id") or new_tool_call_id(),
                name=function.get("name", ""),
                arguments=parse_arguments(function.get("arguments")),
            )
        )
    return calls


class OllamaProvider:
    """Local models served by Ollama's /api/chat endpoint."""

    def __init__(
        self,
        base_url: str,
        model: str,
        *,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._client = httpx.AsyncClient(
            base_url=(base_url or DEFAULT_BASE_URL).rstrip("/"),
            headers={"Content-Type": "application/json"},
            timeout=DEFAULT_TIMEOUT,
            transport=transport,
        )

    @property
    def name(self) -> str:
        return "ollama"

    @property
    def model_id(self) -> str:
        return self._model

    async def aclose(self) -> None:
        await self._client.aclose()

    def _build_request(self, messages: list[Message], tools: list[ToolSpec], *, stream: bool) -> dict:
        payload: dict[str, Any] = {
            "model": self._model,
            "messages": _to_ollama_messages(messages),
            "stream": stream,
            "options": {"temperature": self._temperature},
        }
        if self._max_tokens:
            payload["options"]["num_predict"] = self._max_tokens
        if tools:
            payload["tools"] = to_function_tools(tools)
        logger.debug(
            f"API request: provider=ollama, model={self._model}, "
            f"messages={len(messages)}, tools={len(tools)}, stream={stream}"
        )
        return payload

    async def chat(self, messages: list[Message], tools: list[ToolSpec]) -> ChatResponse:
        payload = self._build_request(messages, tools, stream=False)
        with transport_errors("ollama"):
            response = await self._client.post("/api/chat", json=payload)
        await ensure_success("ollama", response)
        data = decode_json_body("ollama", response)

        message = data.get("message") or {}
        tool_calls = _parse_tool_calls(message)
        usage = _parse_usage(data)
        finish_reason = "tool_calls" if tool_calls else (data.get("done_reason") or "stop")
        logger.debug(
            f"API response: finish_reason={finish_reason}, "
            f"prompt_tokens={usage.prompt_tokens}, completion_tokens={usage.completion_tokens}, "
            f"tool_calls={len(tool_calls)}"
        )
        return ChatResponse(
            id=data.get("created_at", ""),
            model=data.get("model", self._model),
            content=message.get("content") or "",
            tool_calls=tool_calls,
            finish_reason=finish_reason,
            usage=usage,
        )

    async def stream_chat(self, messages: list[Message], tools: list[ToolSpec]) -> AsyncIterator[StreamChunk]:
        """Stream newline-delimited JSON objects.

        Unlike the OpenAI backend, a line that fails to parse ends the stream with
        an ``[Error parsing response: ...]`` delta instead of being skipped.
        """
        payload = self._build_request(messages, tools, stream=True)
        tool_index = 0
        with transport_errors("ollama"):
            async with self._client.stream("POST", "/api/chat", json=payload) as response:
                await ensure_success("ollama", response)
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue

                    try:
                        frame = json.loads(line)
                        if not isinstance(frame, dict):
                            raise ValueError(f"expected an object, got {type(frame).__name__}")
                    except ValueError as ex:
                        logger.warning(f"Malformed ollama stream line: {ex}: {line[:200]}")
                        yield StreamChunk(
                            delta=f"[Error parsing response: {ex}]",
                            finish_reason="error",
                            done=True,
                            error=str(ex),
                        )
                        return

                    if frame.get("error"):
                        detail = str(frame["error"])
                        yield StreamChunk(
                            delta=f"[Stream error: {detail}]",
                            finish_reason="error",
                            done=True,
                            error=detail,
                        )
                        return

                    message = frame.get("message") or {}
                    fragments = []
                    for call in _parse_tool_calls(message):
                        fragments.append(
                            ToolCallFragment(
                                index=tool_index,
                                id=call.id,
                                name=call.name,
                                arguments_delta=json.dumps(call.arguments),
                            )
                        )
                        tool_index += 1

                    if frame.get("done"):
                        usage = _parse_usage(frame)
                        finish_reason = "tool_calls" if tool_index else (frame.get("done_reason") or "stop")
                        logger.debug(
                            f"API response: finish_reason={finish_reason}, "
                            f"prompt_tokens={usage.prompt_tokens}, completion_tokens={usage.completion_tokens}"
                        )
                        yield StreamChunk(
                            delta=message.get("content") or "",
                            tool_call_fragments=fragments,
                            finish_reason=finish_reason,
                            usage=usage,
                            done=True,
                        )
                        return

                    yield StreamChunk(delta=message.get("content") or "", tool_call_fragments=fragments)

        # Body ended without a done object.
        yield StreamChunk(done=True)
