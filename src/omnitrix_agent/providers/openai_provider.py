import json
from collections.abc import AsyncIterator
from typing import Any

import httpx
from loguru import logger

from omnitrix_agent.errors import ProtocolError
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

DEFAULT_BASE_URL = "https://api.openai.com/v1"

_SSE_DATA_PREFIX = "data:"
_SSE_DONE = "[DONE]"


def _to_openai_messages(messages: list[Message]) -> list[dict]:
    """Convert transcript messages to OpenAI chat format."""
    out: list[dict] = []
    for msg in messages:
        oai_msg: dict[str, Any] = {"role": msg.role}
        # Assistant turns that only carry tool calls must send null content.
        oai_msg["content"] = msg.content if msg.content or not msg.tool_calls else None
        if msg.tool_calls:
            oai_msg["tool_calls"] = [
                {
                    "id": tc.id,
                    "type": "function",
                    "function": {
                        "name": tc.name,
                        "arguments": json.dumps(tc.arguments),
                    },
                }
                for tc in msg.tool_calls
            ]
        if msg.tool_call_id:
            oai_msg["tool_call_id"] = msg.tool_call_id
        out.append(oai_msg)
    return out


def _parse_usage(raw: dict | None) -> TokenUsage:
    if not raw:
        return TokenUsage()
    return TokenUsage(
        prompt_tokens=int(raw.get("prompt_tokens") or 0),
        completion_tokens=int(raw.get("completion_tokens") or 0),
    )


class OpenAIProvider:
    def __init__(
        self,
        api_key: str,
        model: str,
        *,
        base_url: str | None = None,
        temperature: float = 0.7,
        max_tokens: int = 4096,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens
        self._client = httpx.AsyncClient(
            base_url=(base_url or DEFAULT_BASE_URL).rstrip("/"),
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=DEFAULT_TIMEOUT,
            transport=transport,
        )

    @property
    def name(self) -> str:
        return "openai"

    @property
    def model_id(self) -> str:
        return self._model

    async def aclose(self) -> None:
        await self._client.aclose()

    def _build_request(self, messages: list[Message], tools: list[ToolSpec], *, stream: bool) -> dict:
        payload: dict[str, Any] = {
            "model": self._model,
            "messages": _to_openai_messages(messages),
            "temperature": self._temperature,
            "max_tokens": self._max_tokens,
            "stream": stream,
        }
        if tools:
            payload["tools"] = to_function_tools(tools)
        if stream:
            payload["stream_options"] = {"include_usage": True}
        logger.debug(
            f"API request: provider=openai, model={self._model}, "
            f"messages={len(messages)}, tools={len(tools)}, stream={stream}"
        )
        return payload

    async def chat(self, messages: list[Message], tools: list[ToolSpec]) -> ChatResponse:
        payload = self._build_request(messages, tools, stream=False)
        with transport_errors("openai"):
            response = await self._client.post("/chat/completions", json=payload)
        await ensure_success("openai", response)
        data = decode_json_body("openai", response)

        choices = data.get("choices") or []
        if not choices:
            raise ProtocolError("no choices in openai response")

        choice = choices[0]
        message = choice.get("message") or {}
        tool_calls = [
            ToolCall(
                id=tc.get("id") or new_tool_call_id(),
                name=(tc.get("function") or {}).get("name", ""),
                arguments=parse_arguments((tc.get("function") or {}).get("arguments")),
            )
            for tc in message.get("tool_calls") or []
        ]
        usage = _parse_usage(data.get("usage"))
        logger.debug(
            f"API response: finish_reason={choice.get('finish_reason')}, "
            f"prompt_tokens={usage.prompt_tokens}, completion_tokens={usage.completion_tokens}, "
            f"tool_calls={len(tool_calls)}"
        )
        return ChatResponse(
            id=data.get("id", ""),
            model=data.get("model", self._model),
            content=message.get("content") or "",
            tool_calls=tool_calls,
            finish_reason=choice.get("finish_reason") or "stop",
            usage=usage,
        )

    async def stream_chat(self, messages: list[Message], tools: list[ToolSpec]) -> AsyncIterator[StreamChunk]:
        """Stream over server-sent events. Malformed frames are skipped; an error payload ends the stream."""
        payload = self._build_request(messages, tools, stream=True)
        with transport_errors("openai"):
            async with self._client.stream("POST", "/chat/completions", json=payload) as response:
                await ensure_success("openai", response)
                async for line in response.aiter_lines():
                    if not line.startswith(_SSE_DATA_PREFIX):
                        continue
                    data = line[len(_SSE_DATA_PREFIX):].strip()

                    if data == _SSE_DONE:
                        yield StreamChunk(done=True)
                        return

                    try:
                        frame = json.loads(data)
                    except json.JSONDecodeError as ex:
                        logger.warning(f"Skipping malformed openai stream frame: {ex}: {data[:200]}")
                        continue
                    if not isinstance(frame, dict):
                        logger.warning(f"Skipping unexpected openai stream frame: {data[:200]}")
                        continue

                    if frame.get("error"):
                        error = frame["error"]
                        detail = error.get("message", str(error)) if isinstance(error, dict) else str(error)
                        yield StreamChunk(
                            delta=f"[Stream error: {detail}]",
                            finish_reason="error",
                            done=True,
                            error=detail,
                        )
                        return

                    chunk = self._parse_frame(frame)
                    if chunk is not None:
                        yield chunk

        # Body ended without the [DONE] sentinel.
        yield StreamChunk(done=True)

    @staticmethod
    def _parse_frame(frame: dict) -> StreamChunk | None:
        usage = _parse_usage(frame.get("usage")) if frame.get("usage") else None
        choices = frame.get("choices") or []
        if not choices:
            return StreamChunk(usage=usage) if usage is not None else None

        choice = choices[0]
        delta = choice.get("delta") or {}
        fragments = []
        for tc in delta.get("tool_calls") or []:
            function = tc.get("function") or {}
            fragments.append(
                ToolCallFragment(
                    index=int(tc.get("index", 0)),
                    id=tc.get("id") or "",
                    name=function.get("name") or "",
                    arguments_delta=function.get("arguments") or "",
                )
            )
        return StreamChunk(
            delta=delta.get("content") or "",
            tool_call_fragments=fragments,
            finish_reason=choice.get("finish_reason"),
            usage=usage,
        )
