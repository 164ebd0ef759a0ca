from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any
from uuid import uuid4

import httpx
from loguru import logger

from omnitrix_agent.errors import ProtocolError, TransportError
from omnitrix_agent.models import ToolSpec

DEFAULT_TIMEOUT = httpx.Timeout(300.0, connect=10.0)


def to_function_tools(tools: list[ToolSpec]) -> list[dict]:
    """Tool catalog in the function-calling shape shared by OpenAI and Ollama."""
    return [
        {
            "type": "function",
            "function": {
                "name": t.name,
                "description": t.description,
                "parameters": t.input_schema,
            },
        }
        for t in tools
    ]


def new_tool_call_id() -> str:
    return f"call_{uuid4().hex[:24]}"


def parse_arguments(raw: Any) -> dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"Failed to parse tool call arguments: {str(raw)[:200]}")
        return {}
    return parsed if isinstance(parsed, dict) else {}


async def ensure_success(backend: str, response: httpx.Response) -> None:
    if response.is_success:
        return
    await response.aread()
    body = response.text
    logger.error(f"{backend} API error: status={response.status_code}, body={body[:500]}")
    raise TransportError(f"{backend} API error", status_code=response.status_code, body=body)


def decode_json_body(backend: str, response: httpx.Response) -> dict[str, Any]:
    try:
        data = response.json()
    except json.JSONDecodeError as ex:
        raise ProtocolError(f"failed to decode {backend} response: {ex}") from ex
    if not isinstance(data, dict):
        raise ProtocolError(f"unexpected {backend} response: {response.text[:200]}")
    return data


@contextmanager
def transport_errors(backend: str) -> Iterator[None]:
    """Turn connection-level httpx failures into TransportError."""
    try:
        yield
    except httpx.RequestError as ex:
        logger.error(f"{backend} request failed: {type(ex).__name__}: {ex}")
        raise TransportError(f"failed to reach {backend}: {type(ex).__name__}: {ex}") from ex
