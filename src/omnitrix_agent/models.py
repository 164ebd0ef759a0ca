from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

ROLE_SYSTEM = "system"
ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_TOOL = "tool"

ROLES = frozenset({ROLE_SYSTEM, ROLE_USER, ROLE_ASSISTANT, ROLE_TOOL})


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolCall:
        return cls(id=data["id"], name=data["name"], arguments=dict(data.get("arguments") or {}))


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    input_schema: dict[str, Any]


@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class Message:
    id: str
    session_id: str
    role: str
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str | None = None
    model: str | None = None
    created_at: str = ""
    updated_at: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.role == ROLE_ASSISTANT and not self.tool_calls


@dataclass(frozen=True)
class Session:
    id: str
    title: str
    model: str
    provider: str
    message_count: int
    prompt_tokens: int
    completion_tokens: int
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class FileChange:
    id: str
    session_id: str
    file_path: str
    operation: str
    old_content: str | None
    new_content: str | None
    diff: str
    created_at: str


@dataclass(frozen=True)
class ChatResponse:
    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str = "stop"
    usage: TokenUsage = field(default_factory=TokenUsage)
    model: str = ""
    id: str = ""


@dataclass(frozen=True)
class ToolCallFragment:
    """Part of a tool call as it arrives on a stream. Fragments sharing an index belong together."""

    index: int
    id: str = ""
    name: str = ""
    arguments_delta: str = ""


@dataclass(frozen=True)
class StreamChunk:
    delta: str = ""
    tool_call_fragments: list[ToolCallFragment] = field(default_factory=list)
    finish_reason: str | None = None
    usage: TokenUsage | None = None
    done: bool = False
    error: str | None = None
