from __future__ import annotations

import asyncio
from contextlib import aclosing

from loguru import logger

from omnitrix_agent.errors import IterationLimitExceeded, PersistenceError, ProtocolError, ToolError
from omnitrix_agent.memory.session_manager import SessionManager
from omnitrix_agent.models import (
    ROLE_ASSISTANT,
    ROLE_SYSTEM,
    ROLE_TOOL,
    Message,
    TokenUsage,
    ToolCall,
    ToolSpec,
)
from omnitrix_agent.provider import LLMProvider
from omnitrix_agent.streaming import DeltaChannel, ToolCallAccumulator
from omnitrix_agent.tool_registry import ToolRegistry

TOOL_CANCELLED_RESULT = "Error: tool execution cancelled"


def incomplete_content(partial: str, reason: str) -> str:
    return f"{partial}\n\n[response incomplete: {reason}]"


class TurnEngine:
    def __init__(
        self,
        *,
        provider: LLMProvider,
        registry: ToolRegistry,
        sessions: SessionManager,
        system_prompt: str,
        max_iterations: int,
        max_tool_result_chars: int,
    ) -> None:
        self._provider = provider
        self._registry = registry
        self._sessions = sessions
        self._system_prompt = system_prompt
        self._max_iterations = max_iterations
        self._max_tool_result_chars = max_tool_result_chars

    def _provider_messages(self, transcript: list[Message]) -> list[Message]:
        if not self._system_prompt:
            return list(transcript)
        system = Message(id="", session_id="", role=ROLE_SYSTEM, content=self._system_prompt)
        return [system, *transcript]

    def _append_assistant(
        self,
        session_id: str,
        transcript: list[Message],
        content: str,
        tool_calls: list[ToolCall],
        usage: TokenUsage | None,
        model: str = "",
    ) -> Message:
        message = self._sessions.append_message(
            session_id,
            ROLE_ASSISTANT,
            content,
            tool_calls=tool_calls,
            model=model or self._provider.model_id,
            usage=usage,
        )
        transcript.append(message)
        return message

    async def run(self, session_id: str, transcript: list[Message]) -> str:
        """Drive provider round-trips until a terminal assistant message. Returns its content."""
        tools = self._registry.catalog()
        for iteration in range(1, self._max_iterations + 1):
            logger.debug(f"Session {session_id}: iteration {iteration}/{self._max_iterations}")
            response = await self._provider.chat(self._provider_messages(transcript), tools)
            self._append_assistant(
                session_id, transcript, response.content, response.tool_calls, response.usage, response.model
            )
            if not response.tool_calls:
                return response.content
            await self.execute_tools(session_id, response.tool_calls, transcript)

        logger.error(f"Session {session_id}: exceeded maximum iterations ({self._max_iterations})")
        raise IterationLimitExceeded(self._max_iterations)

    async def run_streaming(self, session_id: str, transcript: list[Message], channel: DeltaChannel) -> None:
        """Streaming counterpart of ``run``: text deltas are sent to ``channel`` as they arrive."""
        tools = self._registry.catalog()
        for iteration in range(1, self._max_iterations + 1):
            logger.debug(f"Session {session_id}: streaming iteration {iteration}/{self._max_iterations}")
            tool_calls = await self._stream_once(session_id, transcript, tools, channel)
            if not tool_calls:
                return
            await self.execute_tools(session_id, tool_calls, transcript)

        logger.error(f"Session {session_id}: exceeded maximum iterations ({self._max_iterations})")
        raise IterationLimitExceeded(self._max_iterations)

    async def _stream_once(
        self,
        session_id: str,
        transcript: list[Message],
        tools: list[ToolSpec],
        channel: DeltaChannel,
    ) -> list[ToolCall]:
        text_parts: list[str] = []
        accumulator = ToolCallAccumulator()
        usage: TokenUsage | None = None

        try:
            stream = self._provider.stream_chat(self._provider_messages(transcript), tools)
            async with aclosing(stream) as chunks:
                async for chunk in chunks:
                    if chunk.usage is not None:
                        usage = chunk.usage
                    if chunk.tool_call_fragments:
                        accumulator.add(chunk.tool_call_fragments)
                    if chunk.error is not None:
                        if chunk.delta:
                            await channel.send(chunk.delta)
                        raise ProtocolError(chunk.error)
                    if chunk.delta:
                        text_parts.append(chunk.delta)
                        await channel.send(chunk.delta)
                    if chunk.done:
                        break
        except asyncio.CancelledError:
            self._persist_incomplete(session_id, transcript, "".join(text_parts), "cancelled", usage)
            raise
        except Exception as ex:
            logger.error(f"Session {session_id}: stream failed: {type(ex).__name__}: {ex}")
            self._persist_incomplete(session_id, transcript, "".join(text_parts), str(ex), usage)
            raise

        tool_calls = accumulator.build()
        self._append_assistant(session_id, transcript, "".join(text_parts), tool_calls, usage)
        return tool_calls

    def _persist_incomplete(
        self,
        session_id: str,
        transcript: list[Message],
        partial: str,
        reason: str,
        usage: TokenUsage | None,
    ) -> None:
        if not partial:
            return
        try:
            self._append_assistant(session_id, transcript, incomplete_content(partial, reason), [], usage)
        except PersistenceError as ex:
            logger.error(f"Session {session_id}: failed to persist incomplete response: {ex}")

    async def execute_tools(self, session_id: str, tool_calls: list[ToolCall], transcript: list[Message]) -> None:
        """Run tool calls one at a time in response order, persisting each result as it completes.

        If cancelled part-way, every unanswered call still gets a result so the
        transcript keeps one tool message per tool call.
        """
        for position, call in enumerate(tool_calls):
            try:
                content = await self._run_tool(call)
            except asyncio.CancelledError:
                logger.warning(f"Session {session_id}: tool execution cancelled at {call.name}")
                for pending in tool_calls[position:]:
                    self._append_tool_result(session_id, transcript, pending, TOOL_CANCELLED_RESULT)
                raise
            self._append_tool_result(session_id, transcript, call, content)

    def _append_tool_result(self, session_id: str, transcript: list[Message], call: ToolCall, content: str) -> None:
        message = self._sessions.append_message(session_id, ROLE_TOOL, content, tool_call_id=call.id)
        transcript.append(message)

    async def _run_tool(self, call: ToolCall) -> str:
        tool = self._registry.get(call.name)
        if tool is None:
            logger.warning(f"Model requested unknown tool {call.name!r}")
            return f'Error: unknown tool "{call.name}"'

        logger.debug(f"Running tool {call.name} ({call.id})")
        try:
            arguments = self._registry.validate(call.name, call.arguments)
            result = await tool.execute(arguments)
        except ToolError as ex:
            logger.warning(f"Tool {call.name} failed: {ex}")
            return f"Error: {ex}"
        except Exception as ex:
            logger.warning(f'Error executing tool "{call.name}": {type(ex).__name__}: {ex}')
            return f'Error executing tool "{call.name}": {ex}'
        return self._truncate_tool_result(result, call.name)

    def _truncate_tool_result(self, result: str, tool_name: str) -> str:
        if self._max_tool_result_chars <= 0 or len(result) <= self._max_tool_result_chars:
            return result

        original_length = len(result)
        truncated = result[: self._max_tool_result_chars]
        message = (
            f"\n\n[OUTPUT TRUNCATED: Showing {self._max_tool_result_chars:,} "
            f"of {original_length:,} characters from {tool_name}]"
        )
        logger.warning(
            f"{tool_name} output truncated from {original_length:,} "
            f"to {self._max_tool_result_chars:,} chars"
        )
        return truncated + message
