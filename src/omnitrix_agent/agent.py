from __future__ import annotations

import asyncio

from loguru import logger

from omnitrix_agent.agent_config import AgentConfig
from omnitrix_agent.memory.session_manager import SessionManager, derive_title
from omnitrix_agent.models import ROLE_USER, Message, Session
from omnitrix_agent.provider import LLMProvider
from omnitrix_agent.streaming import DeltaStream
from omnitrix_agent.tool_registry import ToolRegistry
from omnitrix_agent.turn_engine import TurnEngine


class Agent:
    """Entry point for conversations: persists turns and drives the tool loop."""

    def __init__(
        self,
        config: AgentConfig,
        *,
        provider: LLMProvider,
        registry: ToolRegistry,
        sessions: SessionManager,
    ):
        self._provider = provider
        self._sessions = sessions
        self._session_locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._turn_engine = TurnEngine(
            provider=provider,
            registry=registry,
            sessions=sessions,
            system_prompt=config.system_prompt,
            max_iterations=config.max_iterations,
            max_tool_result_chars=config.max_tool_result_chars,
        )

    @property
    def provider(self) -> LLMProvider:
        return self._provider

    async def _acquire(self, session_id: str) -> asyncio.Lock:
        lock = self._session_locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._session_locks[session_id] = lock
        self._lock_users[session_id] = self._lock_users.get(session_id, 0) + 1
        try:
            await lock.acquire()
        except BaseException:
            self._forget_lock(session_id)
            raise
        return lock

    def _release(self, session_id: str, lock: asyncio.Lock) -> None:
        lock.release()
        self._forget_lock(session_id)

    def _forget_lock(self, session_id: str) -> None:
        # Holders and waiters both count; the lock is dropped once nobody needs it.
        remaining = self._lock_users[session_id] - 1
        if remaining:
            self._lock_users[session_id] = remaining
        else:
            del self._lock_users[session_id]
            del self._session_locks[session_id]

    def _begin_turn(self, session_id: str, user_text: str) -> list[Message]:
        self._sessions.load_or_create(
            session_id,
            title=derive_title(user_text),
            model=self._provider.model_id,
            provider=self._provider.name,
        )
        transcript = self._sessions.load_messages(session_id)
        logger.info(f"Loaded {len(transcript)} persisted messages for session {session_id}")
        transcript.append(self._sessions.append_message(session_id, ROLE_USER, user_text))
        return transcript

    async def converse(self, session_id: str, user_text: str) -> str:
        """Run one user turn to completion and return the final assistant text."""
        lock = await self._acquire(session_id)
        try:
            transcript = self._begin_turn(session_id, user_text)
            return await self._turn_engine.run(session_id, transcript)
        finally:
            self._release(session_id, lock)

    async def stream_converse(
        self,
        session_id: str,
        user_text: str,
        *,
        cancel: asyncio.Event | None = None,
    ) -> DeltaStream:
        """Persist the user turn, then stream the reply.

        Errors loading history or saving the user message are raised here. Errors
        after that point are raised from the returned stream once its buffered
        deltas have been read. The session stays locked until the producer finishes.
        """
        lock = await self._acquire(session_id)
        try:
            transcript = self._begin_turn(session_id, user_text)
        except BaseException:
            self._release(session_id, lock)
            raise

        return DeltaStream.start(
            lambda channel: self._turn_engine.run_streaming(session_id, transcript, channel),
            cancel=cancel,
            on_finished=lambda: self._release(session_id, lock),
        )

    def list_sessions(self, *, limit: int = 50, offset: int = 0) -> list[Session]:
        return self._sessions.list_sessions(limit=limit, offset=offset)

    def get_session(self, session_id: str) -> Session | None:
        return self._sessions.get_session(session_id)

    def load_history(self, session_id: str) -> list[Message]:
        return self._sessions.load_messages(session_id)
