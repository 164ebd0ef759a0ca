from __future__ import annotations

import json
import sqlite3
from uuid import uuid4

from loguru import logger

from omnitrix_agent.errors import PersistenceError
from omnitrix_agent.memory.store import MemoryStore, utc_now
from omnitrix_agent.models import ROLE_TOOL, ROLES, Message, Session, TokenUsage, ToolCall

_TITLE_MAX_CHARS = 50


def derive_title(user_text: str) -> str:
    first_line = next((line.strip() for line in user_text.splitlines() if line.strip()), "")
    if not first_line:
        return "New session"
    if len(first_line) <= _TITLE_MAX_CHARS:
        return first_line
    return first_line[: _TITLE_MAX_CHARS - 3] + "..."


def _row_to_session(row: sqlite3.Row) -> Session:
    return Session(
        id=row["id"],
        title=row["title"],
        model=row["model"],
        provider=row["provider"],
        message_count=int(row["message_count"]),
        prompt_tokens=int(row["prompt_tokens"]),
        completion_tokens=int(row["completion_tokens"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_message(row: sqlite3.Row) -> Message:
    tool_calls: list[ToolCall] = []
    if row["tool_calls_json"]:
        tool_calls = [ToolCall.from_dict(tc) for tc in json.loads(row["tool_calls_json"])]
    return Message(
        id=row["id"],
        session_id=row["session_id"],
        role=row["role"],
        content=row["content"],
        tool_calls=tool_calls,
        tool_call_id=row["tool_call_id"],
        model=row["model"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class SessionManager:
    def __init__(self, store: MemoryStore):
        self._store = store

    # -- sessions --

    def get_session(self, session_id: str) -> Session | None:
        row = self._store.execute(
            "SELECT * FROM sessions WHERE id = ? LIMIT 1",
            (session_id,),
        ).fetchone()
        if row is None:
            return None
        return _row_to_session(row)

    def list_sessions(self, *, limit: int = 50, offset: int = 0) -> list[Session]:
        rows = self._store.execute(
            """
            SELECT *
            FROM sessions
            ORDER BY updated_at DESC, created_at DESC
            LIMIT ? OFFSET ?
            """,
            (max(1, limit), max(0, offset)),
        ).fetchall()
        return [_row_to_session(row) for row in rows]

    def count_sessions(self) -> int:
        row = self._store.execute("SELECT COUNT(*) AS c FROM sessions").fetchone()
        return int(row["c"])

    def create_session(
        self,
        session_id: str | None = None,
        *,
        title: str,
        model: str,
        provider: str,
    ) -> Session:
        sid = session_id or str(uuid4())
        now = utc_now()
        with self._store.transaction():
            self._store.execute(
                """
                INSERT INTO sessions (id, title, model, provider, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (sid, title, model, provider, now, now),
            )
        logger.info(f"Created session {sid} ({provider}/{model})")
        return Session(
            id=sid,
            title=title,
            model=model,
            provider=provider,
            message_count=0,
            prompt_tokens=0,
            completion_tokens=0,
            created_at=now,
            updated_at=now,
        )

    def load_or_create(self, session_id: str, *, title: str, model: str, provider: str) -> Session:
        session = self.get_session(session_id)
        if session is not None:
            return session
        return self.create_session(session_id, title=title, model=model, provider=provider)

    def set_session_title(self, session_id: str, title: str) -> None:
        with self._store.transaction():
            cursor = self._store.execute(
                "UPDATE sessions SET title = ?, updated_at = ? WHERE id = ?",
                (title.strip(), utc_now(), session_id),
            )
            if cursor.rowcount == 0:
                raise ValueError(f"Session does not exist: {session_id}")

    def delete_session(self, session_id: str) -> None:
        with self._store.transaction():
            self._store.execute("DELETE FROM sessions WHERE id = ?", (session_id,))

    # -- messages --

    def append_message(
        self,
        session_id: str,
        role: str,
        content: str,
        *,
        tool_calls: list[ToolCall] | None = None,
        tool_call_id: str | None = None,
        model: str | None = None,
        usage: TokenUsage | None = None,
    ) -> Message:
        """Insert a message and fold it into the session counters in one transaction."""
        if role not in ROLES:
            raise ValueError(f"Unknown message role: {role!r}")
        if role == ROLE_TOOL and not tool_call_id:
            raise ValueError("Tool messages require a tool_call_id")

        usage = usage or TokenUsage()
        message_id = str(uuid4())
        now = utc_now()
        tool_calls_json = json.dumps([tc.to_dict() for tc in tool_calls], ensure_ascii=True) if tool_calls else None

        with self._store.transaction():
            row = self._store.execute(
                "SELECT COALESCE(MAX(seq), 0) AS max_seq FROM messages WHERE session_id = ?",
                (session_id,),
            ).fetchone()
            next_seq = int(row["max_seq"]) + 1
            self._store.execute(
                """
                INSERT INTO messages (
                    id, session_id, seq, role, content, tool_calls_json, tool_call_id, model, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (message_id, session_id, next_seq, role, content, tool_calls_json, tool_call_id, model, now, now),
            )
            cursor = self._store.execute(
                """
                UPDATE sessions
                SET message_count = message_count + 1,
                    prompt_tokens = prompt_tokens + ?,
                    completion_tokens = completion_tokens + ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (max(0, usage.prompt_tokens), max(0, usage.completion_tokens), now, session_id),
            )
            if cursor.rowcount == 0:
                raise PersistenceError(f"Session does not exist: {session_id}")

        return Message(
            id=message_id,
            session_id=session_id,
            role=role,
            content=content,
            tool_calls=list(tool_calls or []),
            tool_call_id=tool_call_id,
            model=model,
            created_at=now,
            updated_at=now,
        )

    def get_message(self, message_id: str) -> Message | None:
        row = self._store.execute(
            "SELECT * FROM messages WHERE id = ? LIMIT 1",
            (message_id,),
        ).fetchone()
        if row is None:
            return None
        return _row_to_message(row)

    def load_messages(self, session_id: str) -> list[Message]:
        rows = self._store.execute(
            """
            SELECT *
            FROM messages
            WHERE session_id = ?
            ORDER BY seq ASC
            """,
            (session_id,),
        ).fetchall()
        return [_row_to_message(row) for row in rows]

    def count_messages(self, session_id: str) -> int:
        row = self._store.execute(
            "SELECT COUNT(*) AS c FROM messages WHERE session_id = ?",
            (session_id,),
        ).fetchone()
        return int(row["c"])

    def update_message_content(self, message_id: str, content: str) -> Message:
        with self._store.transaction():
            cursor = self._store.execute(
                "UPDATE messages SET content = ?, updated_at = ? WHERE id = ?",
                (content, utc_now(), message_id),
            )
            if cursor.rowcount == 0:
                raise ValueError(f"Message does not exist: {message_id}")
        message = self.get_message(message_id)
        if message is None:
            raise PersistenceError(f"Message vanished after update: {message_id}")
        return message

    def delete_message(self, message_id: str) -> None:
        with self._store.transaction():
            self._store.execute("DELETE FROM messages WHERE id = ?", (message_id,))
