from __future__ import annotations

import difflib
import sqlite3
from uuid import uuid4

from omnitrix_agent.memory.store import MemoryStore, utc_now
from omnitrix_agent.models import FileChange

OPERATIONS = ("create", "modify", "delete")


def unified_diff(file_path: str, old_content: str | None, new_content: str | None) -> str:
    old_lines = (old_content or "").splitlines(keepends=True)
    new_lines = (new_content or "").splitlines(keepends=True)
    return "".join(
        difflib.unified_diff(old_lines, new_lines, fromfile=f"a/{file_path}", tofile=f"b/{file_path}")
    )


def _row_to_change(row: sqlite3.Row) -> FileChange:
    return FileChange(
        id=row["id"],
        session_id=row["session_id"],
        file_path=row["file_path"],
        operation=row["operation"],
        old_content=row["old_content"],
        new_content=row["new_content"],
        diff=row["diff"] or "",
        created_at=row["created_at"],
    )


class FileChangeTracker:
    """Ledger of file edits made during a session, kept for review and undo tooling."""

    def __init__(self, store: MemoryStore):
        self._store = store

    def record(
        self,
        session_id: str,
        file_path: str,
        *,
        old_content: str | None,
        new_content: str | None,
    ) -> FileChange:
        if old_content is None and new_content is None:
            raise ValueError("A file change needs old or new content")
        if old_content is None:
            operation = "create"
        elif new_content is None:
            operation = "delete"
        else:
            operation = "modify"

        change = FileChange(
            id=str(uuid4()),
            session_id=session_id,
            file_path=file_path,
            operation=operation,
            old_content=old_content,
            new_content=new_content,
            diff=unified_diff(file_path, old_content, new_content),
            created_at=utc_now(),
        )
        with self._store.transaction():
            self._store.execute(
                """
                INSERT INTO file_changes (id, session_id, file_path, operation, old_content, new_content, diff, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    change.id,
                    change.session_id,
                    change.file_path,
                    change.operation,
                    change.old_content,
                    change.new_content,
                    change.diff,
                    change.created_at,
                ),
            )
        return change

    def get(self, change_id: str) -> FileChange | None:
        row = self._store.execute("SELECT * FROM file_changes WHERE id = ? LIMIT 1", (change_id,)).fetchone()
        return _row_to_change(row) if row is not None else None

    def list_for_session(self, session_id: str) -> list[FileChange]:
        rows = self._store.execute(
            "SELECT * FROM file_changes WHERE session_id = ? ORDER BY created_at ASC",
            (session_id,),
        ).fetchall()
        return [_row_to_change(row) for row in rows]

    def delete_for_session(self, session_id: str) -> None:
        with self._store.transaction():
            self._store.execute("DELETE FROM file_changes WHERE session_id = ?", (session_id,))
