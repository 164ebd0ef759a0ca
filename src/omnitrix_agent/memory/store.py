from __future__ import annotations

import sqlite3
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from loguru import logger

from omnitrix_agent.errors import PersistenceError

DB_FILENAME = "omnitrix.db"

_PRAGMAS = (
    "PRAGMA foreign_keys = ON",
    "PRAGMA journal_mode = WAL",
    "PRAGMA synchronous = NORMAL",
    "PRAGMA busy_timeout = 5000",
    "PRAGMA temp_store = MEMORY",
)

# (version, script) pairs applied in order; applied versions are recorded in schema_migrations.
_MIGRATIONS: tuple[tuple[str, str], ...] = (
    (
        "001_initial",
        """
        CREATE TABLE IF NOT EXISTS sessions (
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL,
            model TEXT NOT NULL,
            provider TEXT NOT NULL,
            message_count INTEGER NOT NULL DEFAULT 0,
            prompt_tokens INTEGER NOT NULL DEFAULT 0,
            completion_tokens INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS messages (
            id TEXT PRIMARY KEY,
            session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
            seq INTEGER NOT NULL,
            role TEXT NOT NULL CHECK (role IN ('system', 'user', 'assistant', 'tool')),
            content TEXT NOT NULL,
            tool_calls_json TEXT NULL,
            tool_call_id TEXT NULL,
            model TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE(session_id, seq)
        );

        CREATE TABLE IF NOT EXISTS file_changes (
            id TEXT PRIMARY KEY,
            session_id TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
            file_path TEXT NOT NULL,
            operation TEXT NOT NULL CHECK (operation IN ('create', 'modify', 'delete')),
            old_content TEXT NULL,
            new_content TEXT NULL,
            diff TEXT NULL,
            created_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_messages_session_seq
            ON messages(session_id, seq);
        CREATE INDEX IF NOT EXISTS idx_messages_created_at
            ON messages(created_at);
        CREATE INDEX IF NOT EXISTS idx_file_changes_session_id
            ON file_changes(session_id);
        CREATE INDEX IF NOT EXISTS idx_file_changes_file_path
            ON file_changes(file_path);
        """,
    ),
)


def utc_now() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds")


class MemoryStore:
    def __init__(self, db_path: str):
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            for pragma in _PRAGMAS:
                self._conn.execute(pragma)
            self._run_migrations()
        except sqlite3.Error as ex:
            raise PersistenceError(f"failed to open database {self._db_path}: {ex}") from ex

    @classmethod
    def open_in(cls, data_dir: str) -> MemoryStore:
        return cls(str(Path(data_dir) / DB_FILENAME))

    @property
    def path(self) -> Path:
        return self._db_path

    def close(self) -> None:
        self._conn.close()

    def execute(self, query: str, params: tuple[Any, ...] = ()) -> sqlite3.Cursor:
        try:
            return self._conn.execute(query, params)
        except (sqlite3.Error, UnicodeEncodeError) as ex:
            raise PersistenceError(str(ex)) from ex

    def executemany(self, query: str, seq_of_params: list[tuple[Any, ...]]) -> sqlite3.Cursor:
        try:
            return self._conn.executemany(query, seq_of_params)
        except (sqlite3.Error, UnicodeEncodeError) as ex:
            raise PersistenceError(str(ex)) from ex

    def commit(self) -> None:
        self._conn.commit()

    def rollback(self) -> None:
        self._conn.rollback()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Commit everything executed inside the block, or nothing."""
        try:
            yield
            self._conn.commit()
        except BaseException:
            self._conn.rollback()
            raise

    def applied_migrations(self) -> list[str]:
        rows = self.execute("SELECT version FROM schema_migrations ORDER BY version ASC").fetchall()
        return [str(row["version"]) for row in rows]

    def _run_migrations(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version TEXT PRIMARY KEY,
                applied_at TEXT NOT NULL
            )
            """
        )
        self._conn.commit()

        for version, script in _MIGRATIONS:
            row = self._conn.execute(
                "SELECT COUNT(*) AS c FROM schema_migrations WHERE version = ?",
                (version,),
            ).fetchone()
            if int(row["c"]) > 0:
                continue
            logger.debug(f"Applying migration {version} to {self._db_path}")
            self._conn.executescript(script)
            self._conn.execute(
                "INSERT INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now()),
            )
            self._conn.commit()
