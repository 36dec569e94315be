from __future__ import annotations

"""Per-user conversation memory.

Each user owns an ordered log of chat turns. Append order is the conversation
timeline; turns are only appended, popped from the tail on rollback, or
cleared all at once. Every operation runs in its own SQLite transaction so it
is atomic for a single user's log.
"""

import logging
import sqlite3
import threading
from typing import List, Literal, Protocol

from pydantic import BaseModel, ConfigDict

from chat.core.errors import StoreError, UserNotFound


logger = logging.getLogger("chatapp.memory")


class ChatTurn(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Literal["user", "assistant"]
    content: str


class ConversationStore(Protocol):
    def get_turns(self, user_id: str) -> List[ChatTurn]:
        ...

    def append_turn(self, user_id: str, turn: ChatTurn) -> None:
        ...

    def remove_last_turn(self, user_id: str) -> None:
        ...

    def clear_turns(self, user_id: str) -> None:
        ...


_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY
);
CREATE TABLE IF NOT EXISTS chat_turns (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    role TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
    content TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_chat_turns_user ON chat_turns(user_id, seq);
"""


class SqliteConversationStore:
    """SQLite-backed ``ConversationStore``.

    One connection is shared across request threads and serialized with a
    lock, which also makes ``:memory:`` databases usable from the API.
    """

    def __init__(self, path: str = "chat.db"):
        self._path = path
        self._lock = threading.Lock()
        try:
            self._conn = sqlite3.connect(path, check_same_thread=False)
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._conn.executescript(_SCHEMA)
        except sqlite3.Error as exc:
            raise StoreError(error=str(exc)) from exc
        logger.info("Conversation store ready: path=%s", path)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def create_user(self, user_id: str) -> None:
        with self._lock:
            self._write(
                "INSERT OR IGNORE INTO users (id) VALUES (?)", (user_id,)
            )

    def has_user(self, user_id: str) -> bool:
        with self._lock:
            return self._user_exists(user_id)

    def get_turns(self, user_id: str) -> List[ChatTurn]:
        with self._lock:
            self._require_user(user_id)
            try:
                rows = self._conn.execute(
                    "SELECT role, content FROM chat_turns WHERE user_id = ? ORDER BY seq",
                    (user_id,),
                ).fetchall()
            except sqlite3.Error as exc:
                raise StoreError(error=str(exc)) from exc
        return [ChatTurn(role=role, content=content) for role, content in rows]

    def append_turn(self, user_id: str, turn: ChatTurn) -> None:
        with self._lock:
            self._require_user(user_id)
            self._write(
                "INSERT INTO chat_turns (user_id, role, content) VALUES (?, ?, ?)",
                (user_id, turn.role, turn.content),
            )

    def remove_last_turn(self, user_id: str) -> None:
        with self._lock:
            self._require_user(user_id)
            self._write(
                "DELETE FROM chat_turns WHERE seq = "
                "(SELECT MAX(seq) FROM chat_turns WHERE user_id = ?)",
                (user_id,),
            )

    def clear_turns(self, user_id: str) -> None:
        with self._lock:
            self._require_user(user_id)
            self._write("DELETE FROM chat_turns WHERE user_id = ?", (user_id,))

    def _user_exists(self, user_id: str) -> bool:
        try:
            row = self._conn.execute(
                "SELECT 1 FROM users WHERE id = ?", (user_id,)
            ).fetchone()
        except sqlite3.Error as exc:
            raise StoreError(error=str(exc)) from exc
        return row is not None

    def _require_user(self, user_id: str) -> None:
        if not self._user_exists(user_id):
            raise UserNotFound()

    def _write(self, sql: str, params: tuple) -> None:
        try:
            with self._conn:
                self._conn.execute(sql, params)
        except sqlite3.Error as exc:
            raise StoreError(error=str(exc)) from exc
