"""SQLite-backed chat and message store."""

from __future__ import annotations

import json
import sqlite3
import time
from pathlib import Path
from typing import Any

from streamchat.store.base import dedupe_messages, new_id
from streamchat.types import ChatSession, Message

_MESSAGE_COLUMNS = (
    "id, chat_id, role, content, is_complete, generation_id, reasoning, "
    "annotations, created_at, updated_at"
)


def _row_to_message(row: tuple) -> Message:
    (msg_id, chat_id, role, content, is_complete, generation_id,
     reasoning, annotations, created_at, updated_at) = row
    return Message(
        id=msg_id,
        chat_id=chat_id,
        role=role,
        content=content,
        is_complete=bool(is_complete),
        generation_id=generation_id,
        reasoning=reasoning or "",
        annotations=json.loads(annotations) if annotations else [],
        created_at=created_at,
        updated_at=updated_at,
    )


class SqliteMessageStore:
    """:class:`~streamchat.store.base.MessageStore` on a local SQLite file.

    Calls are short and synchronous under the async signatures; the engine
    writes at most once per coalesced flush.
    """

    def __init__(self, db_path: str = "~/.streamchat/chats.db") -> None:
        if db_path == ":memory:":
            self.db_path = db_path
        else:
            path = Path(db_path).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
            self.db_path = str(path)
        self._conn = sqlite3.connect(self.db_path)
        self._init_schema()

    def _init_schema(self):
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS chats (
                id TEXT PRIMARY KEY,
                model_id TEXT NOT NULL DEFAULT '',
                title TEXT NOT NULL DEFAULT '',
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            );
            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                chat_id TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL DEFAULT '',
                is_complete INTEGER NOT NULL DEFAULT 1,
                generation_id TEXT,
                reasoning TEXT NOT NULL DEFAULT '',
                annotations TEXT,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_msg_chat ON messages(chat_id, created_at);
            CREATE INDEX IF NOT EXISTS idx_msg_incomplete ON messages(is_complete, role);
        """)
        columns = {row[1] for row in self._conn.execute("PRAGMA table_info(messages)")}
        if "annotations" not in columns:
            # databases created before citations were stored
            self._conn.execute("ALTER TABLE messages ADD COLUMN annotations TEXT")
        self._conn.commit()

    # ----- Chats -----

    async def create_chat(self, model_id: str, title: str = "") -> ChatSession:
        now = time.time()
        chat = ChatSession(id=new_id(), model_id=model_id, title=title,
                           created_at=now, updated_at=now)
        self._conn.execute(
            "INSERT INTO chats (id, model_id, title, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (chat.id, model_id, title, now, now),
        )
        self._conn.commit()
        return chat

    async def get_chat(self, chat_id: str) -> ChatSession | None:
        row = self._conn.execute(
            "SELECT model_id, title, created_at, updated_at FROM chats WHERE id = ?",
            (chat_id,),
        ).fetchone()
        messages = await self.list_messages(chat_id)
        if row is None:
            if not messages:
                return None
            return ChatSession(id=chat_id, messages=messages)
        model_id, title, created_at, updated_at = row
        return ChatSession(
            id=chat_id, model_id=model_id, title=title, messages=messages,
            created_at=created_at, updated_at=updated_at,
        )

    # ----- Messages -----

    async def append_message(
        self,
        chat_id: str,
        role: str,
        content: str,
        is_complete: bool = True,
    ) -> Message:
        msg = Message(id=new_id(), chat_id=chat_id, role=role,
                      content=content, is_complete=is_complete)
        self._conn.execute(
            f"INSERT INTO messages ({_MESSAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (msg.id, chat_id, role, content, int(is_complete), None, "", None,
             msg.created_at, msg.updated_at),
        )
        self._touch_chat(chat_id, msg.updated_at)
        self._conn.commit()
        return msg

    async def update_message_content(
        self,
        message_id: str,
        content: str,
        is_complete: bool,
        generation_id: str | None = None,
        reasoning: str | None = None,
        annotations: list[dict[str, Any]] | None = None,
    ) -> Message:
        now = time.time()
        cur = self._conn.execute(
            "UPDATE messages SET content = ?, is_complete = ?, "
            "generation_id = COALESCE(?, generation_id), "
            "reasoning = COALESCE(?, reasoning), "
            "annotations = COALESCE(?, annotations), updated_at = ? WHERE id = ?",
            (content, int(is_complete), generation_id, reasoning,
             json.dumps(annotations) if annotations is not None else None,
             now, message_id),
        )
        if cur.rowcount == 0:
            raise KeyError(f"Unknown message: {message_id}")
        msg = await self.get_message(message_id)
        self._touch_chat(msg.chat_id, now)
        self._conn.commit()
        return msg

    async def reset_message(self, message_id: str) -> Message:
        cur = self._conn.execute(
            "UPDATE messages SET content = '', reasoning = '', generation_id = NULL, "
            "annotations = NULL, is_complete = 0, updated_at = ? WHERE id = ?",
            (time.time(), message_id),
        )
        if cur.rowcount == 0:
            raise KeyError(f"Unknown message: {message_id}")
        self._conn.commit()
        return await self.get_message(message_id)

    async def get_message(self, message_id: str) -> Message | None:
        row = self._conn.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE id = ?", (message_id,),
        ).fetchone()
        return _row_to_message(row) if row else None

    async def list_messages(self, chat_id: str) -> list[Message]:
        rows = self._conn.execute(
            f"SELECT {_MESSAGE_COLUMNS} FROM messages WHERE chat_id = ? "
            "ORDER BY created_at, rowid",
            (chat_id,),
        ).fetchall()
        return dedupe_messages(_row_to_message(r) for r in rows)

    async def list_incomplete_messages(self, chat_id: str | None = None) -> list[Message]:
        query = (
            f"SELECT {_MESSAGE_COLUMNS} FROM messages "
            "WHERE role = 'assistant' AND is_complete = 0"
        )
        params: tuple = ()
        if chat_id is not None:
            query += " AND chat_id = ?"
            params = (chat_id,)
        rows = self._conn.execute(query + " ORDER BY created_at, rowid", params).fetchall()
        return [_row_to_message(r) for r in rows]

    def _touch_chat(self, chat_id: str, now: float) -> None:
        self._conn.execute("UPDATE chats SET updated_at = ? WHERE id = ?", (now, chat_id))

    def close(self):
        self._conn.close()
