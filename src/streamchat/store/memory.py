"""In-memory message store."""

from __future__ import annotations

import time
from dataclasses import replace
from typing import Any

from streamchat.store.base import dedupe_messages, new_id
from streamchat.types import ChatSession, Message


class InMemoryMessageStore:
    """Dict-backed :class:`~streamchat.store.base.MessageStore`.

    Returns copies so callers never mutate stored state behind the engine's
    back.
    """

    def __init__(self) -> None:
        self._chats: dict[str, ChatSession] = {}
        self._messages: dict[str, Message] = {}

    async def create_chat(self, model_id: str, title: str = "") -> ChatSession:
        chat = ChatSession(id=new_id(), model_id=model_id, title=title)
        self._chats[chat.id] = chat
        return replace(chat, messages=[])

    async def get_chat(self, chat_id: str) -> ChatSession | None:
        chat = self._chats.get(chat_id)
        messages = await self.list_messages(chat_id)
        if chat is None:
            if not messages:
                return None
            chat = ChatSession(id=chat_id)
        return replace(chat, messages=messages)

    async def append_message(
        self,
        chat_id: str,
        role: str,
        content: str,
        is_complete: bool = True,
    ) -> Message:
        msg = Message(
            id=new_id(),
            chat_id=chat_id,
            role=role,
            content=content,
            is_complete=is_complete,
        )
        self._messages[msg.id] = msg
        self._touch_chat(chat_id)
        return replace(msg)

    async def update_message_content(
        self,
        message_id: str,
        content: str,
        is_complete: bool,
        generation_id: str | None = None,
        reasoning: str | None = None,
        annotations: list[dict[str, Any]] | None = None,
    ) -> Message:
        msg = self._require(message_id)
        msg.content = content
        msg.is_complete = is_complete
        if generation_id is not None:
            msg.generation_id = generation_id
        if reasoning is not None:
            msg.reasoning = reasoning
        if annotations is not None:
            msg.annotations = list(annotations)
        msg.updated_at = time.time()
        self._touch_chat(msg.chat_id)
        return replace(msg)

    async def reset_message(self, message_id: str) -> Message:
        msg = self._require(message_id)
        msg.content = ""
        msg.reasoning = ""
        msg.generation_id = None
        msg.annotations = []
        msg.is_complete = False
        msg.updated_at = time.time()
        return replace(msg)

    async def get_message(self, message_id: str) -> Message | None:
        msg = self._messages.get(message_id)
        return replace(msg) if msg else None

    async def list_messages(self, chat_id: str) -> list[Message]:
        return dedupe_messages(
            replace(m) for m in self._messages.values() if m.chat_id == chat_id
        )

    async def list_incomplete_messages(self, chat_id: str | None = None) -> list[Message]:
        return [
            replace(m) for m in sorted(self._messages.values(), key=lambda m: m.created_at)
            if m.role == "assistant"
            and not m.is_complete
            and (chat_id is None or m.chat_id == chat_id)
        ]

    def _require(self, message_id: str) -> Message:
        try:
            return self._messages[message_id]
        except KeyError:
            raise KeyError(f"Unknown message: {message_id}") from None

    def _touch_chat(self, chat_id: str) -> None:
        chat = self._chats.get(chat_id)
        if chat is not None:
            chat.updated_at = time.time()
