"""Persistence interface consumed by the engine."""

from __future__ import annotations

import uuid
from typing import Any, Iterable, Protocol

from streamchat.types import ChatSession, Message


class MessageStore(Protocol):
    """Message/chat CRUD the engine relies on.

    ``update_message_content`` leaves ``generation_id``, ``reasoning`` and
    ``annotations`` untouched when they are ``None``.
    """

    async def create_chat(self, model_id: str, title: str = "") -> ChatSession:
        ...

    async def get_chat(self, chat_id: str) -> ChatSession | None:
        ...

    async def append_message(
        self,
        chat_id: str,
        role: str,
        content: str,
        is_complete: bool = True,
    ) -> Message:
        ...

    async def update_message_content(
        self,
        message_id: str,
        content: str,
        is_complete: bool,
        generation_id: str | None = None,
        reasoning: str | None = None,
        annotations: list[dict[str, Any]] | None = None,
    ) -> Message:
        ...

    async def reset_message(self, message_id: str) -> Message:
        """Empty a message and clear its generation for a fresh attempt."""
        ...

    async def get_message(self, message_id: str) -> Message | None:
        ...

    async def list_messages(self, chat_id: str) -> list[Message]:
        ...

    async def list_incomplete_messages(self, chat_id: str | None = None) -> list[Message]:
        """Incomplete assistant messages of one chat, or of all chats."""
        ...


def new_id() -> str:
    return uuid.uuid4().hex


def dedupe_messages(messages: Iterable[Message]) -> list[Message]:
    """Collapse duplicate ids, keeping the copy with the latest ``updated_at``.

    Ties keep the copy seen last.  Output is in creation order.
    """
    latest: dict[str, Message] = {}
    for msg in messages:
        current = latest.get(msg.id)
        if current is None or msg.updated_at >= current.updated_at:
            latest[msg.id] = msg
    return sorted(latest.values(), key=lambda m: m.created_at)
