"""Persistence collaborators for streamchat."""

from streamchat.store.base import MessageStore, dedupe_messages
from streamchat.store.memory import InMemoryMessageStore
from streamchat.store.sqlite import SqliteMessageStore

__all__ = [
    "InMemoryMessageStore",
    "MessageStore",
    "SqliteMessageStore",
    "dedupe_messages",
]
