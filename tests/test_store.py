"""Tests for the message stores and deduplication."""

import sqlite3

import pytest

from streamchat.store.base import dedupe_messages
from streamchat.store.memory import InMemoryMessageStore
from streamchat.store.sqlite import SqliteMessageStore
from streamchat.types import Message


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        yield InMemoryMessageStore()
    else:
        s = SqliteMessageStore(str(tmp_path / "chats.db"))
        yield s
        s.close()


class TestDedupe:
    def test_latest_update_wins(self):
        old = Message(id="m1", chat_id="c", role="assistant", content="old",
                      created_at=1.0, updated_at=2.0)
        new = Message(id="m1", chat_id="c", role="assistant", content="new",
                      created_at=1.0, updated_at=3.0)
        assert [m.content for m in dedupe_messages([new, old])] == ["new"]

    def test_tie_keeps_last_seen(self):
        a = Message(id="m1", chat_id="c", role="assistant", content="a",
                    created_at=1.0, updated_at=2.0)
        b = Message(id="m1", chat_id="c", role="assistant", content="b",
                    created_at=1.0, updated_at=2.0)
        assert dedupe_messages([a, b])[0].content == "b"

    def test_sorted_by_creation(self):
        late = Message(id="m2", chat_id="c", role="assistant", created_at=5.0, updated_at=5.0)
        early = Message(id="m1", chat_id="c", role="user", created_at=1.0, updated_at=9.0)
        assert [m.id for m in dedupe_messages([late, early])] == ["m1", "m2"]


class TestMessageStore:
    @pytest.mark.asyncio
    async def test_create_and_get_chat(self, store):
        chat = await store.create_chat("openai/gpt-4o-mini", "Greetings")
        await store.append_message(chat.id, "user", "Hello")

        loaded = await store.get_chat(chat.id)

        assert loaded.model_id == "openai/gpt-4o-mini"
        assert loaded.title == "Greetings"
        assert [m.content for m in loaded.messages] == ["Hello"]

    @pytest.mark.asyncio
    async def test_unknown_chat(self, store):
        assert await store.get_chat("missing") is None

    @pytest.mark.asyncio
    async def test_append_and_update(self, store):
        chat = await store.create_chat("m")
        msg = await store.append_message(chat.id, "assistant", "", is_complete=False)

        await store.update_message_content(msg.id, "Hi", False, generation_id="gen-1")
        updated = await store.update_message_content(msg.id, "Hi there", True, reasoning="r")

        assert updated.content == "Hi there"
        assert updated.is_complete
        assert updated.generation_id == "gen-1"
        assert updated.reasoning == "r"

    @pytest.mark.asyncio
    async def test_update_unknown_message(self, store):
        with pytest.raises(KeyError):
            await store.update_message_content("missing", "x", True)

    @pytest.mark.asyncio
    async def test_list_incomplete(self, store):
        chat_a = await store.create_chat("m")
        chat_b = await store.create_chat("m")
        await store.append_message(chat_a.id, "user", "q")
        pending_a = await store.append_message(chat_a.id, "assistant", "", is_complete=False)
        pending_b = await store.append_message(chat_b.id, "assistant", "x", is_complete=False)
        await store.append_message(chat_b.id, "assistant", "done")

        assert [m.id for m in await store.list_incomplete_messages(chat_a.id)] == [pending_a.id]
        assert {m.id for m in await store.list_incomplete_messages()} == {pending_a.id, pending_b.id}

    @pytest.mark.asyncio
    async def test_reset_message(self, store):
        chat = await store.create_chat("m")
        msg = await store.append_message(chat.id, "assistant", "", is_complete=False)
        await store.update_message_content(msg.id, "stale", True, generation_id="gen-1")

        reset = await store.reset_message(msg.id)

        assert reset.content == ""
        assert reset.generation_id is None
        assert not reset.is_complete

    @pytest.mark.asyncio
    async def test_annotations(self, store):
        chat = await store.create_chat("m")
        msg = await store.append_message(chat.id, "assistant", "", is_complete=False)
        cites = [{"type": "url_citation",
                  "url_citation": {"url": "https://example.com", "title": "Example"}}]

        await store.update_message_content(msg.id, "See [1]", False, annotations=cites)
        kept = await store.update_message_content(msg.id, "See [1].", True)

        assert kept.annotations == cites
        assert kept.url_citations() == [{"url": "https://example.com", "title": "Example"}]
        assert (await store.reset_message(msg.id)).annotations == []

    @pytest.mark.asyncio
    async def test_returned_messages_are_copies(self, store):
        chat = await store.create_chat("m")
        msg = await store.append_message(chat.id, "user", "original")
        msg.content = "mutated"
        assert (await store.get_message(msg.id)).content == "original"


class TestSqlitePersistence:
    @pytest.mark.asyncio
    async def test_survives_reopen(self, tmp_path):
        path = str(tmp_path / "chats.db")
        first = SqliteMessageStore(path)
        chat = await first.create_chat("m")
        msg = await first.append_message(chat.id, "assistant", "", is_complete=False)
        await first.update_message_content(msg.id, "partial", False, generation_id="gen-1")
        first.close()

        second = SqliteMessageStore(path)
        pending = await second.list_incomplete_messages()
        second.close()

        assert len(pending) == 1
        assert pending[0].content == "partial"
        assert pending[0].generation_id == "gen-1"

    @pytest.mark.asyncio
    async def test_in_memory_database(self):
        store = SqliteMessageStore(":memory:")
        chat = await store.create_chat("m")
        await store.append_message(chat.id, "user", "hi")
        assert len(await store.list_messages(chat.id)) == 1
        store.close()

    @pytest.mark.asyncio
    async def test_adds_annotations_column_to_old_database(self, tmp_path):
        path = str(tmp_path / "old.db")
        conn = sqlite3.connect(path)
        conn.executescript("""
            CREATE TABLE messages (
                id TEXT PRIMARY KEY,
                chat_id TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL DEFAULT '',
                is_complete INTEGER NOT NULL DEFAULT 1,
                generation_id TEXT,
                reasoning TEXT NOT NULL DEFAULT '',
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            );
            INSERT INTO messages VALUES ('m1', 'c1', 'assistant', 'old', 1, NULL, '', 1.0, 1.0);
        """)
        conn.close()

        store = SqliteMessageStore(path)
        msg = await store.get_message("m1")
        store.close()

        assert msg.content == "old"
        assert msg.annotations == []
