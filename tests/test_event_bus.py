"""Tests for the async EventBus."""

import pytest

from streamchat.events.bus import EventBus
from streamchat.types import ChatEvent, EventType


@pytest.fixture
def bus():
    return EventBus()


class TestSubscribeAndEmit:
    @pytest.mark.asyncio
    async def test_async_handler(self, bus: EventBus):
        received = []

        async def handler(event: ChatEvent):
            received.append(event)

        bus.subscribe(EventType.MESSAGE_UPDATED, handler)
        ev = ChatEvent(type=EventType.MESSAGE_UPDATED, data={"content": "Hi"})
        await bus.emit(ev)

        assert received == [ev]

    @pytest.mark.asyncio
    async def test_sync_handler(self, bus: EventBus):
        received = []
        bus.subscribe(EventType.RUN_DONE, received.append)
        await bus.emit(ChatEvent(type=EventType.RUN_DONE))
        assert len(received) == 1

    @pytest.mark.asyncio
    async def test_no_cross_delivery(self, bus: EventBus):
        received = []
        bus.subscribe(EventType.RUN_STARTED, received.append)
        await bus.emit(ChatEvent(type=EventType.RUN_FAILED))
        assert received == []

    @pytest.mark.asyncio
    async def test_wildcard(self, bus: EventBus):
        received = []
        bus.subscribe("*", received.append)
        await bus.emit(ChatEvent(type=EventType.RUN_STARTED))
        await bus.emit(ChatEvent(type=EventType.RATE_LIMIT_UPDATED))
        assert [e.type for e in received] == [EventType.RUN_STARTED, EventType.RATE_LIMIT_UPDATED]

    @pytest.mark.asyncio
    async def test_string_event_type(self, bus: EventBus):
        received = []
        bus.subscribe("message.completed", received.append)
        await bus.emit(ChatEvent(type=EventType.MESSAGE_COMPLETED))
        assert len(received) == 1


class TestErrorIsolation:
    @pytest.mark.asyncio
    async def test_failing_handler_does_not_break_others(self, bus: EventBus):
        received = []

        def broken(event):
            raise ValueError("boom")

        bus.subscribe(EventType.RUN_DONE, broken)
        bus.subscribe(EventType.RUN_DONE, received.append)
        await bus.emit(ChatEvent(type=EventType.RUN_DONE))

        assert len(received) == 1


class TestUnsubscribeAndHistory:
    @pytest.mark.asyncio
    async def test_unsubscribe(self, bus: EventBus):
        received = []
        bus.subscribe(EventType.RUN_DONE, received.append)
        bus.unsubscribe(EventType.RUN_DONE, received.append)
        await bus.emit(ChatEvent(type=EventType.RUN_DONE))
        assert received == []

    def test_unsubscribe_unknown_handler(self, bus: EventBus):
        bus.unsubscribe(EventType.RUN_DONE, lambda e: None)

    @pytest.mark.asyncio
    async def test_history_is_bounded(self):
        bus = EventBus(max_history=3)
        for _ in range(5):
            await bus.emit(ChatEvent(type=EventType.MESSAGE_UPDATED))
        assert len(bus.history) == 3

    @pytest.mark.asyncio
    async def test_clear(self, bus: EventBus):
        bus.subscribe("*", lambda e: None)
        await bus.emit(ChatEvent(type=EventType.RUN_DONE))
        bus.clear()
        assert bus.history == []


class TestChatScope:
    @pytest.mark.asyncio
    async def test_scoped_handler_sees_only_its_chat(self, bus: EventBus):
        received = []
        bus.subscribe(EventType.RUN_DONE, received.append, chat_id="c1")

        await bus.emit(ChatEvent(type=EventType.RUN_DONE, data={"chat_id": "c2"}))
        await bus.emit(ChatEvent(type=EventType.RUN_DONE, data={"chat_id": "c1"}))
        await bus.emit(ChatEvent(type=EventType.RUN_DONE))

        assert [e.data["chat_id"] for e in received] == ["c1"]

    @pytest.mark.asyncio
    async def test_subscribe_returns_unsubscriber(self, bus: EventBus):
        received = []
        stop = bus.subscribe("*", received.append, chat_id="c1")
        stop()
        stop()
        await bus.emit(ChatEvent(type=EventType.RUN_DONE, data={"chat_id": "c1"}))
        assert received == []

    @pytest.mark.asyncio
    async def test_events_for_chat(self, bus: EventBus):
        await bus.emit(ChatEvent(type=EventType.RUN_STARTED, data={"chat_id": "c1"}))
        await bus.emit(ChatEvent(type=EventType.RATE_LIMIT_UPDATED, data={}))
        await bus.emit(ChatEvent(type=EventType.RUN_DONE, data={"chat_id": "c1"}))

        assert [e.type for e in bus.events_for("c1")] == [
            EventType.RUN_STARTED, EventType.RUN_DONE,
        ]
