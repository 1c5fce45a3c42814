"""Event delivery to UI subscribers.

The engine writes to the store first and emits afterwards, so a handler
that reads the store always sees the state the event describes.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable

from streamchat.types import ChatEvent, EventType

_logger = logging.getLogger(__name__)

ALL_EVENTS = "*"

# Sync or async callable taking a ChatEvent
Handler = Callable[[ChatEvent], Any]


@dataclass(frozen=True)
class _Subscription:
    handler: Handler
    chat_id: str | None = None

    def wants(self, event: ChatEvent) -> bool:
        return self.chat_id is None or event.data.get("chat_id") == self.chat_id


class EventBus:
    """Async fan-out of :class:`ChatEvent` objects.

    Handlers subscribe to one event type (or ``"*"``), optionally scoped
    to a single chat.  Handlers of one event run concurrently; an
    exception in one is logged and does not reach the emitter.
    """

    def __init__(self, max_history: int = 200) -> None:
        self._subs: dict[str, list[_Subscription]] = {}
        self._history: deque[ChatEvent] = deque(maxlen=max_history)

    def subscribe(
        self,
        event_type: EventType | str,
        handler: Handler,
        chat_id: str | None = None,
    ) -> Callable[[], None]:
        """Register *handler*; returns a callable that unregisters it."""
        key = _key(event_type)
        sub = _Subscription(handler, chat_id)
        self._subs.setdefault(key, []).append(sub)

        def _unsubscribe() -> None:
            subs = self._subs.get(key, [])
            if sub in subs:
                subs.remove(sub)

        return _unsubscribe

    def unsubscribe(self, event_type: EventType | str, handler: Handler) -> None:
        """Drop every subscription of *handler* to *event_type*."""
        key = _key(event_type)
        self._subs[key] = [s for s in self._subs.get(key, []) if s.handler != handler]

    async def emit(self, event: ChatEvent) -> None:
        self._history.append(event)
        targets = [
            s.handler
            for s in (*self._subs.get(_key(event.type), ()), *self._subs.get(ALL_EVENTS, ()))
            if s.wants(event)
        ]
        if targets:
            await asyncio.gather(*(_deliver(h, event) for h in targets))

    @property
    def history(self) -> list[ChatEvent]:
        """Most recent events, oldest first."""
        return list(self._history)

    def events_for(self, chat_id: str) -> list[ChatEvent]:
        return [e for e in self._history if e.data.get("chat_id") == chat_id]

    def clear(self) -> None:
        self._subs.clear()
        self._history.clear()


def _key(event_type: EventType | str) -> str:
    return event_type.value if isinstance(event_type, EventType) else str(event_type)


async def _deliver(handler: Handler, event: ChatEvent) -> None:
    try:
        result = handler(event)
        if inspect.isawaitable(result):
            await result
    except Exception:
        _logger.exception("Event handler %r failed on %s", handler, event.type.value)
