"""Shared fakes for the streamchat tests."""

from __future__ import annotations

import asyncio

import pytest

from streamchat.types import GenerationStatus, StreamChunk


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class Hang:
    """Script step that blocks until the stream is cancelled."""


HANG = Hang()


def chunk(
    content: str | None = None,
    gen: str | None = None,
    finish: str | None = None,
    reasoning: str | None = None,
) -> StreamChunk:
    return StreamChunk(
        delta_content=content,
        delta_reasoning=reasoning,
        generation_id=gen,
        finish_reason=finish,
    )


class FakeTransport:
    """Scripted provider transport.

    Each call to ``stream_completion`` consumes the next script: a list of
    ``StreamChunk`` items, exceptions (raised at that point) and ``HANG``.
    Status lookups wait for ``status_gate`` when one is given.
    """

    def __init__(
        self,
        scripts: list[list] | None = None,
        statuses: dict[str, GenerationStatus | Exception] | None = None,
        status_gate: asyncio.Event | None = None,
    ) -> None:
        self.scripts = list(scripts or [])
        self.statuses = dict(statuses or {})
        self.status_gate = status_gate
        self.looking_up = asyncio.Event()
        self.payloads: list[dict] = []
        self.api_keys: list[str] = []
        self.status_calls: list[str] = []
        self.closed_streams = 0
        self.hanging = asyncio.Event()

    async def stream_completion(self, payload, api_key):
        self.payloads.append(payload)
        self.api_keys.append(api_key)
        script = self.scripts.pop(0) if self.scripts else []
        try:
            for item in script:
                if isinstance(item, Hang):
                    self.hanging.set()
                    await asyncio.Event().wait()
                elif isinstance(item, BaseException):
                    raise item
                else:
                    yield item
        finally:
            self.closed_streams += 1

    async def get_generation_status(self, generation_id, api_key):
        self.status_calls.append(generation_id)
        self.looking_up.set()
        if self.status_gate is not None:
            await self.status_gate.wait()
        status = self.statuses.get(generation_id, GenerationStatus())
        if isinstance(status, Exception):
            raise status
        return status


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
