"""Chunk coalescing: batch provider chunks into fewer content updates.

Flushing on every chunk makes the UI re-render and re-parse far too often;
flushing rarely makes streaming feel laggy.  The coalescer flushes when a
batch reaches ``max_batch_chunks`` chunks or when ``max_interval`` seconds
have passed since the previous flush, whichever comes first.  It does not
look at the content itself.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from streamchat.types import StreamChunk

_logger = logging.getLogger(__name__)


@dataclass
class CoalescedUpdate:
    """Result of feeding one chunk to the coalescer.

    ``content`` is the batch accumulated since the last flush (when
    ``should_flush`` is true, that batch has just been flushed); ``text``
    is everything received so far, and ``annotations`` every citation so
    far.  ``generation_id`` is set only on the update that first captured
    it.
    """

    content: str
    should_flush: bool
    text: str
    reasoning: str = ""
    generation_id: str | None = None
    annotations: list[dict[str, Any]] = field(default_factory=list)


class ChunkCoalescer:
    """Size/time-bounded debounce over a chunk stream.

    Parameters
    ----------
    max_batch_chunks:
        Flush once this many content-bearing chunks are pending.
    max_interval:
        Flush once this many seconds passed since the last flush.
    clock:
        Monotonic time source in seconds.
    """

    def __init__(
        self,
        max_batch_chunks: int = 2,
        max_interval: float = 0.06,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._max_batch_chunks = max(1, max_batch_chunks)
        self._max_interval = max_interval
        self._clock = clock

        self._text_parts: list[str] = []
        self._reasoning_parts: list[str] = []
        self._annotations: list[dict[str, Any]] = []
        self._pending: list[str] = []
        self._pending_chunks = 0
        self._last_flush = clock()
        self._generation_id: str | None = None
        self._finished = False
        self.flush_count = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def generation_id(self) -> str | None:
        return self._generation_id

    @property
    def text(self) -> str:
        return "".join(self._text_parts)

    @property
    def reasoning(self) -> str:
        return "".join(self._reasoning_parts)

    @property
    def annotations(self) -> list[dict[str, Any]]:
        return list(self._annotations)

    def accept(self, chunk: StreamChunk) -> CoalescedUpdate:
        """Fold *chunk* into the buffer and decide whether to flush."""
        if self._finished:
            raise RuntimeError("accept() called after finish()")

        new_id = None
        if chunk.generation_id and self._generation_id is None:
            self._generation_id = chunk.generation_id
            new_id = chunk.generation_id

        if chunk.delta_content:
            self._text_parts.append(chunk.delta_content)
            self._pending.append(chunk.delta_content)
        if chunk.delta_reasoning:
            self._reasoning_parts.append(chunk.delta_reasoning)
        if chunk.annotations:
            self._annotations.extend(chunk.annotations)
        if chunk.has_delta:
            self._pending_chunks += 1

        now = self._clock()
        should_flush = self._pending_chunks > 0 and (
            self._pending_chunks >= self._max_batch_chunks
            or now - self._last_flush >= self._max_interval
        )

        batch = "".join(self._pending)
        if should_flush:
            self._mark_flushed(now)

        return CoalescedUpdate(
            content=batch,
            should_flush=should_flush,
            text=self.text,
            reasoning=self.reasoning,
            annotations=self.annotations,
            generation_id=new_id,
        )

    def finish(self) -> CoalescedUpdate:
        """Flush whatever is still buffered.  Always ``should_flush=True``."""
        batch = "".join(self._pending)
        self._mark_flushed(self._clock())
        self._finished = True
        _logger.debug(
            "Coalescer finished: %d chars in %d flushes",
            len(self.text), self.flush_count,
        )
        return CoalescedUpdate(
            content=batch,
            should_flush=True,
            text=self.text,
            reasoning=self.reasoning,
            annotations=self.annotations,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _mark_flushed(self, now: float) -> None:
        self._pending.clear()
        self._pending_chunks = 0
        self._last_flush = now
        self.flush_count += 1
