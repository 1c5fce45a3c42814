"""Per-run streaming metrics."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Callable


@dataclass
class StreamingMetrics:
    """Counters for one streamed reply."""

    clock: Callable[[], float] = field(default=time.monotonic, repr=False)
    started_at: float = 0.0
    first_chunk_at: float | None = None
    last_chunk_at: float | None = None
    chunks: int = 0
    characters: int = 0
    flushes: int = 0

    def __post_init__(self) -> None:
        self.started_at = self.clock()

    def record_chunk(self, size: int) -> None:
        now = self.clock()
        if self.first_chunk_at is None:
            self.first_chunk_at = now
        self.last_chunk_at = now
        self.chunks += 1
        self.characters += size

    def record_flush(self) -> None:
        self.flushes += 1

    @property
    def time_to_first_chunk_ms(self) -> float | None:
        if self.first_chunk_at is None:
            return None
        return (self.first_chunk_at - self.started_at) * 1000

    def summary(self) -> dict[str, Any]:
        total = self.clock() - self.started_at
        return {
            "chunks": self.chunks,
            "characters": self.characters,
            "flushes": self.flushes,
            "time_to_first_chunk_ms": self.time_to_first_chunk_ms,
            "total_stream_ms": total * 1000,
            "chunks_per_second": self.chunks / total if total > 0 else 0.0,
        }
