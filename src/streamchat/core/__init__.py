"""Core engine: orchestration, coalescing, resumption."""

from streamchat.core.coalescer import ChunkCoalescer, CoalescedUpdate
from streamchat.core.metrics import StreamingMetrics
from streamchat.core.orchestrator import RequestOrchestrator
from streamchat.core.resumption import ResumptionManager, ResumptionReport

__all__ = [
    "ChunkCoalescer",
    "CoalescedUpdate",
    "RequestOrchestrator",
    "ResumptionManager",
    "ResumptionReport",
    "StreamingMetrics",
]
