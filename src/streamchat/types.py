"""Shared data types for streamchat."""

from __future__ import annotations

import enum
import time
from dataclasses import dataclass, field
from typing import Any

from streamchat.errors import ErrorKind


# ---------------------------------------------------------------------------
# Conversation types
# ---------------------------------------------------------------------------

@dataclass
class Message:
    """A single chat message as stored by the persistence layer."""

    id: str
    chat_id: str
    role: str  # user, assistant, system
    content: str = ""
    is_complete: bool = True
    generation_id: str | None = None
    reasoning: str = ""
    # web search citations as sent by the provider
    annotations: list[dict[str, Any]] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def to_message(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}

    def url_citations(self) -> list[dict[str, Any]]:
        return [
            a["url_citation"] for a in self.annotations
            if a.get("type") == "url_citation" and isinstance(a.get("url_citation"), dict)
        ]


@dataclass
class ChatSession:
    """A conversation and its messages."""

    id: str
    model_id: str = ""
    title: str = ""
    messages: list[Message] = field(default_factory=list)
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    def ordered_messages(self) -> list[Message]:
        """Messages in display order (creation time, not completion time)."""
        return sorted(self.messages, key=lambda m: m.created_at)


# ---------------------------------------------------------------------------
# Provider types
# ---------------------------------------------------------------------------

@dataclass
class StreamChunk:
    """One decoded unit of the provider's streaming response."""

    delta_content: str | None = None
    delta_reasoning: str | None = None
    generation_id: str | None = None
    finish_reason: str | None = None
    annotations: list[dict[str, Any]] = field(default_factory=list)
    usage: dict[str, int] = field(default_factory=dict)

    @property
    def has_delta(self) -> bool:
        return bool(self.delta_content or self.delta_reasoning or self.annotations)


@dataclass
class GenerationStatus:
    """Provider-side view of a generation, fetched by id."""

    finish_reason: str | None = None
    final_content: str | None = None
    model: str = ""
    total_cost: float = 0.0
    tokens_prompt: int = 0
    tokens_completion: int = 0
    native_tokens_reasoning: int = 0
    generation_time: float = 0.0
    cancelled: bool = False

    @property
    def is_terminal(self) -> bool:
        return bool(self.finish_reason)


@dataclass
class GenerationHandle:
    """Everything needed to ask the provider about a generation later."""

    generation_id: str
    chat_id: str
    message_id: str


# ---------------------------------------------------------------------------
# Run types
# ---------------------------------------------------------------------------

@dataclass
class RunOptions:
    """Per-request knobs forwarded into the provider payload."""

    max_tokens: int = 2000
    temperature: float = 0.7
    reasoning: dict[str, Any] | None = None
    web_search: bool = False


@dataclass
class RunResult:
    """Outcome of a single ``run()`` / ``retry()`` call."""

    success: bool
    message_id: str | None = None
    generation_id: str | None = None
    error_kind: ErrorKind | None = None
    error_message: str = ""
    retries: int = 0
    cancelled: bool = False
    metrics: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Event types
# ---------------------------------------------------------------------------

class EventType(enum.Enum):
    """Events emitted by the engine for UI subscribers."""

    # Run lifecycle
    RUN_STARTED = "run.started"
    RUN_RETRYING = "run.retrying"
    RUN_FAILED = "run.failed"
    RUN_CANCELLED = "run.cancelled"
    RUN_DONE = "run.done"

    # Message updates
    MESSAGE_APPENDED = "message.appended"
    MESSAGE_UPDATED = "message.updated"
    MESSAGE_COMPLETED = "message.completed"

    # Provider state
    RATE_LIMIT_UPDATED = "rate_limit.updated"

    # Session start
    RESUMPTION_DONE = "resumption.done"


@dataclass
class ChatEvent:
    """Event emitted by the engine via the EventBus."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)
