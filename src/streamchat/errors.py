"""Error taxonomy and exception types."""

from __future__ import annotations

import enum


class ErrorKind(enum.Enum):
    """Closed set of failure kinds the engine reacts to."""

    MISSING_CREDENTIAL = "missing_credential"
    INVALID_CREDENTIAL = "invalid_credential"
    INSUFFICIENT_QUOTA = "insufficient_quota"
    RATE_LIMITED = "rate_limited"
    SERVICE_UNAVAILABLE = "service_unavailable"
    CONCURRENT_STREAM_CONFLICT = "concurrent_stream_conflict"
    UNKNOWN = "unknown"


class StreamChatError(Exception):
    """Base class for errors raised by streamchat."""

    kind: ErrorKind = ErrorKind.UNKNOWN


class MissingCredentialError(StreamChatError):
    """No provider API key is configured."""

    kind = ErrorKind.MISSING_CREDENTIAL

    def __init__(self, message: str = "Provider API key is required") -> None:
        super().__init__(message)


class ConcurrentStreamConflictError(StreamChatError):
    """A generation is already in flight for this chat."""

    kind = ErrorKind.CONCURRENT_STREAM_CONFLICT

    def __init__(self, chat_id: str) -> None:
        self.chat_id = chat_id
        super().__init__(
            f"Chat {chat_id} already has a reply in progress; "
            "retry or resume it before sending another message",
        )


class ProviderError(StreamChatError):
    """HTTP-level or in-stream error reported by the provider.

    ``status_code`` is ``None`` when the provider did not give one (for
    example an ``error`` frame without a code).  ``retry_after`` carries
    the provider's ``Retry-After`` hint in seconds when present.
    """

    def __init__(
        self,
        *,
        status_code: int | None,
        message: str,
        text: str = "",
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.text = text
        self.retry_after = retry_after


class ConfigError(StreamChatError):
    """The configuration file exists but cannot be used."""


__all__ = [
    "ConcurrentStreamConflictError",
    "ConfigError",
    "ErrorKind",
    "MissingCredentialError",
    "ProviderError",
    "StreamChatError",
]
