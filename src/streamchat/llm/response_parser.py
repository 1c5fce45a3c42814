"""Decoding of the provider's server-sent-event stream.

The provider speaks the OpenAI chat-completions streaming format::

    : OPENROUTER PROCESSING
    data: {"id": "gen-1", "choices": [{"delta": {"content": "Hi"}, ...}]}
    data: [DONE]

Comment lines (leading ``:``) are keep-alives and carry no data.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from streamchat.errors import ProviderError
from streamchat.types import GenerationStatus, StreamChunk

_logger = logging.getLogger(__name__)

DONE_MARKER = "[DONE]"


class SSELineDecoder:
    """Turn raw SSE lines into :class:`StreamChunk` objects.

    ``feed()`` returns ``None`` for lines that carry nothing (blank lines,
    comments, unparseable JSON).  After the ``[DONE]`` marker the decoder
    reports :attr:`done` and ignores further input.
    """

    def __init__(self) -> None:
        self.done = False

    def feed(self, raw_line: str) -> StreamChunk | None:
        if self.done:
            return None
        line = raw_line.strip()
        if not line or line.startswith(":"):
            return None
        if not line.startswith("data:"):
            return None

        data_str = line[5:].strip()
        if data_str == DONE_MARKER:
            self.done = True
            return None

        try:
            data = json.loads(data_str)
        except json.JSONDecodeError:
            _logger.debug("Skipping unparseable SSE data: %.200s", data_str)
            return None
        if not isinstance(data, dict):
            return None
        return decode_chunk(data)


def decode_chunk(data: dict[str, Any]) -> StreamChunk:
    """Map one parsed chunk object to a :class:`StreamChunk`.

    Raises :class:`ProviderError` for in-stream ``error`` frames, which the
    provider sends when a generation fails after the response has started.
    """
    error = data.get("error")
    if error:
        raise _error_from_frame(error)

    choices = data.get("choices")
    choice = choices[0] if isinstance(choices, list) and choices else None
    if not isinstance(choice, dict):
        choice = {}
    delta = choice.get("delta")
    if not isinstance(delta, dict):
        delta = {}

    return StreamChunk(
        delta_content=delta.get("content") or None,
        delta_reasoning=delta.get("reasoning") or None,
        generation_id=data.get("id") or None,
        finish_reason=choice.get("finish_reason") or None,
        annotations=_annotations(delta.get("annotations")),
        usage=data.get("usage") or {},
    )


def decode_generation(data: dict[str, Any]) -> GenerationStatus:
    """Map a ``/generation`` response body to a :class:`GenerationStatus`."""
    meta = data.get("data", data) or {}
    return GenerationStatus(
        finish_reason=meta.get("finish_reason") or None,
        final_content=meta.get("content") or None,
        model=meta.get("model") or "",
        total_cost=float(meta.get("total_cost") or 0),
        tokens_prompt=int(meta.get("tokens_prompt") or 0),
        tokens_completion=int(meta.get("tokens_completion") or 0),
        native_tokens_reasoning=int(meta.get("native_tokens_reasoning") or 0),
        generation_time=float(meta.get("generation_time") or 0),
        cancelled=bool(meta.get("cancelled", False)),
    )


def error_message_from_body(body: str) -> str:
    """Pull ``error.message`` out of a JSON error body, if there is one."""
    try:
        data = json.loads(body)
    except (json.JSONDecodeError, TypeError):
        return ""
    if not isinstance(data, dict):
        return ""
    error = data.get("error")
    if isinstance(error, dict):
        return str(error.get("message") or "")
    if isinstance(error, str):
        return error
    return ""


def _error_from_frame(error: Any) -> ProviderError:
    if isinstance(error, dict):
        code = error.get("code")
        status = code if isinstance(code, int) else None
        message = str(error.get("message") or "provider stream error")
    else:
        status = None
        message = str(error)
    return ProviderError(
        status_code=status,
        message=f"Provider stream error: {message}",
        text=json.dumps(error) if isinstance(error, dict) else str(error),
    )


def _annotations(raw: Any) -> list[dict[str, Any]]:
    if not isinstance(raw, list):
        return []
    return [a for a in raw if isinstance(a, dict)]
