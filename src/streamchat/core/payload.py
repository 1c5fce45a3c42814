"""Assembly of the chat-completions request body from stored history."""

from __future__ import annotations

import time
from typing import Any

from streamchat.types import Message, RunOptions

# Reasoning tokens count against max_tokens; give them room but stay bounded.
_REASONING_DEFAULT_TOKENS = 4000
_REASONING_TOKEN_CAP = 8000

_WEB_SEARCH_RESULTS = 5


def build_history(messages: list[Message], exclude_id: str | None = None) -> list[dict[str, str]]:
    """Ordered provider messages, skipping *exclude_id* and empty turns."""
    ordered = sorted(messages, key=lambda m: m.created_at)
    return [
        m.to_message() for m in ordered
        if m.id != exclude_id and m.content.strip()
    ]


def effective_max_tokens(options: RunOptions) -> int:
    reasoning = options.reasoning
    if not reasoning or not reasoning.get("enabled", True):
        return options.max_tokens
    extra = reasoning.get("max_tokens") or _REASONING_DEFAULT_TOKENS
    return min(options.max_tokens + extra, _REASONING_TOKEN_CAP)


def build_payload(
    history: list[dict[str, str]],
    model_id: str,
    options: RunOptions,
) -> dict[str, Any]:
    """Build the streaming request body."""
    payload: dict[str, Any] = {
        "model": model_id,
        "messages": history,
        "stream": True,
        "max_tokens": effective_max_tokens(options),
        "temperature": options.temperature,
    }
    if options.reasoning:
        payload["reasoning"] = dict(options.reasoning)
    if options.web_search:
        today = time.strftime("%Y-%m-%d")
        payload["plugins"] = [{
            "id": "web",
            "max_results": _WEB_SEARCH_RESULTS,
            "search_prompt": (
                f"A web search was conducted on {today}. Incorporate the "
                "following web search results into your response. Cite them "
                "using markdown links named using the domain of the source."
            ),
        }]
    return payload
