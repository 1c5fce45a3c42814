"""Async client for OpenRouter-compatible chat-completion providers.

Uses ``httpx.AsyncClient``.  ``stream_completion()`` is an async generator
of decoded :class:`StreamChunk` objects; closing it (``aclose()``) closes
the underlying HTTP response.  Retrying is the orchestrator's job: this
client raises on failure and never retries by itself.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Protocol

import httpx

from streamchat.config import ProviderSpec
from streamchat.errors import ProviderError
from streamchat.llm.rate_limit import RateLimitTracker
from streamchat.types import GenerationStatus, StreamChunk

from .response_parser import SSELineDecoder, decode_generation, error_message_from_body

_logger = logging.getLogger(__name__)


class ProviderTransport(Protocol):
    """What the orchestrator and resumption manager need from a provider."""

    def stream_completion(
        self, payload: dict[str, Any], api_key: str,
    ) -> AsyncIterator[StreamChunk]:
        ...

    async def get_generation_status(
        self, generation_id: str, api_key: str,
    ) -> GenerationStatus:
        ...


def _parse_retry_after(headers: httpx.Headers) -> float | None:
    value = headers.get("retry-after")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class AsyncProviderClient:
    """Async client for the provider's chat-completions API.

    Parameters
    ----------
    provider:
        Connection settings.
    rate_limits:
        Tracker fed with every response's rate-limit headers (optional).
    transport:
        Custom httpx transport (tests pass ``httpx.MockTransport``).
    """

    def __init__(
        self,
        provider: ProviderSpec,
        rate_limits: RateLimitTracker | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.provider = provider
        self._rate_limits = rate_limits

        headers = {"Content-Type": "application/json"}
        if provider.app_url:
            headers["HTTP-Referer"] = provider.app_url
        if provider.app_name:
            headers["X-Title"] = provider.app_name

        self._client = httpx.AsyncClient(
            base_url=provider.url.rstrip("/"),
            headers=headers,
            timeout=httpx.Timeout(provider.timeout, connect=30, read=60),
            transport=transport,
        )

    # ------------------------------------------------------------------
    # Streaming chat
    # ------------------------------------------------------------------

    async def stream_completion(
        self, payload: dict[str, Any], api_key: str,
    ) -> AsyncIterator[StreamChunk]:
        """Stream a chat completion.  Yields one :class:`StreamChunk` per event.

        Raises :class:`ProviderError` for non-2xx responses and in-stream
        error frames; httpx transport errors propagate unchanged.
        """
        body = {**self.provider.extra_params, **payload, "stream": True}
        decoder = SSELineDecoder()

        async with self._client.stream(
            "POST", "/chat/completions", json=body, headers=self._auth(api_key),
        ) as resp:
            self._observe(resp)
            if resp.status_code >= 400:
                text = (await resp.aread()).decode("utf-8", errors="replace")
                raise self._error_for(resp, text)

            async for raw_line in resp.aiter_lines():
                chunk = decoder.feed(raw_line)
                if decoder.done:
                    break
                if chunk is not None:
                    yield chunk

    # ------------------------------------------------------------------
    # Generation metadata
    # ------------------------------------------------------------------

    async def get_generation_status(
        self, generation_id: str, api_key: str,
    ) -> GenerationStatus:
        """Fetch the provider's record of a generation."""
        resp = await self._client.get(
            "/generation",
            params={"id": generation_id},
            headers=self._auth(api_key),
        )
        self._observe(resp)
        if resp.status_code >= 400:
            raise self._error_for(resp, resp.text)
        try:
            data = resp.json()
        except ValueError as e:
            raise ProviderError(
                status_code=resp.status_code,
                message="Invalid JSON in generation response",
                text=resp.text,
            ) from e
        return decode_generation(data)

    async def validate_credential(self, api_key: str) -> bool:
        """Cheap round-trip to check that *api_key* is accepted."""
        try:
            resp = await self._client.get("/auth/key", headers=self._auth(api_key))
        except httpx.HTTPError as e:
            _logger.warning("Credential validation failed: %s", e)
            return False
        return resp.status_code < 400

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _auth(api_key: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {api_key}"}

    def _observe(self, resp: httpx.Response) -> None:
        if self._rate_limits is not None:
            self._rate_limits.observe(resp.headers)

    @staticmethod
    def _error_for(resp: httpx.Response, text: str) -> ProviderError:
        detail = error_message_from_body(text)
        message = f"Provider returned {resp.status_code} {resp.reason_phrase}"
        if detail:
            message += f" - {detail}"
        _logger.warning("%s", message)
        return ProviderError(
            status_code=resp.status_code,
            message=message,
            text=text,
            retry_after=_parse_retry_after(resp.headers),
        )

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()
