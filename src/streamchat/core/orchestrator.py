"""Request orchestrator: drives one streamed reply per chat.

    preconditions → append user + placeholder → stream → coalesce →
    persist → notify → (classify → retry | fail)

Single-flight: at most one run per chat.  The lock is taken before the
first ``await`` of ``run()`` and released on every terminal outcome.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable

from streamchat.config import StreamingSpec
from streamchat.core.coalescer import ChunkCoalescer
from streamchat.core.metrics import StreamingMetrics
from streamchat.core.payload import build_history, build_payload
from streamchat.credentials import CredentialProvider
from streamchat.errors import (
    ConcurrentStreamConflictError,
    ErrorKind,
    MissingCredentialError,
    StreamChatError,
)
from streamchat.events.bus import EventBus
from streamchat.llm.client import ProviderTransport
from streamchat.llm.error_recovery import ErrorClassifier, RetryContext, RetryPolicy
from streamchat.llm.rate_limit import RateLimitTracker
from streamchat.store.base import MessageStore
from streamchat.types import (
    ChatEvent,
    EventType,
    GenerationHandle,
    Message,
    RunOptions,
    RunResult,
)

_logger = logging.getLogger(__name__)


@dataclass
class _ActiveRun:
    """Single-flight lock entry for one chat."""

    chat_id: str
    message_id: str = ""
    task: asyncio.Task | None = None
    handle: GenerationHandle | None = None
    persisted: str = ""
    persisted_annotations: int = 0
    cancelled: bool = False


class RequestOrchestrator:
    """Runs streamed completions against a provider.

    Parameters
    ----------
    store:
        Persistence collaborator.
    transport:
        Provider transport (usually ``AsyncProviderClient``).
    credentials:
        Source of the provider API key.
    rate_limits:
        Shared tracker; gates new runs and schedules rate-limit retries.
    retry_policy:
        Retry rules (defaults: 3 retries, 1s base, 60s cap).
    event_bus:
        Notification channel for UI subscribers.
    streaming:
        Coalescing bounds.
    defaults:
        Options used when ``run()`` gets none.
    sleep:
        Awaitable delay, replaceable in tests.
    clock:
        Monotonic clock for coalescing and metrics.
    """

    def __init__(
        self,
        store: MessageStore,
        transport: ProviderTransport,
        credentials: CredentialProvider,
        rate_limits: RateLimitTracker | None = None,
        retry_policy: RetryPolicy | None = None,
        event_bus: EventBus | None = None,
        streaming: StreamingSpec | None = None,
        defaults: RunOptions | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._transport = transport
        self._credentials = credentials
        self._rate_limits = rate_limits or RateLimitTracker()
        self._retry_policy = retry_policy or RetryPolicy()
        self._classifier = ErrorClassifier()
        self._event_bus = event_bus or EventBus()
        self._streaming = streaming or StreamingSpec()
        self._defaults = defaults or RunOptions()
        self._sleep = sleep
        self._clock = clock
        self._active: dict[str, _ActiveRun] = {}

    @property
    def event_bus(self) -> EventBus:
        return self._event_bus

    @property
    def rate_limits(self) -> RateLimitTracker:
        return self._rate_limits

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def is_active(self, chat_id: str) -> bool:
        return chat_id in self._active

    def active_handle(self, chat_id: str) -> GenerationHandle | None:
        """Generation handle of the run in flight for *chat_id*, if known."""
        active = self._active.get(chat_id)
        return active.handle if active else None

    async def run(
        self,
        chat_id: str,
        user_content: str,
        model_id: str,
        options: RunOptions | None = None,
    ) -> RunResult:
        """Send *user_content* to *chat_id* and stream the assistant reply.

        Never raises for provider failures; the outcome is in the returned
        :class:`RunResult`.
        """
        api_key = self._credentials.get_credential()
        if not api_key:
            return await self._reject(chat_id, MissingCredentialError())
        if chat_id in self._active:
            return await self._reject(chat_id, ConcurrentStreamConflictError(chat_id))

        active = self._acquire(chat_id)
        try:
            if await self._store.list_incomplete_messages(chat_id):
                return await self._reject(chat_id, ConcurrentStreamConflictError(chat_id))
            if not self._rate_limits.is_available():
                return await self._reject_rate_limited(chat_id)

            user_msg = await self._store.append_message(chat_id, "user", user_content)
            await self._emit(EventType.MESSAGE_APPENDED, _message_data(user_msg))
            placeholder = await self._store.append_message(
                chat_id, "assistant", "", is_complete=False,
            )
            await self._emit(EventType.MESSAGE_APPENDED, _message_data(placeholder))

            return await self._generate(active, placeholder, model_id, options, api_key)
        finally:
            self._release(active)

    async def retry(
        self,
        chat_id: str,
        model_id: str,
        options: RunOptions | None = None,
    ) -> RunResult:
        """Regenerate the latest assistant reply of *chat_id* from scratch.

        Any run in flight for the chat is cancelled first, and its reader is
        closed before the new request starts.
        """
        await self._cancel_and_wait(chat_id)

        api_key = self._credentials.get_credential()
        if not api_key:
            return await self._reject(chat_id, MissingCredentialError())
        if chat_id in self._active:
            return await self._reject(chat_id, ConcurrentStreamConflictError(chat_id))

        active = self._acquire(chat_id)
        try:
            messages = await self._store.list_messages(chat_id)
            assistants = [m for m in messages if m.role == "assistant"]
            if not assistants:
                return RunResult(
                    success=False,
                    error_message=f"No assistant reply to retry in chat {chat_id}",
                )
            target = assistants[-1]
            if any(not m.is_complete for m in assistants[:-1]):
                return await self._reject(chat_id, ConcurrentStreamConflictError(chat_id))
            if not self._rate_limits.is_available():
                return await self._reject_rate_limited(chat_id)

            target = await self._store.reset_message(target.id)
            await self._emit(EventType.MESSAGE_UPDATED, _message_data(target))
            return await self._generate(active, target, model_id, options, api_key)
        finally:
            self._release(active)

    def cancel(self, chat_id: str) -> bool:
        """Cancel the run in flight for *chat_id*.  Returns ``False`` if none."""
        active = self._active.get(chat_id)
        if active is None or active.task is None or active.task.done():
            return False
        _logger.info("Cancelling stream for chat %s", chat_id)
        active.cancelled = True
        active.task.cancel()
        return True

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def _generate(
        self,
        active: _ActiveRun,
        message: Message,
        model_id: str,
        options: RunOptions | None,
        api_key: str,
    ) -> RunResult:
        active.message_id = message.id
        active.persisted = message.content
        task = asyncio.ensure_future(
            self._stream_with_retries(active, model_id, options or replace(self._defaults), api_key),
        )
        active.task = task
        try:
            return await task
        except asyncio.CancelledError:
            if not active.cancelled:
                raise
            return RunResult(
                success=False,
                message_id=message.id,
                generation_id=active.handle.generation_id if active.handle else None,
                cancelled=True,
            )

    async def _stream_with_retries(
        self,
        active: _ActiveRun,
        model_id: str,
        options: RunOptions,
        api_key: str,
    ) -> RunResult:
        chat_id = active.chat_id
        history = build_history(
            await self._store.list_messages(chat_id), exclude_id=active.message_id,
        )
        payload = build_payload(history, model_id, options)
        ctx = RetryContext()
        metrics = StreamingMetrics(clock=self._clock)
        coalescer: ChunkCoalescer | None = None

        _logger.info(
            "Starting stream for chat %s (model=%s, %d history messages)",
            chat_id, model_id, len(history),
        )
        await self._emit(EventType.RUN_STARTED, {
            "chat_id": chat_id,
            "message_id": active.message_id,
            "model": model_id,
        })

        try:
            while True:
                coalescer = ChunkCoalescer(
                    max_batch_chunks=self._streaming.batch_chunks,
                    max_interval=self._streaming.flush_interval,
                    clock=self._clock,
                )
                self._rate_limits.record_request()
                try:
                    await self._consume(active, payload, api_key, coalescer, metrics)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    kind = self._classifier.classify(e)
                    reset_in = None
                    if kind is ErrorKind.RATE_LIMITED:
                        self._rate_limits.record_rate_limit(getattr(e, "retry_after", None))
                        reset_in = self._rate_limits.time_until_reset()
                        await self._emit(EventType.RATE_LIMIT_UPDATED, {
                            "time_until_reset": reset_in,
                            "message": self._rate_limits.describe(),
                        })
                    decision = self._retry_policy.should_retry(
                        kind,
                        ctx.attempt,
                        rate_limit_retries=ctx.rate_limit_retries,
                        reset_in=reset_in,
                    )
                    ctx.record(kind, decision)
                    if not decision.retry:
                        return await self._fail(active, coalescer, kind, e, ctx, metrics)

                    _logger.warning(
                        "Stream for chat %s failed with %s (retry %d, waiting %.1fs): %s",
                        chat_id, kind.value, ctx.attempt, decision.delay or 0, e,
                    )
                    await self._persist_partial(active, coalescer)
                    await self._emit(EventType.RUN_RETRYING, {
                        "chat_id": chat_id,
                        "message_id": active.message_id,
                        "error_kind": kind.value,
                        "attempt": ctx.attempt,
                        "delay": decision.delay,
                    })
                    await self._sleep(decision.delay or 0)
                    continue

                return await self._complete(active, coalescer, ctx, metrics)
        except asyncio.CancelledError:
            await asyncio.shield(self._on_cancelled(active, coalescer))
            raise
        finally:
            self._release(active)

    async def _consume(
        self,
        active: _ActiveRun,
        payload: dict[str, Any],
        api_key: str,
        coalescer: ChunkCoalescer,
        metrics: StreamingMetrics,
    ) -> None:
        """Read one provider stream to its end, persisting coalesced content."""
        stream = self._transport.stream_completion(payload, api_key)
        try:
            async for chunk in stream:
                metrics.record_chunk(len(chunk.delta_content or ""))
                update = coalescer.accept(chunk)
                if update.generation_id:
                    active.handle = GenerationHandle(
                        generation_id=update.generation_id,
                        chat_id=active.chat_id,
                        message_id=active.message_id,
                    )
                    await self._persist(
                        active, active.persisted, False,
                        generation_id=update.generation_id,
                    )
                if update.should_flush:
                    await self._persist(
                        active, update.text, False,
                        reasoning=update.reasoning or None,
                        annotations=update.annotations,
                    )
                    metrics.record_flush()
                if chunk.finish_reason:
                    _logger.debug("Finish reason %r for chat %s", chunk.finish_reason, active.chat_id)
                    break
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    # ------------------------------------------------------------------
    # Terminal outcomes
    # ------------------------------------------------------------------

    async def _complete(
        self,
        active: _ActiveRun,
        coalescer: ChunkCoalescer,
        ctx: RetryContext,
        metrics: StreamingMetrics,
    ) -> RunResult:
        final = coalescer.finish()
        await self._persist(
            active, final.text, True,
            reasoning=final.reasoning or None, annotations=final.annotations,
        )
        metrics.record_flush()

        generation_id = coalescer.generation_id
        active.handle = None
        summary = metrics.summary()
        _logger.info(
            "Stream for chat %s complete (%d chars, %d retries)",
            active.chat_id, len(final.text), ctx.attempt,
        )
        _logger.debug("Streaming metrics for chat %s: %s", active.chat_id, summary)
        await self._emit(EventType.RUN_DONE, {
            "chat_id": active.chat_id,
            "message_id": active.message_id,
            "generation_id": generation_id,
            "retries": ctx.attempt,
        })
        return RunResult(
            success=True,
            message_id=active.message_id,
            generation_id=generation_id,
            retries=ctx.attempt,
            metrics=summary,
        )

    async def _fail(
        self,
        active: _ActiveRun,
        coalescer: ChunkCoalescer,
        kind: ErrorKind,
        error: BaseException,
        ctx: RetryContext,
        metrics: StreamingMetrics,
    ) -> RunResult:
        await self._persist_partial(active, coalescer)
        _logger.warning(
            "Stream for chat %s failed permanently with %s after %d retries: %s",
            active.chat_id, kind.value, ctx.attempt, error,
        )
        await self._emit(EventType.RUN_FAILED, {
            "chat_id": active.chat_id,
            "message_id": active.message_id,
            "error_kind": kind.value,
            "error": str(error),
            "partial_content": active.persisted,
        })
        return RunResult(
            success=False,
            message_id=active.message_id,
            generation_id=coalescer.generation_id,
            error_kind=kind,
            error_message=str(error),
            retries=ctx.attempt,
            metrics=metrics.summary(),
        )

    async def _on_cancelled(
        self, active: _ActiveRun, coalescer: ChunkCoalescer | None,
    ) -> None:
        if coalescer is not None:
            await self._persist_partial(active, coalescer)
        await self._emit(EventType.RUN_CANCELLED, {
            "chat_id": active.chat_id,
            "message_id": active.message_id,
            "partial_content": active.persisted,
        })

    async def _reject(self, chat_id: str, error: StreamChatError) -> RunResult:
        _logger.warning("Run for chat %s rejected: %s", chat_id, error)
        await self._emit(EventType.RUN_FAILED, {
            "chat_id": chat_id,
            "error_kind": error.kind.value,
            "error": str(error),
        })
        return RunResult(success=False, error_kind=error.kind, error_message=str(error))

    async def _reject_rate_limited(self, chat_id: str) -> RunResult:
        message = self._rate_limits.describe()
        _logger.warning("Run for chat %s rejected: %s", chat_id, message)
        await self._emit(EventType.RUN_FAILED, {
            "chat_id": chat_id,
            "error_kind": ErrorKind.RATE_LIMITED.value,
            "error": message,
            "time_until_reset": self._rate_limits.time_until_reset(),
        })
        return RunResult(
            success=False, error_kind=ErrorKind.RATE_LIMITED, error_message=message,
        )

    # ------------------------------------------------------------------
    # Persistence and locking
    # ------------------------------------------------------------------

    async def _persist(
        self,
        active: _ActiveRun,
        content: str,
        is_complete: bool,
        generation_id: str | None = None,
        reasoning: str | None = None,
        annotations: list[dict[str, Any]] | None = None,
    ) -> None:
        """Write to the store, then notify subscribers."""
        msg = await self._store.update_message_content(
            active.message_id, content, is_complete,
            generation_id=generation_id, reasoning=reasoning,
            annotations=annotations,
        )
        active.persisted = content
        if annotations is not None:
            active.persisted_annotations = len(annotations)
        event = EventType.MESSAGE_COMPLETED if is_complete else EventType.MESSAGE_UPDATED
        await self._emit(event, _message_data(msg))

    async def _persist_partial(self, active: _ActiveRun, coalescer: ChunkCoalescer) -> None:
        """Save unflushed content of a failed attempt, leaving it incomplete."""
        text = coalescer.text
        annotations = coalescer.annotations
        if (text and text != active.persisted) or len(annotations) > active.persisted_annotations:
            await self._persist(
                active, text, False,
                reasoning=coalescer.reasoning or None, annotations=annotations,
            )

    def _acquire(self, chat_id: str) -> _ActiveRun:
        active = _ActiveRun(chat_id=chat_id)
        self._active[chat_id] = active
        return active

    def _release(self, active: _ActiveRun) -> None:
        if self._active.get(active.chat_id) is active:
            del self._active[active.chat_id]

    async def _cancel_and_wait(self, chat_id: str) -> None:
        active = self._active.get(chat_id)
        if active is None or active.task is None:
            return
        if self.cancel(chat_id):
            await asyncio.wait({active.task})
            # a task cancelled before it started never reaches its finally
            self._release(active)

    async def _emit(self, event_type: EventType, data: dict[str, Any]) -> None:
        await self._event_bus.emit(ChatEvent(type=event_type, data=data))


def _message_data(msg: Message) -> dict[str, Any]:
    return {
        "chat_id": msg.chat_id,
        "message_id": msg.id,
        "role": msg.role,
        "content": msg.content,
        "is_complete": msg.is_complete,
        "generation_id": msg.generation_id,
        "annotations": list(msg.annotations),
    }
