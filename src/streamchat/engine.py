"""ChatEngine: wires config, store, transport and orchestration together.

Usage::

    engine = ChatEngine.from_config(load_config())
    chat = await engine.new_chat()
    result = await engine.run(chat.id, "Hello")
    await engine.close()
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from streamchat.config import ChatConfig
from streamchat.core.orchestrator import RequestOrchestrator
from streamchat.core.resumption import ResumptionManager, ResumptionReport
from streamchat.credentials import ConfigCredentials, CredentialProvider
from streamchat.errors import MissingCredentialError
from streamchat.events.bus import EventBus, Handler
from streamchat.llm.client import AsyncProviderClient, ProviderTransport
from streamchat.llm.error_recovery import RetryPolicy
from streamchat.llm.rate_limit import RateLimitTracker
from streamchat.store.base import MessageStore
from streamchat.store.sqlite import SqliteMessageStore
from streamchat.types import ChatSession, EventType, GenerationStatus, RunOptions, RunResult

_logger = logging.getLogger(__name__)


class ChatEngine:
    """Facade the UI talks to.

    Every collaborator can be injected; :meth:`from_config` builds the
    default set (SQLite store, httpx transport, config/env credentials).
    """

    def __init__(
        self,
        config: ChatConfig,
        store: MessageStore,
        transport: ProviderTransport,
        credentials: CredentialProvider,
        rate_limits: RateLimitTracker | None = None,
        event_bus: EventBus | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.transport = transport
        self.credentials = credentials
        self.rate_limits = rate_limits or RateLimitTracker(
            requests_per_minute=config.rate_limit.requests_per_minute,
            default_cooldown=config.rate_limit.default_cooldown,
        )
        self.event_bus = event_bus or EventBus()

        self.orchestrator = RequestOrchestrator(
            store=store,
            transport=transport,
            credentials=credentials,
            rate_limits=self.rate_limits,
            retry_policy=RetryPolicy(
                max_retries=config.retry.max_retries,
                base_delay=config.retry.base_delay,
                max_delay=config.retry.max_delay,
                jitter=config.retry.jitter,
            ),
            event_bus=self.event_bus,
            streaming=config.streaming,
            defaults=RunOptions(
                max_tokens=config.defaults.max_tokens,
                temperature=config.defaults.temperature,
            ),
            sleep=sleep or asyncio.sleep,
        )
        self.resumption = ResumptionManager(
            store=store,
            transport=transport,
            credentials=credentials,
            event_bus=self.event_bus,
            is_active=self.orchestrator.is_active,
        )

    @classmethod
    def from_config(cls, config: ChatConfig) -> ChatEngine:
        rate_limits = RateLimitTracker(
            requests_per_minute=config.rate_limit.requests_per_minute,
            default_cooldown=config.rate_limit.default_cooldown,
        )
        return cls(
            config=config,
            store=SqliteMessageStore(config.db_path),
            transport=AsyncProviderClient(config.provider, rate_limits=rate_limits),
            credentials=ConfigCredentials(config.provider),
            rate_limits=rate_limits,
        )

    # ----- Chats -----

    async def new_chat(self, model_id: str | None = None, title: str = "") -> ChatSession:
        return await self.store.create_chat(model_id or self.config.provider.default_model, title)

    async def get_chat(self, chat_id: str) -> ChatSession | None:
        return await self.store.get_chat(chat_id)

    async def _model_for(self, chat_id: str, model_id: str | None) -> str:
        if model_id:
            return model_id
        chat = await self.store.get_chat(chat_id)
        if chat is not None and chat.model_id:
            return chat.model_id
        return self.config.provider.default_model

    # ----- Runs -----

    async def run(
        self,
        chat_id: str,
        user_content: str,
        model_id: str | None = None,
        options: RunOptions | None = None,
    ) -> RunResult:
        model = await self._model_for(chat_id, model_id)
        return await self.orchestrator.run(chat_id, user_content, model, options)

    async def retry(
        self,
        chat_id: str,
        model_id: str | None = None,
        options: RunOptions | None = None,
    ) -> RunResult:
        model = await self._model_for(chat_id, model_id)
        return await self.orchestrator.retry(chat_id, model, options)

    def cancel(self, chat_id: str) -> bool:
        return self.orchestrator.cancel(chat_id)

    def is_active(self, chat_id: str) -> bool:
        return self.orchestrator.is_active(chat_id)

    async def resume(self, chat_id: str | None = None) -> ResumptionReport:
        """Finalize incomplete replies left over from an earlier session."""
        incomplete = await self.store.list_incomplete_messages(chat_id)
        return await self.resumption.scan(incomplete)

    async def generation_status(self, generation_id: str) -> GenerationStatus:
        api_key = self.credentials.get_credential()
        if not api_key:
            raise MissingCredentialError()
        return await self.transport.get_generation_status(generation_id, api_key)

    # ----- Rate limits -----

    def is_available(self) -> bool:
        return self.rate_limits.is_available()

    def time_until_reset(self) -> float | None:
        return self.rate_limits.time_until_reset()

    # ----- Events -----

    def subscribe(
        self,
        event_type: EventType | str,
        handler: Handler,
        chat_id: str | None = None,
    ) -> Callable[[], None]:
        return self.event_bus.subscribe(event_type, handler, chat_id=chat_id)

    def unsubscribe(self, event_type: EventType | str, handler: Handler) -> None:
        self.event_bus.unsubscribe(event_type, handler)

    async def close(self) -> None:
        close = getattr(self.transport, "close", None)
        if close is not None:
            await close()
        store_close = getattr(self.store, "close", None)
        if store_close is not None:
            store_close()
        _logger.debug("Engine closed")
