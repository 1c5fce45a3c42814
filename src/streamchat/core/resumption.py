"""Resumption of replies left incomplete by an earlier session.

Best effort: each incomplete assistant message is finalized from the
provider's generation record when one exists.  Token-level resume is not
attempted; messages the provider has not finished stay incomplete so the
user can retry them.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable

from streamchat.credentials import CredentialProvider
from streamchat.events.bus import EventBus
from streamchat.llm.client import ProviderTransport
from streamchat.store.base import MessageStore
from streamchat.types import ChatEvent, EventType, Message

_logger = logging.getLogger(__name__)


@dataclass
class ResumptionReport:
    """What one ``scan()`` did, by message id."""

    completed: list[str] = field(default_factory=list)
    orphaned: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def finalized(self) -> list[str]:
        return self.completed + self.orphaned


class ResumptionManager:
    """Reattach incomplete assistant messages to their generations.

    Parameters
    ----------
    store:
        Persistence collaborator; finalized messages are written through it.
    transport:
        Provider transport used for generation status lookups.
    credentials:
        Source of the provider API key.
    event_bus:
        Receives ``message.completed`` and ``resumption.done`` events.
    is_active:
        Predicate telling whether a chat has a run in flight; such chats
        are left alone.
    """

    def __init__(
        self,
        store: MessageStore,
        transport: ProviderTransport,
        credentials: CredentialProvider,
        event_bus: EventBus | None = None,
        is_active: Callable[[str], bool] | None = None,
    ) -> None:
        self._store = store
        self._transport = transport
        self._credentials = credentials
        self._event_bus = event_bus or EventBus()
        self._is_active = is_active or (lambda chat_id: False)
        self._finalized: set[str] = set()

    async def scan(self, messages: list[Message]) -> ResumptionReport:
        """Finalize what can be finalized among *messages*.

        Safe to call repeatedly: messages finalized by an earlier call are
        skipped without contacting the provider.
        """
        report = ResumptionReport()
        pending: list[Message] = []
        for msg in messages:
            if (
                msg.role != "assistant"
                or msg.is_complete
                or msg.id in self._finalized
                or self._is_active(msg.chat_id)
            ):
                report.skipped.append(msg.id)
                continue
            pending.append(msg)

        if pending:
            api_key = self._credentials.get_credential()
            await asyncio.gather(*(self._resume_one(msg, api_key, report) for msg in pending))

        _logger.info(
            "Resumption: %d completed, %d orphaned, %d left incomplete, %d skipped",
            len(report.completed), len(report.orphaned),
            len(report.failed), len(report.skipped),
        )
        await self._event_bus.emit(ChatEvent(
            type=EventType.RESUMPTION_DONE,
            data={
                "completed": list(report.completed),
                "orphaned": list(report.orphaned),
                "failed": list(report.failed),
                "skipped": list(report.skipped),
            },
        ))
        return report

    async def _resume_one(
        self, msg: Message, api_key: str | None, report: ResumptionReport,
    ) -> None:
        if not msg.generation_id:
            # Never reached the provider; keep whatever was written.
            if await self._superseded(msg):
                report.skipped.append(msg.id)
                return
            await self._finalize(msg, msg.content)
            report.orphaned.append(msg.id)
            return

        if not api_key:
            _logger.warning(
                "No credential; cannot check generation %s for message %s",
                msg.generation_id, msg.id,
            )
            report.failed.append(msg.id)
            return

        try:
            status = await self._transport.get_generation_status(msg.generation_id, api_key)
        except Exception as e:
            _logger.warning(
                "Generation lookup failed for message %s (%s): %s",
                msg.id, msg.generation_id, e,
            )
            report.failed.append(msg.id)
            return

        if not status.is_terminal:
            _logger.info(
                "Generation %s has no finish reason yet; leaving message %s incomplete",
                msg.generation_id, msg.id,
            )
            report.failed.append(msg.id)
            return

        if await self._superseded(msg):
            _logger.info(
                "Message %s changed during lookup of %s; keeping the newer reply",
                msg.id, msg.generation_id,
            )
            report.skipped.append(msg.id)
            return

        content = status.final_content if status.final_content else msg.content
        await self._finalize(msg, content)
        report.completed.append(msg.id)

    async def _superseded(self, msg: Message) -> bool:
        """Whether *msg* was retried, completed or removed since the scan began."""
        current = await self._store.get_message(msg.id)
        # after the read, so a run that started during it is seen
        if self._is_active(msg.chat_id):
            return True
        return (
            current is None
            or current.is_complete
            or current.generation_id != msg.generation_id
        )

    async def _finalize(self, msg: Message, content: str) -> None:
        updated = await self._store.update_message_content(msg.id, content, True)
        self._finalized.add(msg.id)
        await self._event_bus.emit(ChatEvent(
            type=EventType.MESSAGE_COMPLETED,
            data={
                "chat_id": updated.chat_id,
                "message_id": updated.id,
                "role": updated.role,
                "content": updated.content,
                "is_complete": True,
                "generation_id": updated.generation_id,
            },
        ))
