from __future__ import annotations

import logging
from typing import Mapping

from crewlease.models.message import (
    PRIORITY_RANK,
    AgentMessage,
    MessageCreate,
    MessageStatus,
    MessageType,
    Priority,
)
from crewlease.services.message_bus import MessageBus, MessageHandler

logger = logging.getLogger(__name__)


class AgentMessaging:
    """Mailbox of one role on top of the shared ``MessageBus``.

    Messages are addressed to the role name, so any process running that
    role may drain the mailbox.
    """

    def __init__(
        self,
        bus: MessageBus,
        role: str,
        handlers: Mapping[MessageType, MessageHandler] | None = None,
        default_handler: MessageHandler | None = None,
        priority_threshold: Priority | None = None,
    ):
        self.bus = bus
        self.role = role
        self.handlers: dict[MessageType, MessageHandler] = dict(handlers or {})
        self.default_handler = default_handler
        self.priority_threshold = priority_threshold

    def on(self, message_type: MessageType, handler: MessageHandler) -> None:
        self.handlers[message_type] = handler

    async def check_messages(self) -> int:
        """Process fresh messages, then retries whose backoff elapsed."""
        fresh = [
            m
            for m in await self.bus.list_deliverable(self.role)
            if m.retry_count == 0 and self._meets_threshold(m)
        ]
        if fresh:
            logger.info("Processing %d messages for %s", len(fresh), self.role)

        processed = 0
        for message in fresh:
            if message.status == MessageStatus.PENDING:
                await self.bus.mark_delivered(message.id)
            if await self._dispatch(message):
                processed += 1

        for message in await self.bus.list_for_retry(self.role):
            if self._meets_threshold(message) and await self._dispatch(message):
                processed += 1
        return processed

    async def _dispatch(self, message: AgentMessage) -> bool:
        handler = self.handlers.get(message.message_type) or self.default_handler
        if handler is None:
            logger.warning(
                "No handler for %s message %s in %s mailbox",
                message.message_type.value,
                message.id,
                self.role,
            )
            return False
        return await self.bus.process(message.id, handler)

    def _meets_threshold(self, message: AgentMessage) -> bool:
        if self.priority_threshold is None:
            return True
        return PRIORITY_RANK[message.priority] <= PRIORITY_RANK[self.priority_threshold]

    # ------------------------------------------------------------------
    # Senders
    # ------------------------------------------------------------------

    async def send_message(
        self,
        to: str,
        message_type: MessageType,
        subject: str,
        content: str,
        work_item_id: str | None = None,
        priority: Priority = Priority.MEDIUM,
    ) -> AgentMessage:
        return await self.bus.send_with_retry(
            MessageCreate(
                from_agent=self.role,
                to_agent=to,
                message_type=message_type,
                subject=subject,
                content=content,
                work_item_id=work_item_id,
                priority=priority,
            )
        )

    async def ask_question(
        self,
        to: str,
        subject: str,
        question: str,
        work_item_id: str | None = None,
        priority: Priority = Priority.MEDIUM,
    ) -> AgentMessage:
        return await self.send_message(
            to, MessageType.QUESTION, subject, question, work_item_id, priority
        )

    async def share_insight(
        self,
        to: str,
        subject: str,
        insight: str,
        work_item_id: str | None = None,
        priority: Priority = Priority.MEDIUM,
    ) -> AgentMessage:
        return await self.send_message(
            to, MessageType.INSIGHT, subject, insight, work_item_id, priority
        )

    async def send_warning(
        self,
        to: str,
        subject: str,
        warning: str,
        work_item_id: str | None = None,
        priority: Priority = Priority.HIGH,
    ) -> AgentMessage:
        return await self.send_message(
            to, MessageType.WARNING, subject, warning, work_item_id, priority
        )

    async def handoff_work(
        self,
        to: str,
        subject: str,
        details: str,
        work_item_id: str | None = None,
        priority: Priority = Priority.HIGH,
    ) -> AgentMessage:
        return await self.send_message(
            to, MessageType.HANDOFF, subject, details, work_item_id, priority
        )

    async def get_stats(self) -> dict:
        return await self.bus.get_stats(self.role)
