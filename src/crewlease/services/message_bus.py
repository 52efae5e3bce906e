from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Iterable

from crewlease.db.database import Database, generate_id, to_timestamp
from crewlease.models.message import AgentMessage, MessageCreate, MessageStatus

logger = logging.getLogger(__name__)

MessageHandler = Callable[[AgentMessage], Awaitable[None]]

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_BASE_SECONDS = 60
DEFAULT_CLAIM_TIMEOUT_SECONDS = 300


class MessageBus:
    """At-least-once delivery between roles, backed by the shared store.

    Per-message state machine::

        pending -> delivered -> read (handler running) -> processed
                                     -> pending (retry_count + 1)
                                     -> failed + dead letter   (retry_count reached max_retries)
                                     -> pending (interrupted, no retry spent)

    ``read`` is a claim: only the worker that moved the message there runs the
    handler. A claim older than ``claim_timeout`` belongs to a worker that
    died mid-handler and the message is delivered again.
    A dead letter stays out of every delivery query until ``resurrect``.
    """

    def __init__(
        self,
        db: Database,
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_base_seconds: float = DEFAULT_RETRY_BASE_SECONDS,
        claim_timeout_seconds: float = DEFAULT_CLAIM_TIMEOUT_SECONDS,
    ):
        self.db = db
        self.max_retries = max_retries
        self.retry_base = timedelta(seconds=retry_base_seconds)
        self.claim_timeout = timedelta(seconds=claim_timeout_seconds)

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    async def send_with_retry(self, params: MessageCreate) -> AgentMessage:
        """Queue a message as pending with ``retry_count = 0``."""
        row = await self.db.create_message(
            generate_id("MSG"),
            params.from_agent,
            params.to_agent,
            params.message_type.value,
            params.subject,
            params.content,
            params.work_item_id,
            params.priority.value,
        )
        message = AgentMessage.model_validate(row)
        logger.info(
            "Message %s sent %s -> %s (%s, %s): %s",
            message.id,
            params.from_agent,
            params.to_agent,
            params.message_type.value,
            params.priority.value,
            params.subject,
        )
        return message

    async def broadcast(
        self, params: MessageCreate, to_agents: Iterable[str]
    ) -> list[AgentMessage]:
        return [
            await self.send_with_retry(params.model_copy(update={"to_agent": to}))
            for to in to_agents
        ]

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    async def process(self, message_id: str, handler: MessageHandler) -> bool:
        """Claim a message, run ``handler`` on it and record the outcome.

        Returns True only if this call ran the handler and it succeeded. A
        message another worker is already handling is left alone. A handler
        exception is captured into ``retry_count``/``error_message`` and not
        re-raised; a cancelled handler hands the message back unchanged.
        """
        message = await self.get(message_id)
        if message is None:
            logger.warning("Message %s not found", message_id)
            return False
        if message.is_dead_letter:
            logger.info("Skipping dead letter %s", message_id)
            return False
        if message.status == MessageStatus.PROCESSED:
            logger.debug("Message %s already processed", message_id)
            return False

        if not await self.db.claim_message(message_id, self._claim_cutoff()):
            logger.debug("Message %s is being handled elsewhere", message_id)
            return False
        try:
            await handler(message)
        except asyncio.CancelledError:
            await self.db.release_message_claim(message_id)
            logger.info("Handler for message %s interrupted; message requeued", message_id)
            raise
        except Exception as exc:
            logger.error(
                "Handler failed for message %s (retry %d): %s",
                message_id,
                message.retry_count,
                exc,
            )
            await self._record_failure(message_id, str(exc) or type(exc).__name__)
            return False

        if not await self.db.mark_message_processed(message_id):
            logger.warning("Message %s changed while its handler ran", message_id)
            return False
        logger.info(
            "Message %s processed (%s %s -> %s)",
            message_id,
            message.message_type.value,
            message.from_agent,
            message.to_agent,
        )
        return True

    async def _record_failure(self, message_id: str, error: str) -> None:
        row = await self.db.record_message_failure(message_id, error, self.max_retries)
        if row is None:
            return
        if row["is_dead_letter"]:
            logger.warning(
                "Message %s moved to dead letters after %d attempts: %s",
                message_id,
                row["retry_count"],
                error,
            )
        else:
            logger.info(
                "Message %s scheduled for retry %d in %s",
                message_id,
                row["retry_count"],
                self.retry_delay(row["retry_count"]),
            )

    def retry_delay(self, retry_count: int) -> timedelta:
        """Backoff before the next attempt: ``base * 2 ** retry_count``."""
        return self.retry_base * (2**retry_count)

    def is_due(self, message: AgentMessage, now: datetime | None = None) -> bool:
        if message.last_retry_at is None:
            return True
        now = now or self.db.clock()
        return now - message.last_retry_at >= self.retry_delay(message.retry_count)

    async def mark_delivered(self, message_id: str) -> bool:
        return await self.db.mark_message_delivered(message_id)

    def _claim_cutoff(self) -> str:
        return to_timestamp(self.db.clock() - self.claim_timeout)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get(self, message_id: str) -> AgentMessage | None:
        row = await self.db.get_message(message_id)
        return AgentMessage.model_validate(row) if row else None

    async def list_for_agent(
        self, agent_id: str, status: MessageStatus | None = None
    ) -> list[AgentMessage]:
        """Delivery queue: urgent before high before medium before low, then FIFO."""
        rows = await self.db.get_messages_for_agent(
            agent_id, MessageStatus(status).value if status else None
        )
        return [AgentMessage.model_validate(r) for r in rows]

    async def list_deliverable(self, agent_id: str) -> list[AgentMessage]:
        """Messages no live worker is handling: pending, delivered, or an abandoned claim."""
        rows = await self.db.get_deliverable_messages(agent_id, self._claim_cutoff())
        return [AgentMessage.model_validate(r) for r in rows]

    async def list_for_retry(self, agent_id: str) -> list[AgentMessage]:
        """Failed-but-not-dead messages whose backoff has elapsed."""
        rows = await self.db.get_retry_candidates(
            agent_id, self.max_retries, self._claim_cutoff()
        )
        now = self.db.clock()
        candidates = [AgentMessage.model_validate(r) for r in rows]
        return [m for m in candidates if self.is_due(m, now)]

    async def list_for_work_item(self, work_item_id: str) -> list[AgentMessage]:
        rows = await self.db.get_messages_for_work_item(work_item_id)
        return [AgentMessage.model_validate(r) for r in rows]

    async def list_dead_letters(self, agent_id: str | None = None) -> list[AgentMessage]:
        return [AgentMessage.model_validate(r) for r in await self.db.get_dead_letters(agent_id)]

    async def get_stats(self, agent_id: str) -> dict[str, Any]:
        stats = await self.db.get_message_stats(agent_id)
        by_status = stats["by_status"]
        return {
            "pending": by_status.get("pending", 0),
            "delivered": by_status.get("delivered", 0),
            "read": by_status.get("read", 0),
            "processed": by_status.get("processed", 0),
            "failed": by_status.get("failed", 0),
            "dead_letter": stats["dead_letter"],
            "by_priority": stats["by_priority"],
            "by_type": stats["by_type"],
        }

    # ------------------------------------------------------------------
    # Dead letters
    # ------------------------------------------------------------------

    async def resurrect(self, message_id: str) -> bool:
        """Manually return a dead letter to pending with a fresh retry budget."""
        ok = await self.db.resurrect_message(message_id)
        if ok:
            logger.info("Message %s resurrected from dead letters", message_id)
        else:
            logger.warning("Message %s is not a dead letter; nothing to resurrect", message_id)
        return ok

    async def cleanup_dead_letters(self, older_than_days: int = 30) -> int:
        """Delete dead letters whose last attempt predates the cutoff."""
        cutoff = to_timestamp(self.db.clock() - timedelta(days=older_than_days))
        count = await self.db.delete_dead_letters(cutoff)
        if count:
            logger.info("Deleted %d dead letters older than %d days", count, older_than_days)
        return count
