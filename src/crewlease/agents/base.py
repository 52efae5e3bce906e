from __future__ import annotations

import asyncio
import json
import logging
import uuid
from abc import ABC, abstractmethod
from typing import ClassVar

from crewlease.errors import AgentExecutionError, AgentOutputError
from crewlease.models.message import AgentMessage, MessageType
from crewlease.models.work_item import AgentRole, HistoryAction, WorkItem
from crewlease.services.agent_messaging import AgentMessaging
from crewlease.services.container import Services
from crewlease.services.reasoning import ContextRetriever, NullContextRetriever, ReasoningAgent
from crewlease.services.ticker import Ticker

logger = logging.getLogger(__name__)

_MAX_RAW_OUTPUT = 4000


class RoleAgent(ABC):
    """One worker role, polled by a ``Ticker``.

    A tick drains the role's mailbox, passes the admission gate, then walks
    the scheduler's candidates until it wins a claim on an item it still
    accepts once re-read. The claimed item is worked under a refreshed lease
    and always released afterwards.
    """

    role: ClassVar[AgentRole]
    instructions: ClassVar[str] = ""

    def __init__(
        self,
        services: Services,
        reasoning: ReasoningAgent,
        retriever: ContextRetriever | None = None,
        agent_id: str | None = None,
        max_concurrent: int | None = None,
        lease_refresh_interval: float | None = None,
    ):
        self.services = services
        self.work_queue = services.work_queue
        self.leases = services.leases
        self.scheduler = services.scheduler
        self.reasoning = reasoning
        self.retriever = retriever or NullContextRetriever()
        self.agent_id = agent_id or f"{self.role.value}-{uuid.uuid4().hex[:8]}"
        self.max_concurrent = max_concurrent
        self.lease_refresh_interval = lease_refresh_interval
        self.current_item: str | None = None
        self.messaging = AgentMessaging(
            services.bus,
            self.role.value,
            handlers={
                MessageType.QUESTION: self.handle_question,
                MessageType.INSIGHT: self.handle_insight,
                MessageType.WARNING: self.handle_warning,
                MessageType.HANDOFF: self.handle_handoff,
            },
            default_handler=self.handle_other,
        )

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    @abstractmethod
    def accepts(self, item: WorkItem) -> bool:
        """Whether this role works ``item`` in its current state."""

    async def tick(self) -> bool:
        """Run one poll. Returns True if a work item was claimed and worked."""
        await self.messaging.check_messages()

        if self.max_concurrent is not None and not await self.scheduler.can_admit(
            self.role, self.max_concurrent
        ):
            return False

        for candidate in await self.scheduler.list_available():
            if not self.accepts(candidate):
                continue
            item = await self._claim(candidate.id)
            if item is None:
                continue
            await self._work_claimed(item)
            return True
        return False

    async def process_work_item(self, item_id: str) -> bool:
        """Claim and work one item. False if the claim was lost or the work failed."""
        item = await self._claim(item_id)
        if item is None:
            return False
        return await self._work_claimed(item)

    async def _claim(self, item_id: str) -> WorkItem | None:
        """Lease ``item_id`` and re-read it; None unless it is still ours to work."""
        if not await self.leases.claim(item_id, self.agent_id):
            logger.info("%s: %s already claimed", self.agent_id, item_id)
            return None
        try:
            item = await self.work_queue.get(item_id)
        except BaseException:
            await self.leases.release(item_id, self.agent_id)
            raise
        if item is None or not self.accepts(item):
            logger.info("%s: %s changed since listing, skipping", self.agent_id, item_id)
            await self.leases.release(item_id, self.agent_id)
            return None
        return item

    async def _work_claimed(self, item: WorkItem) -> bool:
        """Work an item this agent holds the lease on, then release it."""
        self.current_item = item.id
        try:
            async with self.leases.keep_alive(
                item.id, self.agent_id, self.lease_refresh_interval
            ):
                await self.execute(item)
            return True
        except (AgentExecutionError, AgentOutputError) as exc:
            logger.error("%s failed on %s: %s", self.agent_id, item.id, exc)
            await self.record_error(item.id, exc)
            await self.on_failure(item, exc)
            return False
        finally:
            self.current_item = None
            await self.leases.release(item.id, self.agent_id)

    async def run(self, poll_interval: float, stop_event: asyncio.Event | None = None) -> None:
        """Poll until ``stop_event`` is set or the task is cancelled."""
        ticker = Ticker(poll_interval, self.tick, name=self.agent_id)
        ticker.start(run_immediately=True)
        logger.info("Agent %s running", self.agent_id)
        try:
            await (stop_event or asyncio.Event()).wait()
        finally:
            await ticker.stop()
            logger.info("Agent %s stopped", self.agent_id)

    # ------------------------------------------------------------------
    # Work
    # ------------------------------------------------------------------

    async def execute(self, item: WorkItem) -> None:
        await self.on_claimed(item)
        output = await self.reason(item)
        await self.handle_output(item, output)

    async def on_claimed(self, item: WorkItem) -> None:
        pass

    @abstractmethod
    async def handle_output(self, item: WorkItem, output: str) -> None:
        """Apply the reasoning output: history, transitions, handoffs."""

    async def on_failure(self, item: WorkItem, exc: Exception) -> None:
        pass

    def build_prompt(self, item: WorkItem, context: str, extra: str = "") -> str:
        lines = [
            f"You are the {self.role.value} agent.",
            self.instructions,
            "",
            f"Work item {item.id} ({item.type.value}, {item.status.value}): {item.title}",
        ]
        if item.description:
            lines.append(item.description)
        if extra:
            lines += ["", extra]
        if context:
            lines += ["", "Relevant context:", context]
        return "\n".join(lines)

    async def reason(self, item: WorkItem, extra: str = "") -> str:
        context = await self.retriever.retrieve(item)
        prompt = self.build_prompt(item, context, extra)
        result = await self.reasoning.execute(self.role.value, prompt)
        if not result.success:
            raise AgentExecutionError(result.error or "reasoning agent failed")
        return result.output

    async def record_error(self, item_id: str, exc: Exception) -> None:
        details = {
            "error_type": type(exc).__name__,
            "error_message": str(exc),
            "role": self.role.value,
            "agent_id": self.agent_id,
        }
        raw = getattr(exc, "raw_output", "")
        if raw:
            details["raw_output"] = raw[:_MAX_RAW_OUTPUT]
        await self.work_queue.add_history(
            item_id, HistoryAction.ERROR, json.dumps(details), self.agent_id
        )

    # ------------------------------------------------------------------
    # Message handlers
    # ------------------------------------------------------------------

    async def handle_question(self, message: AgentMessage) -> None:
        logger.info("%s received question from %s: %s", self.role.value, message.from_agent, message.subject)
        await self.messaging.share_insight(
            message.from_agent,
            f"Re: {message.subject}",
            "Question received; no specific answer is available at this time.",
            message.work_item_id,
        )

    async def handle_insight(self, message: AgentMessage) -> None:
        logger.info("%s received insight from %s: %s", self.role.value, message.from_agent, message.subject)
        if message.work_item_id:
            await self.work_queue.add_history(
                message.work_item_id,
                HistoryAction.AGENT_OUTPUT,
                f"Insight from {message.from_agent}: {message.content}",
                self.role.value,
            )

    async def handle_warning(self, message: AgentMessage) -> None:
        logger.warning(
            "%s received warning from %s: %s - %s",
            self.role.value,
            message.from_agent,
            message.subject,
            message.content,
        )
        if message.work_item_id:
            await self.work_queue.add_history(
                message.work_item_id,
                HistoryAction.AGENT_OUTPUT,
                f"Warning from {message.from_agent}: {message.content}",
                self.role.value,
            )

    async def handle_handoff(self, message: AgentMessage) -> None:
        logger.info("%s received handoff from %s: %s", self.role.value, message.from_agent, message.subject)
        if message.work_item_id:
            await self.work_queue.add_history(
                message.work_item_id,
                HistoryAction.AGENT_OUTPUT,
                f"Handoff from {message.from_agent} to {self.role.value}: {message.subject}",
                self.role.value,
            )

    async def handle_other(self, message: AgentMessage) -> None:
        logger.info(
            "%s received %s from %s: %s",
            self.role.value,
            message.message_type.value,
            message.from_agent,
            message.subject,
        )
