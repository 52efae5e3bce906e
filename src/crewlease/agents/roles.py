from __future__ import annotations

import json
import logging
from typing import Optional, TypeVar

from pydantic import BaseModel, Field, ValidationError

from crewlease.errors import AgentOutputError
from crewlease.models.message import MessageType, Priority
from crewlease.models.work_item import (
    AgentRole,
    HistoryAction,
    WorkItem,
    WorkItemStatus,
    WorkItemType,
)
from crewlease.agents.base import RoleAgent
from crewlease.services.container import Services
from crewlease.services.reasoning import ContextRetriever, ReasoningAgent
from crewlease.utils.config import Config

logger = logging.getLogger(__name__)

_DELIVERABLE = {WorkItemType.STORY, WorkItemType.BUG, WorkItemType.TASK}
_SUMMARY_CHARS = 500

T = TypeVar("T", bound=BaseModel)


def parse_agent_json(output: str, model: type[T]) -> T:
    """Validate the outermost JSON object in ``output`` against ``model``."""
    start, end = output.find("{"), output.rfind("}")
    if start == -1 or end <= start:
        raise AgentOutputError(f"No JSON object in {model.__name__} output", output)
    try:
        return model.model_validate_json(output[start : end + 1])
    except ValidationError as exc:
        raise AgentOutputError(
            f"Invalid {model.__name__}: {exc.error_count()} validation errors", output
        ) from exc


class StoryDraft(BaseModel):
    title: str = Field(min_length=1)
    description: Optional[str] = None


class ArchitectPlan(BaseModel):
    stories: list[StoryDraft] = Field(min_length=1)


class ReviewVerdict(BaseModel):
    approved: bool
    feedback: str = ""


class ManagerAgent(RoleAgent):
    """Triages backlog stories, tasks and bugs and hands them to development."""

    role = AgentRole.MANAGER
    instructions = "Triage this work item and state what is needed before development starts."

    def accepts(self, item: WorkItem) -> bool:
        return item.type in _DELIVERABLE and item.status == WorkItemStatus.BACKLOG

    async def handle_output(self, item: WorkItem, output: str) -> None:
        await self.work_queue.add_history(item.id, HistoryAction.AGENT_OUTPUT, output, self.agent_id)
        await self.work_queue.assign_role(item.id, AgentRole.DEVELOPER, self.agent_id)
        await self.scheduler.transition(item.id, WorkItemStatus.READY, self.agent_id)
        await self.messaging.handoff_work(
            AgentRole.DEVELOPER.value,
            f"Ready for development: {item.title}",
            output[:_SUMMARY_CHARS],
            item.id,
        )


class ArchitectAgent(RoleAgent):
    """Breaks a backlog epic into ready stories."""

    role = AgentRole.ARCHITECT
    instructions = (
        "Break this epic into stories. Reply with JSON: "
        '{"stories": [{"title": "...", "description": "..."}]}'
    )

    def accepts(self, item: WorkItem) -> bool:
        return item.type == WorkItemType.EPIC and item.status == WorkItemStatus.BACKLOG

    async def handle_output(self, item: WorkItem, output: str) -> None:
        plan = parse_agent_json(output, ArchitectPlan)
        await self.work_queue.add_history(
            item.id, HistoryAction.DECISION, plan.model_dump_json(), self.agent_id
        )
        created = []
        for draft in plan.stories:
            story = await self.work_queue.create(
                WorkItemType.STORY,
                draft.title,
                description=draft.description,
                parent_id=item.id,
                status=WorkItemStatus.READY,
                created_by=self.agent_id,
            )
            created.append(story.id)
        logger.info("Architect created %d stories under %s", len(created), item.id)
        await self.scheduler.recompute_epic_status(item.id, self.agent_id)
        await self.messaging.share_insight(
            AgentRole.DEVELOPER.value,
            f"New stories for {item.title}",
            json.dumps({"epic": item.id, "stories": created}),
            item.id,
        )


class DeveloperAgent(RoleAgent):
    """Implements ready work and sends it to review."""

    role = AgentRole.DEVELOPER
    instructions = "Implement this work item and summarise the changes you made."

    def accepts(self, item: WorkItem) -> bool:
        return item.type in _DELIVERABLE and item.status in (
            WorkItemStatus.READY,
            WorkItemStatus.IN_PROGRESS,
        )

    async def on_claimed(self, item: WorkItem) -> None:
        if item.status != WorkItemStatus.IN_PROGRESS:
            await self.scheduler.transition(item.id, WorkItemStatus.IN_PROGRESS, self.agent_id)

    async def handle_output(self, item: WorkItem, output: str) -> None:
        await self.work_queue.add_history(item.id, HistoryAction.AGENT_OUTPUT, output, self.agent_id)
        await self.scheduler.transition(item.id, WorkItemStatus.REVIEW, self.agent_id)
        await self.messaging.handoff_work(
            AgentRole.REVIEWER.value,
            f"Ready for review: {item.title}",
            output[:_SUMMARY_CHARS],
            item.id,
        )

    async def on_failure(self, item: WorkItem, exc: Exception) -> None:
        current = await self.work_queue.require(item.id)
        if current.status == WorkItemStatus.IN_PROGRESS:
            await self.scheduler.transition(item.id, WorkItemStatus.READY, self.agent_id)


class ReviewerAgent(RoleAgent):
    """Approves reviewed work or sends it back to development."""

    role = AgentRole.REVIEWER
    instructions = 'Review this work. Reply with JSON: {"approved": true|false, "feedback": "..."}'

    def accepts(self, item: WorkItem) -> bool:
        return item.type in _DELIVERABLE and item.status == WorkItemStatus.REVIEW

    async def handle_output(self, item: WorkItem, output: str) -> None:
        verdict = parse_agent_json(output, ReviewVerdict)
        await self.work_queue.add_history(
            item.id, HistoryAction.DECISION, verdict.model_dump_json(), self.agent_id
        )
        if verdict.approved:
            await self.scheduler.transition(item.id, WorkItemStatus.DONE, self.agent_id)
            return
        await self.scheduler.transition(item.id, WorkItemStatus.READY, self.agent_id)
        await self.messaging.send_warning(
            AgentRole.DEVELOPER.value,
            f"Changes requested: {item.title}",
            verdict.feedback or "Review rejected without feedback",
            item.id,
        )


class BugInvestigatorAgent(RoleAgent):
    """Turns recorded agent failures into bug work items."""

    role = AgentRole.BUG_INVESTIGATOR
    instructions = "Investigate the recorded failure and describe the bug and a suggested fix."

    def __init__(self, *args, lookback_hours: int = 24, **kwargs):
        super().__init__(*args, **kwargs)
        self.lookback_hours = lookback_hours

    def accepts(self, item: WorkItem) -> bool:
        return True

    async def tick(self) -> bool:
        await self.messaging.check_messages()
        seen: set[str] = set()
        for error in await self.work_queue.recent_errors(self.lookback_hours):
            if error.work_item_id in seen:
                continue
            seen.add(error.work_item_id)
            if not await self.work_queue.has_unresolved_error(error.work_item_id):
                continue
            item = await self._claim(error.work_item_id)
            if item is None:
                continue
            if not await self.work_queue.has_unresolved_error(item.id):
                await self.leases.release(item.id, self.agent_id)
                continue
            await self._work_claimed(item)
            return True
        return False

    async def execute(self, item: WorkItem) -> None:
        errors = [
            h for h in await self.work_queue.history(item.id) if h.action == HistoryAction.ERROR
        ]
        failure = errors[0].content if errors else ""
        output = await self.reason(item, extra=f"Recorded failure:\n{failure}")
        await self.handle_output(item, output)

    async def handle_output(self, item: WorkItem, output: str) -> None:
        epic = await self.work_queue.epic_ancestor(item.id)
        bug = await self.work_queue.create(
            WorkItemType.BUG,
            f"Fix failure in {item.title}",
            description=output,
            parent_id=epic.id if epic else None,
            status=WorkItemStatus.READY,
            created_by=self.agent_id,
        )
        await self.work_queue.add_history(
            item.id,
            HistoryAction.AGENT_OUTPUT,
            f"error resolved: bug {bug.id} created",
            self.agent_id,
        )
        if epic is not None:
            await self.scheduler.recompute_epic_status(epic.id, self.agent_id)
        await self.messaging.send_message(
            AgentRole.MANAGER.value,
            MessageType.NOTIFICATION,
            f"Bug {bug.id} opened",
            f"Failure on {item.id} investigated; bug {bug.id} is ready.",
            bug.id,
            Priority.HIGH,
        )


AGENT_CLASSES: dict[AgentRole, type[RoleAgent]] = {
    AgentRole.MANAGER: ManagerAgent,
    AgentRole.ARCHITECT: ArchitectAgent,
    AgentRole.DEVELOPER: DeveloperAgent,
    AgentRole.REVIEWER: ReviewerAgent,
    AgentRole.BUG_INVESTIGATOR: BugInvestigatorAgent,
}


def create_agent(
    role: AgentRole | str,
    services: Services,
    reasoning: ReasoningAgent,
    config: Config,
    retriever: ContextRetriever | None = None,
) -> RoleAgent:
    """Build the agent for ``role`` with settings taken from ``config``."""
    role = AgentRole(role)
    max_concurrent = config.max_concurrent_developers if role == AgentRole.DEVELOPER else None
    return AGENT_CLASSES[role](
        services,
        reasoning,
        retriever=retriever,
        max_concurrent=max_concurrent,
    )
