from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class WorkItemType(str, Enum):
    EPIC = "epic"
    STORY = "story"
    TASK = "task"
    BUG = "bug"


class WorkItemStatus(str, Enum):
    BACKLOG = "backlog"
    READY = "ready"
    IN_PROGRESS = "in_progress"
    REVIEW = "review"
    DONE = "done"


class AgentRole(str, Enum):
    MANAGER = "manager"
    ARCHITECT = "architect"
    DEVELOPER = "developer"
    REVIEWER = "reviewer"
    BUG_INVESTIGATOR = "bug_investigator"


class HistoryAction(str, Enum):
    STATUS_CHANGE = "status_change"
    AGENT_OUTPUT = "agent_output"
    DECISION = "decision"
    ERROR = "error"


_S = WorkItemStatus

# Allowed moves for stories, tasks and bugs. Self-transitions are always allowed.
TRANSITIONS: dict[WorkItemStatus, frozenset[WorkItemStatus]] = {
    _S.BACKLOG: frozenset({_S.READY, _S.IN_PROGRESS}),
    _S.READY: frozenset({_S.BACKLOG, _S.IN_PROGRESS, _S.DONE}),
    _S.IN_PROGRESS: frozenset({_S.READY, _S.REVIEW, _S.DONE}),
    _S.REVIEW: frozenset({_S.READY, _S.IN_PROGRESS, _S.DONE}),
    _S.DONE: frozenset(),
}

# Epics follow their children: any status may jump to in_progress or done.
EPIC_TRANSITIONS: dict[WorkItemStatus, frozenset[WorkItemStatus]] = {
    _S.BACKLOG: frozenset({_S.READY, _S.IN_PROGRESS, _S.DONE}),
    _S.READY: frozenset({_S.BACKLOG, _S.IN_PROGRESS, _S.DONE}),
    _S.IN_PROGRESS: frozenset({_S.REVIEW, _S.DONE}),
    _S.REVIEW: frozenset({_S.IN_PROGRESS, _S.DONE}),
    _S.DONE: frozenset({_S.IN_PROGRESS}),
}


def can_transition(
    item_type: WorkItemType, current: WorkItemStatus, new: WorkItemStatus
) -> bool:
    """Return True if ``current -> new`` is a legal move for ``item_type``."""
    if current == new:
        return True
    table = EPIC_TRANSITIONS if item_type == WorkItemType.EPIC else TRANSITIONS
    return new in table[current]


class WorkItem(BaseModel):
    """A unit of work in the epic -> story/bug -> task hierarchy."""

    id: str
    type: WorkItemType
    parent_id: Optional[str] = None
    title: str
    description: Optional[str] = None
    status: WorkItemStatus = WorkItemStatus.BACKLOG
    assigned_role: Optional[AgentRole] = None
    processing_started_at: Optional[datetime] = None
    processing_agent_id: Optional[str] = None
    priority: Optional[int] = None
    created_at: datetime
    updated_at: datetime

    def is_leased(self) -> bool:
        return self.processing_agent_id is not None


class WorkHistory(BaseModel):
    """One append-only audit row attached to a work item."""

    id: int
    work_item_id: str
    action: HistoryAction
    content: Optional[str] = None
    created_by: str
    created_at: datetime
