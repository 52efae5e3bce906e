from crewlease.models.message import (
    AgentMessage,
    MessageCreate,
    MessageStatus,
    MessageType,
    Priority,
)
from crewlease.models.work_item import (
    AgentRole,
    HistoryAction,
    WorkHistory,
    WorkItem,
    WorkItemStatus,
    WorkItemType,
)

__all__ = [
    "AgentMessage",
    "MessageCreate",
    "MessageStatus",
    "MessageType",
    "Priority",
    "AgentRole",
    "HistoryAction",
    "WorkHistory",
    "WorkItem",
    "WorkItemStatus",
    "WorkItemType",
]
