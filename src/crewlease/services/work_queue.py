from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from crewlease.db.database import Database, generate_id, to_timestamp
from crewlease.errors import InvalidTransitionError, InvalidWorkItemError, WorkItemNotFoundError
from crewlease.models.work_item import (
    AgentRole,
    HistoryAction,
    WorkHistory,
    WorkItem,
    WorkItemStatus,
    WorkItemType,
    can_transition,
)

logger = logging.getLogger(__name__)


class WorkQueue:
    """Authoritative CRUD and status transitions for work items.

    Lease fields (``processing_*``) are never written here; see ``LeaseManager``.
    """

    def __init__(self, db: Database):
        self.db = db

    async def create(
        self,
        item_type: WorkItemType,
        title: str,
        description: str | None = None,
        parent_id: str | None = None,
        status: WorkItemStatus = WorkItemStatus.BACKLOG,
        priority: int | None = None,
        item_id: str | None = None,
        created_by: str = "system",
    ) -> WorkItem:
        """Insert a work item and return the persisted row."""
        item_type = WorkItemType(item_type)
        status = WorkItemStatus(status)
        if item_type == WorkItemType.EPIC and parent_id is not None:
            raise InvalidWorkItemError("Epics cannot have a parent")
        if parent_id is not None and await self.db.get_work_item(parent_id) is None:
            raise InvalidWorkItemError(f"Parent work item {parent_id} does not exist")

        item_id = item_id or generate_id(item_type.value)
        await self.db.create_work_item(
            item_id,
            item_type.value,
            title,
            description,
            parent_id,
            status.value,
            priority,
            created_by,
        )
        logger.info("Created %s %s (%s)", item_type.value, item_id, status.value)
        return await self.require(item_id)

    async def get(self, item_id: str) -> WorkItem | None:
        row = await self.db.get_work_item(item_id)
        return WorkItem.model_validate(row) if row else None

    async def require(self, item_id: str) -> WorkItem:
        item = await self.get(item_id)
        if item is None:
            raise WorkItemNotFoundError(item_id)
        return item

    async def list_all(self) -> list[WorkItem]:
        return [WorkItem.model_validate(r) for r in await self.db.get_work_items()]

    async def list_by_status(self, status: WorkItemStatus) -> list[WorkItem]:
        rows = await self.db.get_work_items(WorkItemStatus(status).value)
        return [WorkItem.model_validate(r) for r in rows]

    async def children(self, parent_id: str) -> list[WorkItem]:
        rows = await self.db.get_child_work_items(parent_id)
        return [WorkItem.model_validate(r) for r in rows]

    async def epic_ancestor(self, item_id: str) -> WorkItem | None:
        """Walk up ``parent_id`` links to the nearest epic (or the item itself)."""
        item = await self.get(item_id)
        seen: set[str] = set()
        while item is not None and item.id not in seen:
            if item.type == WorkItemType.EPIC:
                return item
            seen.add(item.id)
            item = await self.get(item.parent_id) if item.parent_id else None
        return None

    async def update_status(
        self, item_id: str, new_status: WorkItemStatus, actor: str = "system"
    ) -> WorkItem:
        """Move an item to ``new_status`` and log the change in one transaction.

        Raises ``WorkItemNotFoundError`` or ``InvalidTransitionError``;
        neither write happens in that case.
        """
        new_status = WorkItemStatus(new_status)

        def guard(row: dict[str, Any]) -> None:
            item_type = WorkItemType(row["type"])
            current = WorkItemStatus(row["status"])
            if not can_transition(item_type, current, new_status):
                raise InvalidTransitionError(
                    item_id, item_type.value, current.value, new_status.value
                )

        previous = await self.db.update_work_item_status(
            item_id, new_status.value, actor, guard=guard
        )
        if previous is None:
            raise WorkItemNotFoundError(item_id)
        logger.info("Work item %s: %s -> %s (%s)", item_id, previous, new_status.value, actor)
        return await self.require(item_id)

    async def assign_role(self, item_id: str, role: AgentRole, actor: str = "system") -> None:
        role = AgentRole(role)
        if not await self.db.set_assigned_role(item_id, role.value, actor):
            raise WorkItemNotFoundError(item_id)
        logger.info("Assigned %s to %s", item_id, role.value)

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def add_history(
        self,
        item_id: str,
        action: HistoryAction,
        content: str | None,
        created_by: str,
    ) -> int:
        return await self.db.add_history(
            item_id, HistoryAction(action).value, content, created_by
        )

    async def history(self, item_id: str) -> list[WorkHistory]:
        """Return the item's history, newest first."""
        return [WorkHistory.model_validate(r) for r in await self.db.get_history(item_id)]

    async def recent_errors(self, hours: int = 24) -> list[WorkHistory]:
        since = to_timestamp(self.db.clock() - timedelta(hours=hours))
        return [WorkHistory.model_validate(r) for r in await self.db.get_recent_errors(since)]

    async def has_unresolved_error(self, item_id: str) -> bool:
        return await self.db.has_unresolved_error(item_id)

    async def counts_by_status(self) -> dict[str, int]:
        return await self.db.count_work_items_by_status()
