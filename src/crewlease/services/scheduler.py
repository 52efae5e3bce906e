from __future__ import annotations

import logging

from crewlease.errors import WorkItemNotFoundError
from crewlease.models.work_item import AgentRole, WorkItem, WorkItemStatus, WorkItemType
from crewlease.services.lease_manager import LeaseManager
from crewlease.services.work_queue import WorkQueue

logger = logging.getLogger(__name__)

_ACTIVE = {WorkItemStatus.READY, WorkItemStatus.IN_PROGRESS, WorkItemStatus.REVIEW}


class Scheduler:
    """Candidate selection, admission control and epic aggregation.

    ``list_available`` is a snapshot with no side effects; callers still
    have to win ``LeaseManager.claim`` before acting on a candidate.
    """

    def __init__(self, work_queue: WorkQueue, leases: LeaseManager):
        self.work_queue = work_queue
        self.leases = leases
        self.db = work_queue.db

    async def list_available(self) -> list[WorkItem]:
        """Unfinished items with a free or stale lease, closest-to-done first.

        Order: status (review, in_progress, ready, rest), then type
        (bug, story, task, epic), then oldest first.
        """
        rows = await self.db.get_available_work_items(self.leases.stale_cutoff())
        return [WorkItem.model_validate(r) for r in rows]

    async def count_active_of_role(self, role: AgentRole | str) -> int:
        """Distinct agents of ``role`` holding a non-stale lease."""
        prefix = AgentRole(role).value if isinstance(role, AgentRole) else role
        return await self.db.count_active_lease_holders(
            f"{prefix}-", self.leases.stale_cutoff()
        )

    async def can_admit(self, role: AgentRole | str, max_concurrent: int) -> bool:
        active = await self.count_active_of_role(role)
        if active >= max_concurrent:
            logger.debug("Admission denied for %s: %d/%d active", role, active, max_concurrent)
            return False
        return True

    async def recompute_epic_status(
        self, epic_id: str, actor: str = "system"
    ) -> WorkItemStatus:
        """Derive an epic's status from its direct children.

        All children done -> done; any child ready/in_progress/review ->
        in_progress. The epic is only written when its status changes.
        """
        epic = await self.work_queue.get(epic_id)
        if epic is None:
            raise WorkItemNotFoundError(epic_id)
        if epic.type != WorkItemType.EPIC:
            return epic.status

        children = await self.work_queue.children(epic_id)
        if not children:
            return epic.status

        all_done = all(c.status == WorkItemStatus.DONE for c in children)
        has_active = any(c.status in _ACTIVE for c in children)

        if all_done and epic.status != WorkItemStatus.DONE:
            epic = await self.work_queue.update_status(epic_id, WorkItemStatus.DONE, actor)
            logger.info("Epic %s done: all %d children completed", epic_id, len(children))
        elif has_active and epic.status != WorkItemStatus.IN_PROGRESS:
            epic = await self.work_queue.update_status(
                epic_id, WorkItemStatus.IN_PROGRESS, actor
            )
            logger.info("Epic %s in progress: has active children", epic_id)
        return epic.status

    async def transition(
        self, item_id: str, new_status: WorkItemStatus, actor: str = "system"
    ) -> WorkItem:
        """Change an item's status, then re-derive its epic's status."""
        item = await self.work_queue.update_status(item_id, new_status, actor)
        if item.type != WorkItemType.EPIC and item.parent_id:
            epic = await self.work_queue.epic_ancestor(item.parent_id)
            if epic is not None:
                await self.recompute_epic_status(epic.id, actor)
        return item
