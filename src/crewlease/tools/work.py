from __future__ import annotations

from mcp.server.fastmcp import FastMCP

from crewlease.services.lease_manager import LeaseManager
from crewlease.services.scheduler import Scheduler
from crewlease.services.work_queue import WorkQueue


def register(
    mcp: FastMCP, work_queue: WorkQueue, scheduler: Scheduler, leases: LeaseManager
) -> None:
    """Register read-only work-item MCP tools."""

    @mcp.tool()
    async def get_available_work() -> list[dict]:
        """List work items that are unleased or whose lease has gone stale.

        Items come back in scheduling order: review first, then in-progress,
        then ready; bugs before stories before tasks; oldest first.
        """
        return [item.model_dump(mode="json") for item in await scheduler.list_available()]

    @mcp.tool()
    async def get_work_item(work_item_id: str) -> dict:
        """Get one work item together with its current lease holder.

        Args:
            work_item_id: The ID of the work item.
        """
        item = await work_queue.get(work_item_id)
        if item is None:
            return {"error": f"Work item {work_item_id} not found"}
        result = item.model_dump(mode="json")
        result["lease"] = await leases.holder(work_item_id)
        result["children"] = [c.id for c in await work_queue.children(work_item_id)]
        return result

    @mcp.tool()
    async def get_work_item_history(work_item_id: str) -> list[dict]:
        """Get the audit trail of a work item, newest entry first.

        Args:
            work_item_id: The ID of the work item.
        """
        return [h.model_dump(mode="json") for h in await work_queue.history(work_item_id)]
