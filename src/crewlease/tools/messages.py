from __future__ import annotations

from typing import Optional

from mcp.server.fastmcp import FastMCP

from crewlease.services.message_bus import MessageBus


def register(mcp: FastMCP, bus: MessageBus) -> None:
    """Register read-only messaging MCP tools."""

    @mcp.tool()
    async def get_messages_for_work_item(work_item_id: str) -> list[dict]:
        """List every message exchanged about a work item, oldest first.

        Args:
            work_item_id: The ID of the work item.
        """
        return [m.model_dump(mode="json") for m in await bus.list_for_work_item(work_item_id)]

    @mcp.tool()
    async def get_message_stats(role: str) -> dict:
        """Count a role's mailbox by status, priority and type.

        Args:
            role: Mailbox name, e.g. "developer" or "reviewer".
        """
        return await bus.get_stats(role)

    @mcp.tool()
    async def get_dead_letters(role: Optional[str] = None) -> list[dict]:
        """List messages that exhausted their retries.

        Args:
            role: Restrict to one recipient mailbox. All mailboxes when omitted.
        """
        return [m.model_dump(mode="json") for m in await bus.list_dead_letters(role)]
