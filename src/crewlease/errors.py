"""
Exceptions raised by crewlease.

Expected contention (a lost claim, a release by a non-owner) is never an
exception: those operations return ``False``. Store errors from
``aiosqlite``/``sqlite3`` are not wrapped and propagate unchanged.
"""

from __future__ import annotations


class CrewLeaseError(Exception):
    """Base class for crewlease errors."""


class WorkItemNotFoundError(CrewLeaseError):
    def __init__(self, work_item_id: str) -> None:
        super().__init__(f"Work item {work_item_id} not found")
        self.work_item_id = work_item_id


class InvalidTransitionError(CrewLeaseError):
    """A status change that the item's transition table does not allow."""

    def __init__(self, work_item_id: str, item_type: str, current: str, new: str) -> None:
        super().__init__(
            f"Illegal transition for {item_type} {work_item_id}: {current} -> {new}"
        )
        self.work_item_id = work_item_id
        self.current = current
        self.new = new


class InvalidWorkItemError(CrewLeaseError):
    """A work item that violates the hierarchy rules."""


class AgentOutputError(CrewLeaseError):
    """Reasoning-agent output that a role agent could not interpret."""

    def __init__(self, message: str, raw_output: str = "") -> None:
        super().__init__(message)
        self.raw_output = raw_output


class AgentExecutionError(CrewLeaseError):
    """The reasoning agent reported failure (timeout, crash, API error)."""
