from __future__ import annotations

import pytest

from conftest import FakeClock
from crewlease.errors import WorkItemNotFoundError
from crewlease.models.work_item import AgentRole, HistoryAction, WorkItemStatus, WorkItemType
from crewlease.services.lease_manager import LeaseManager
from crewlease.services.scheduler import Scheduler
from crewlease.services.work_queue import WorkQueue


@pytest.mark.asyncio
class TestAvailability:
    async def test_ordering(self, scheduler: Scheduler, work_queue: WorkQueue) -> None:
        ready_task = await work_queue.create(WorkItemType.TASK, "t", status=WorkItemStatus.READY)
        ready_bug = await work_queue.create(WorkItemType.BUG, "b", status=WorkItemStatus.READY)
        backlog = await work_queue.create(WorkItemType.STORY, "s")
        review = await work_queue.create(WorkItemType.STORY, "r", status=WorkItemStatus.REVIEW)
        active = await work_queue.create(
            WorkItemType.TASK, "i", status=WorkItemStatus.IN_PROGRESS
        )
        ready_story = await work_queue.create(
            WorkItemType.STORY, "s1", status=WorkItemStatus.READY
        )
        await work_queue.create(WorkItemType.STORY, "d", status=WorkItemStatus.DONE)

        ids = [i.id for i in await scheduler.list_available()]
        assert ids == [review.id, active.id, ready_bug.id, ready_story.id, ready_task.id, backlog.id]

    async def test_creation_order_breaks_ties(
        self, scheduler: Scheduler, work_queue: WorkQueue, clock: FakeClock
    ) -> None:
        first = await work_queue.create(WorkItemType.STORY, "1", status=WorkItemStatus.READY)
        clock.advance(seconds=1)
        second = await work_queue.create(WorkItemType.STORY, "2", status=WorkItemStatus.READY)
        assert [i.id for i in await scheduler.list_available()] == [first.id, second.id]

    async def test_leased_items_hidden_until_stale(
        self,
        scheduler: Scheduler,
        work_queue: WorkQueue,
        leases: LeaseManager,
        clock: FakeClock,
    ) -> None:
        item = await work_queue.create(WorkItemType.STORY, "s", status=WorkItemStatus.READY)
        await leases.claim(item.id, "developer-a")
        assert await scheduler.list_available() == []

        clock.advance(minutes=31)
        assert [i.id for i in await scheduler.list_available()] == [item.id]

    async def test_listing_has_no_side_effects(
        self, scheduler: Scheduler, work_queue: WorkQueue
    ) -> None:
        item = await work_queue.create(WorkItemType.STORY, "s", status=WorkItemStatus.READY)
        await scheduler.list_available()
        await scheduler.list_available()
        assert len(await work_queue.history(item.id)) == 1
        assert not (await work_queue.require(item.id)).is_leased()


@pytest.mark.asyncio
class TestAdmission:
    async def test_counts_distinct_role_holders(
        self,
        scheduler: Scheduler,
        work_queue: WorkQueue,
        leases: LeaseManager,
        clock: FakeClock,
    ) -> None:
        a = await work_queue.create(WorkItemType.STORY, "a", status=WorkItemStatus.READY)
        b = await work_queue.create(WorkItemType.STORY, "b", status=WorkItemStatus.READY)
        c = await work_queue.create(WorkItemType.STORY, "c", status=WorkItemStatus.READY)
        await leases.claim(a.id, "developer-1111")
        await leases.claim(b.id, "developer-1111")
        await leases.claim(c.id, "reviewer-2222")

        assert await scheduler.count_active_of_role(AgentRole.DEVELOPER) == 1
        assert await scheduler.count_active_of_role(AgentRole.REVIEWER) == 1
        assert await scheduler.can_admit(AgentRole.DEVELOPER, 1) is False
        assert await scheduler.can_admit(AgentRole.DEVELOPER, 2) is True

        clock.advance(minutes=31)
        assert await scheduler.count_active_of_role(AgentRole.DEVELOPER) == 0
        assert await scheduler.can_admit(AgentRole.DEVELOPER, 1) is True


@pytest.mark.asyncio
class TestEpicAggregation:
    async def test_epic_follows_children(
        self, scheduler: Scheduler, work_queue: WorkQueue
    ) -> None:
        epic = await work_queue.create(WorkItemType.EPIC, "Epic")
        s1 = await work_queue.create(
            WorkItemType.STORY, "s1", parent_id=epic.id, status=WorkItemStatus.READY
        )
        s2 = await work_queue.create(
            WorkItemType.STORY, "s2", parent_id=epic.id, status=WorkItemStatus.READY
        )

        assert await scheduler.recompute_epic_status(epic.id) == WorkItemStatus.IN_PROGRESS

        for story in (s1, s2):
            await scheduler.transition(story.id, WorkItemStatus.IN_PROGRESS)
            await scheduler.transition(story.id, WorkItemStatus.DONE)

        assert (await work_queue.require(epic.id)).status == WorkItemStatus.DONE

    async def test_recompute_is_idempotent(
        self, scheduler: Scheduler, work_queue: WorkQueue
    ) -> None:
        epic = await work_queue.create(WorkItemType.EPIC, "Epic")
        await work_queue.create(
            WorkItemType.STORY, "s1", parent_id=epic.id, status=WorkItemStatus.DONE
        )

        assert await scheduler.recompute_epic_status(epic.id) == WorkItemStatus.DONE
        count = len(await work_queue.history(epic.id))
        assert await scheduler.recompute_epic_status(epic.id) == WorkItemStatus.DONE
        assert len(await work_queue.history(epic.id)) == count

    async def test_epic_reopens_for_new_work(
        self, scheduler: Scheduler, work_queue: WorkQueue
    ) -> None:
        epic = await work_queue.create(WorkItemType.EPIC, "Epic")
        await work_queue.create(
            WorkItemType.STORY, "s1", parent_id=epic.id, status=WorkItemStatus.DONE
        )
        await scheduler.recompute_epic_status(epic.id)

        await work_queue.create(
            WorkItemType.BUG, "bug", parent_id=epic.id, status=WorkItemStatus.READY
        )
        assert await scheduler.recompute_epic_status(epic.id) == WorkItemStatus.IN_PROGRESS

    async def test_epic_without_children_unchanged(
        self, scheduler: Scheduler, work_queue: WorkQueue
    ) -> None:
        epic = await work_queue.create(WorkItemType.EPIC, "Epic")
        assert await scheduler.recompute_epic_status(epic.id) == WorkItemStatus.BACKLOG
        assert len(await work_queue.history(epic.id)) == 1

    async def test_backlog_children_leave_epic_alone(
        self, scheduler: Scheduler, work_queue: WorkQueue
    ) -> None:
        epic = await work_queue.create(WorkItemType.EPIC, "Epic")
        await work_queue.create(WorkItemType.STORY, "s1", parent_id=epic.id)
        assert await scheduler.recompute_epic_status(epic.id) == WorkItemStatus.BACKLOG

    async def test_non_epic_and_missing(
        self, scheduler: Scheduler, work_queue: WorkQueue
    ) -> None:
        story = await work_queue.create(WorkItemType.STORY, "s", status=WorkItemStatus.READY)
        assert await scheduler.recompute_epic_status(story.id) == WorkItemStatus.READY
        with pytest.raises(WorkItemNotFoundError):
            await scheduler.recompute_epic_status("NOPE")

    async def test_aggregation_is_attributed(
        self, scheduler: Scheduler, work_queue: WorkQueue
    ) -> None:
        epic = await work_queue.create(WorkItemType.EPIC, "Epic")
        story = await work_queue.create(
            WorkItemType.STORY, "s1", parent_id=epic.id, status=WorkItemStatus.REVIEW
        )
        await scheduler.transition(story.id, WorkItemStatus.DONE, "reviewer-1")

        latest = (await work_queue.history(epic.id))[0]
        assert latest.action == HistoryAction.STATUS_CHANGE
        assert latest.created_by == "reviewer-1"

    async def test_three_ready_stories_then_done(
        self, scheduler: Scheduler, work_queue: WorkQueue
    ) -> None:
        epic = await work_queue.create(WorkItemType.EPIC, "Epic")
        stories = [
            await work_queue.create(
                WorkItemType.STORY, f"s{n}", parent_id=epic.id, status=WorkItemStatus.READY
            )
            for n in range(3)
        ]
        assert await scheduler.recompute_epic_status(epic.id) == WorkItemStatus.IN_PROGRESS

        for story in stories:
            await work_queue.update_status(story.id, WorkItemStatus.DONE)
        assert await scheduler.recompute_epic_status(epic.id) == WorkItemStatus.DONE
