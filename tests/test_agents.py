from __future__ import annotations

import json

import pytest

from conftest import FakeReasoningAgent
from crewlease.agents import (
    ArchitectAgent,
    BugInvestigatorAgent,
    DeveloperAgent,
    ManagerAgent,
    ReviewerAgent,
    RoleAgent,
    create_agent,
)
from crewlease.agents.roles import ReviewVerdict, parse_agent_json
from crewlease.errors import AgentOutputError
from crewlease.models.message import MessageType
from crewlease.models.work_item import (
    AgentRole,
    HistoryAction,
    WorkItem,
    WorkItemStatus,
    WorkItemType,
)
from crewlease.services.agent_messaging import AgentMessaging
from crewlease.services.container import Services
from crewlease.services.reasoning import AgentResult
from crewlease.utils.config import Config


class TestParseAgentJson:
    def test_extracts_embedded_object(self) -> None:
        verdict = parse_agent_json(
            'Here you go:\n```json\n{"approved": false, "feedback": "add tests"}\n```',
            ReviewVerdict,
        )
        assert verdict.approved is False
        assert verdict.feedback == "add tests"

    def test_rejects_missing_object(self) -> None:
        with pytest.raises(AgentOutputError) as info:
            parse_agent_json("no json here", ReviewVerdict)
        assert info.value.raw_output == "no json here"

    def test_rejects_wrong_shape(self) -> None:
        with pytest.raises(AgentOutputError):
            parse_agent_json('{"feedback": "missing verdict"}', ReviewVerdict)


@pytest.mark.asyncio
class TestRoleAgent:
    async def test_base_class_is_abstract(
        self, services: Services, reasoning: FakeReasoningAgent
    ) -> None:
        with pytest.raises(TypeError):
            RoleAgent(services, reasoning)  # type: ignore[abstract]

    async def test_role_must_handle_output(
        self, services: Services, reasoning: FakeReasoningAgent
    ) -> None:
        class Incomplete(RoleAgent):
            role = AgentRole.MANAGER

            def accepts(self, item: WorkItem) -> bool:
                return True

        with pytest.raises(TypeError):
            Incomplete(services, reasoning)  # type: ignore[abstract]


@pytest.mark.asyncio
class TestManagerAgent:
    async def test_triages_backlog_story(
        self, services: Services, reasoning: FakeReasoningAgent
    ) -> None:
        story = await services.work_queue.create(WorkItemType.STORY, "Login page")
        agent = ManagerAgent(services, reasoning)

        assert agent.agent_id.startswith("manager-")
        assert await agent.tick() is True

        item = await services.work_queue.require(story.id)
        assert item.status == WorkItemStatus.READY
        assert item.assigned_role == AgentRole.DEVELOPER
        assert not item.is_leased()

        inbox = await services.bus.list_for_agent("developer")
        assert [m.message_type for m in inbox] == [MessageType.HANDOFF]
        assert inbox[0].work_item_id == story.id
        assert "Login page" in reasoning.calls[0][1]

    async def test_ignores_epics(self, services: Services, reasoning: FakeReasoningAgent) -> None:
        await services.work_queue.create(WorkItemType.EPIC, "Epic")
        assert await ManagerAgent(services, reasoning).tick() is False
        assert reasoning.calls == []


@pytest.mark.asyncio
class TestArchitectAgent:
    async def test_breaks_epic_into_stories(
        self, services: Services, reasoning: FakeReasoningAgent
    ) -> None:
        epic = await services.work_queue.create(WorkItemType.EPIC, "Checkout")
        reasoning.script(
            "architect",
            AgentResult(
                True,
                json.dumps(
                    {
                        "stories": [
                            {"title": "Cart", "description": "Cart page"},
                            {"title": "Payment"},
                        ]
                    }
                ),
            ),
        )

        assert await ArchitectAgent(services, reasoning).tick() is True

        children = await services.work_queue.children(epic.id)
        assert [c.title for c in children] == ["Cart", "Payment"]
        assert all(c.status == WorkItemStatus.READY for c in children)
        assert (await services.work_queue.require(epic.id)).status == WorkItemStatus.IN_PROGRESS

        inbox = await services.bus.list_for_agent("developer")
        assert inbox[0].message_type == MessageType.INSIGHT

    async def test_unparseable_plan_records_error(
        self, services: Services, reasoning: FakeReasoningAgent
    ) -> None:
        epic = await services.work_queue.create(WorkItemType.EPIC, "Checkout")
        reasoning.script("architect", AgentResult(True, '{"stories": []}'))

        agent = ArchitectAgent(services, reasoning)
        assert await agent.process_work_item(epic.id) is False

        item = await services.work_queue.require(epic.id)
        assert item.status == WorkItemStatus.BACKLOG
        assert not item.is_leased()
        assert await services.work_queue.children(epic.id) == []

        errors = [
            h for h in await services.work_queue.history(epic.id) if h.action == HistoryAction.ERROR
        ]
        details = json.loads(errors[0].content or "")
        assert details["error_type"] == "AgentOutputError"
        assert details["role"] == "architect"
        assert details["raw_output"] == '{"stories": []}'


@pytest.mark.asyncio
class TestDeveloperAgent:
    async def test_moves_story_to_review(
        self, services: Services, reasoning: FakeReasoningAgent
    ) -> None:
        story = await services.work_queue.create(
            WorkItemType.STORY, "Cart", status=WorkItemStatus.READY
        )
        assert await DeveloperAgent(services, reasoning, max_concurrent=1).tick() is True

        item = await services.work_queue.require(story.id)
        assert item.status == WorkItemStatus.REVIEW
        assert not item.is_leased()

        statuses = [
            json.loads(h.content or "")["to"]
            for h in reversed(await services.work_queue.history(story.id))
            if h.action == HistoryAction.STATUS_CHANGE
        ]
        assert statuses == ["ready", "in_progress", "review"]
        assert (await services.bus.list_for_agent("reviewer"))[0].work_item_id == story.id

    async def test_admission_cap(self, services: Services, reasoning: FakeReasoningAgent) -> None:
        busy = await services.work_queue.create(
            WorkItemType.STORY, "Busy", status=WorkItemStatus.IN_PROGRESS
        )
        await services.work_queue.create(WorkItemType.STORY, "Next", status=WorkItemStatus.READY)
        await services.leases.claim(busy.id, "developer-other")

        assert await DeveloperAgent(services, reasoning, max_concurrent=1).tick() is False
        assert reasoning.calls == []
        assert await DeveloperAgent(services, reasoning, max_concurrent=2).tick() is True

    async def test_failure_returns_item_to_ready(
        self, services: Services, reasoning: FakeReasoningAgent
    ) -> None:
        story = await services.work_queue.create(
            WorkItemType.STORY, "Cart", status=WorkItemStatus.READY
        )
        reasoning.script("developer", AgentResult(False, "", "timed out after 300s"))

        assert await DeveloperAgent(services, reasoning).process_work_item(story.id) is False

        item = await services.work_queue.require(story.id)
        assert item.status == WorkItemStatus.READY
        assert not item.is_leased()
        assert await services.work_queue.has_unresolved_error(story.id)

    async def test_skips_item_moved_after_listing(
        self, services: Services, reasoning: FakeReasoningAgent, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        moved = await services.work_queue.create(
            WorkItemType.STORY, "Moved", status=WorkItemStatus.READY
        )
        waiting = await services.work_queue.create(
            WorkItemType.STORY, "Waiting", status=WorkItemStatus.READY
        )
        listing = await services.scheduler.list_available()
        await services.scheduler.transition(moved.id, WorkItemStatus.IN_PROGRESS, "developer-other")
        await services.scheduler.transition(moved.id, WorkItemStatus.REVIEW, "developer-other")

        async def outdated_listing() -> list:
            return listing

        monkeypatch.setattr(services.scheduler, "list_available", outdated_listing)

        assert await DeveloperAgent(services, reasoning).tick() is True

        assert len(reasoning.calls) == 1
        assert "Waiting" in reasoning.calls[0][1]
        assert (await services.work_queue.require(waiting.id)).status == WorkItemStatus.REVIEW
        item = await services.work_queue.require(moved.id)
        assert item.status == WorkItemStatus.REVIEW
        assert not item.is_leased()

    async def test_lost_claim(self, services: Services, reasoning: FakeReasoningAgent) -> None:
        story = await services.work_queue.create(
            WorkItemType.STORY, "Cart", status=WorkItemStatus.READY
        )
        await services.leases.claim(story.id, "developer-other")

        assert await DeveloperAgent(services, reasoning).process_work_item(story.id) is False
        assert reasoning.calls == []
        assert (await services.work_queue.require(story.id)).processing_agent_id == "developer-other"


@pytest.mark.asyncio
class TestReviewerAgent:
    async def test_approval_completes_item_and_epic(
        self, services: Services, reasoning: FakeReasoningAgent
    ) -> None:
        epic = await services.work_queue.create(WorkItemType.EPIC, "Checkout")
        story = await services.work_queue.create(
            WorkItemType.STORY, "Cart", parent_id=epic.id, status=WorkItemStatus.REVIEW
        )
        reasoning.script("reviewer", AgentResult(True, '{"approved": true, "feedback": "lgtm"}'))

        assert await ReviewerAgent(services, reasoning).tick() is True

        assert (await services.work_queue.require(story.id)).status == WorkItemStatus.DONE
        assert (await services.work_queue.require(epic.id)).status == WorkItemStatus.DONE

    async def test_rejection_sends_back_with_warning(
        self, services: Services, reasoning: FakeReasoningAgent
    ) -> None:
        story = await services.work_queue.create(
            WorkItemType.STORY, "Cart", status=WorkItemStatus.REVIEW
        )
        reasoning.script(
            "reviewer", AgentResult(True, '{"approved": false, "feedback": "missing tests"}')
        )

        assert await ReviewerAgent(services, reasoning).tick() is True

        assert (await services.work_queue.require(story.id)).status == WorkItemStatus.READY
        warnings = await services.bus.list_for_agent("developer")
        assert warnings[0].message_type == MessageType.WARNING
        assert warnings[0].content == "missing tests"


@pytest.mark.asyncio
class TestBugInvestigatorAgent:
    async def test_turns_error_into_bug(
        self, services: Services, reasoning: FakeReasoningAgent
    ) -> None:
        epic = await services.work_queue.create(WorkItemType.EPIC, "Checkout")
        story = await services.work_queue.create(
            WorkItemType.STORY, "Cart", parent_id=epic.id, status=WorkItemStatus.READY
        )
        await services.work_queue.add_history(
            story.id, HistoryAction.ERROR, '{"error_message": "boom"}', "developer-1"
        )

        agent = BugInvestigatorAgent(services, reasoning)
        assert await agent.tick() is True

        bugs = [c for c in await services.work_queue.children(epic.id) if c.type == WorkItemType.BUG]
        assert len(bugs) == 1
        assert bugs[0].status == WorkItemStatus.READY
        assert not await services.work_queue.has_unresolved_error(story.id)
        assert "boom" in reasoning.calls[0][1]

        notes = await services.bus.list_for_agent("manager")
        assert notes[0].message_type == MessageType.NOTIFICATION
        assert notes[0].work_item_id == bugs[0].id

        assert await agent.tick() is False

    async def test_nothing_to_investigate(
        self, services: Services, reasoning: FakeReasoningAgent
    ) -> None:
        await services.work_queue.create(WorkItemType.STORY, "Cart")
        assert await BugInvestigatorAgent(services, reasoning).tick() is False


@pytest.mark.asyncio
class TestMessageHandling:
    async def test_question_gets_reply(
        self, services: Services, reasoning: FakeReasoningAgent
    ) -> None:
        manager = AgentMessaging(services.bus, "manager")
        question = await manager.ask_question("developer", "Scope?", "Is caching in scope?")

        await DeveloperAgent(services, reasoning).tick()

        replies = await services.bus.list_for_agent("manager")
        assert [r.subject for r in replies] == ["Re: Scope?"]
        assert replies[0].message_type == MessageType.INSIGHT
        assert (await services.bus.get(question.id)).status.value == "processed"  # type: ignore[union-attr]

    async def test_warning_is_noted_on_item(
        self, services: Services, reasoning: FakeReasoningAgent
    ) -> None:
        story = await services.work_queue.create(WorkItemType.STORY, "Cart")
        await AgentMessaging(services.bus, "reviewer").send_warning(
            "manager", "Careful", "flaky test", story.id
        )

        await ManagerAgent(services, reasoning).messaging.check_messages()

        notes = [h.content for h in await services.work_queue.history(story.id)]
        assert "Warning from reviewer: flaky test" in notes


@pytest.mark.asyncio
class TestCreateAgent:
    async def test_developer_gets_configured_cap(
        self, services: Services, reasoning: FakeReasoningAgent, config: Config
    ) -> None:
        agent = create_agent("developer", services, reasoning, config)
        assert isinstance(agent, DeveloperAgent)
        assert agent.max_concurrent == config.max_concurrent_developers

    async def test_other_roles_uncapped(
        self, services: Services, reasoning: FakeReasoningAgent, config: Config
    ) -> None:
        agent = create_agent(AgentRole.REVIEWER, services, reasoning, config)
        assert isinstance(agent, ReviewerAgent)
        assert agent.max_concurrent is None
