from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from crewlease.db.database import Database
from crewlease.services.container import Services
from crewlease.services.lease_manager import LeaseManager
from crewlease.services.message_bus import MessageBus
from crewlease.services.reasoning import AgentResult
from crewlease.services.scheduler import Scheduler
from crewlease.services.work_queue import WorkQueue
from crewlease.utils.config import Config


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


class FakeReasoningAgent:
    """Returns scripted results per role and records every prompt."""

    def __init__(self, replies: dict[str, list[AgentResult]] | None = None):
        self.replies: dict[str, list[AgentResult]] = replies or {}
        self.calls: list[tuple[str, str]] = []

    def script(self, role: str, *results: AgentResult) -> None:
        self.replies.setdefault(role, []).extend(results)

    async def execute(self, role: str, prompt: str) -> AgentResult:
        self.calls.append((role, prompt))
        queue = self.replies.get(role)
        if not queue:
            return AgentResult(True, f"{role} done")
        return queue.pop(0)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def db(tmp_path: Path, clock: FakeClock) -> Database:
    database = Database(tmp_path / "test.db", clock=clock)
    await database.initialize()
    yield database  # type: ignore[misc]
    await database.close()


@pytest.fixture
def config(tmp_path: Path) -> Config:
    return Config(db_path=tmp_path / "test.db", working_dir=tmp_path, anthropic_api_key=None)


@pytest.fixture
def work_queue(db: Database) -> WorkQueue:
    return WorkQueue(db)


@pytest.fixture
def leases(db: Database) -> LeaseManager:
    return LeaseManager(db, stale_after_seconds=1800, sweep_interval=3600)


@pytest.fixture
def scheduler(work_queue: WorkQueue, leases: LeaseManager) -> Scheduler:
    return Scheduler(work_queue, leases)


@pytest.fixture
def bus(db: Database) -> MessageBus:
    return MessageBus(db, max_retries=3, retry_base_seconds=60)


@pytest.fixture
def services(
    db: Database,
    work_queue: WorkQueue,
    leases: LeaseManager,
    scheduler: Scheduler,
    bus: MessageBus,
) -> Services:
    return Services(db=db, work_queue=work_queue, leases=leases, scheduler=scheduler, bus=bus)


@pytest.fixture
def reasoning() -> FakeReasoningAgent:
    return FakeReasoningAgent()
