from __future__ import annotations

from dataclasses import dataclass

from crewlease.db.database import Database
from crewlease.services.lease_manager import LeaseManager
from crewlease.services.message_bus import MessageBus
from crewlease.services.scheduler import Scheduler
from crewlease.services.work_queue import WorkQueue
from crewlease.utils.config import Config


@dataclass
class Services:
    """The store-backed services one worker process needs."""

    db: Database
    work_queue: WorkQueue
    leases: LeaseManager
    scheduler: Scheduler
    bus: MessageBus

    @classmethod
    def create(cls, db: Database, config: Config) -> Services:
        work_queue = WorkQueue(db)
        leases = LeaseManager(
            db,
            stale_after_seconds=config.lease_stale_seconds,
            sweep_interval=config.sweep_interval,
        )
        return cls(
            db=db,
            work_queue=work_queue,
            leases=leases,
            scheduler=Scheduler(work_queue, leases),
            bus=MessageBus(
                db,
                max_retries=config.message_max_retries,
                retry_base_seconds=config.message_retry_base_seconds,
                claim_timeout_seconds=config.message_claim_timeout_seconds,
            ),
        )
