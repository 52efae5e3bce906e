from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator

from crewlease.db.database import Database, to_timestamp
from crewlease.services.ticker import Ticker

logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER_SECONDS = 1800


class LeaseManager:
    """Lease-based claim/release over work items.

    Design:
    - A lease is the pair (``processing_agent_id``, ``processing_started_at``)
      on the work item row; there is no in-memory lock table.
    - Every claim/release/refresh is one conditional UPDATE. The affected
      row count is the only synchronisation primitive, so two processes
      racing for the same item see exactly one winner.
    - A lease older than ``stale_after`` is claimable by anyone, and the
      maintenance sweep clears it regardless of holder.
    """

    def __init__(
        self,
        db: Database,
        stale_after_seconds: int = DEFAULT_STALE_AFTER_SECONDS,
        sweep_interval: int = 60,
    ):
        self.db = db
        self.stale_after = timedelta(seconds=stale_after_seconds)
        self._sweeper = Ticker(sweep_interval, self.sweep_stale, name="lease-sweep")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the periodic stale-lease sweep."""
        self._sweeper.start()
        logger.info("LeaseManager started (stale after %s)", self.stale_after)

    async def stop(self) -> None:
        await self._sweeper.stop()
        logger.info("LeaseManager stopped")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def stale_cutoff(self) -> str:
        """Leases started before this timestamp are stale."""
        return to_timestamp(self.db.clock() - self.stale_after)

    async def claim(self, work_item_id: str, agent_id: str) -> bool:
        """Take the lease if it is free or stale. Never raises on contention."""
        ok = await self.db.claim_work_item(work_item_id, agent_id, self.stale_cutoff())
        if ok:
            logger.info("Work item %s claimed by %s", work_item_id, agent_id)
        else:
            logger.debug("Claim on %s by %s lost (leased or missing)", work_item_id, agent_id)
        return ok

    async def release(self, work_item_id: str, agent_id: str) -> bool:
        """Clear the lease. Only the holder can release."""
        ok = await self.db.release_work_item(work_item_id, agent_id)
        if ok:
            logger.info("Work item %s released by %s", work_item_id, agent_id)
        else:
            logger.warning(
                "Agent %s tried to release %s without holding its lease", agent_id, work_item_id
            )
        return ok

    async def refresh_lease(self, work_item_id: str, agent_id: str) -> bool:
        """Restart the staleness clock of a lease the caller holds."""
        ok = await self.db.refresh_lease(work_item_id, agent_id)
        if not ok:
            logger.warning("Lease refresh on %s by %s failed: not the holder", work_item_id, agent_id)
        return ok

    async def sweep_stale(self) -> int:
        """Clear every stale lease regardless of holder; return how many were cleared."""
        released = await self.db.release_stale_leases(self.stale_cutoff())
        for item_id, holder in released:
            logger.warning("Released stale lease on %s held by %s", item_id, holder)
        return len(released)

    async def holder(self, work_item_id: str) -> dict[str, Any] | None:
        """Return the current lease on an item, or None if it is free."""
        row = await self.db.get_work_item(work_item_id)
        if not row or row["processing_agent_id"] is None:
            return None
        started_at = datetime.fromisoformat(row["processing_started_at"])
        return {
            "agent_id": row["processing_agent_id"],
            "started_at": row["processing_started_at"],
            "stale": started_at < self.db.clock() - self.stale_after,
        }

    @asynccontextmanager
    async def keep_alive(
        self, work_item_id: str, agent_id: str, interval: float | None = None
    ) -> AsyncIterator[None]:
        """Refresh the lease in the background while the body runs."""
        period = interval if interval is not None else self.stale_after.total_seconds() / 3

        async def _refresh_loop() -> None:
            while True:
                await asyncio.sleep(period)
                if not await self.refresh_lease(work_item_id, agent_id):
                    return

        task = asyncio.create_task(_refresh_loop())
        try:
            yield
        finally:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
