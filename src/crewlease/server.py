from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from mcp.server.fastmcp import FastMCP

from crewlease.db.database import Database
from crewlease.services.container import Services
from crewlease.tools import messages as message_tools
from crewlease.tools import work as work_tools
from crewlease.utils.config import get_config
from crewlease.utils.logger import setup_logging

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(server: FastMCP) -> AsyncIterator[None]:
    """Startup / shutdown lifecycle for the inspection server."""
    config = get_config()

    db = Database(config.db_path)
    await db.initialize()
    services = Services.create(db, config)

    work_tools.register(server, services.work_queue, services.scheduler, services.leases)
    message_tools.register(server, services.bus)

    @server.resource("crewlease://stats")
    async def get_stats() -> str:
        counts = await services.work_queue.counts_by_status()
        available = await services.scheduler.list_available()
        dead_letters = await services.bus.list_dead_letters()
        lines = ["CrewLease Status:"]
        lines += [f"- {status}: {count}" for status, count in sorted(counts.items())]
        lines.append(f"- Available Work Items: {len(available)}")
        lines.append(f"- Dead Letters: {len(dead_letters)}")
        return "\n".join(lines) + "\n"

    logger.info("CrewLease MCP server ready (db=%s)", config.db_path)

    try:
        yield
    finally:
        await db.close()
        logger.info("CrewLease MCP server stopped")


def create_server() -> FastMCP:
    """Build and return the configured FastMCP server."""
    config = get_config()
    setup_logging(config.log_level)
    return FastMCP("CrewLease", lifespan=lifespan)


if __name__ == "__main__":
    create_server().run()
