from __future__ import annotations

import asyncio
import json
from typing import Awaitable, Callable, TypeVar

import click

from crewlease import __version__
from crewlease.models.work_item import AgentRole, WorkItemStatus, WorkItemType

T = TypeVar("T")


def _with_services(
    db_path: str | None, body: Callable[..., Awaitable[T]]
) -> T:
    """Open the store, build the services, run ``body(services, config)``, close."""
    from crewlease.db.database import Database
    from crewlease.services.container import Services
    from crewlease.utils.config import get_config
    from crewlease.utils.logger import setup_logging

    config = get_config()
    setup_logging(config.log_level)

    async def _run() -> T:
        db = Database(db_path or config.db_path)
        await db.initialize()
        try:
            return await body(Services.create(db, config), config)
        finally:
            await db.close()

    return asyncio.run(_run())


db_option = click.option(
    "--db-path",
    default=None,
    help="Path to the shared SQLite database (default: CREWLEASE_DB_PATH).",
)


@click.group()
@click.version_option(version=__version__, prog_name="crewlease")
def main() -> None:
    """CrewLease: lease-based work coordination for role agents."""


@main.command()
@db_option
def init(db_path: str | None) -> None:
    """Initialize the CrewLease database."""

    async def _init(services, config) -> str:
        return str(services.db.db_path)

    click.echo(f"Database initialized at {_with_services(db_path, _init)}")


@main.command()
def version() -> None:
    """Print the version and exit."""
    click.echo(f"crewlease {__version__}")


@main.command()
def serve() -> None:
    """Start the read-only MCP inspection server."""
    from crewlease.server import create_server

    click.echo("Starting CrewLease MCP server...")
    create_server().run()


@main.command()
@click.argument("role", type=click.Choice([r.value for r in AgentRole]))
@db_option
@click.option("--poll-interval", type=float, default=None, help="Seconds between ticks.")
@click.option("--once", is_flag=True, help="Run a single tick and exit.")
def run(role: str, db_path: str | None, poll_interval: float | None, once: bool) -> None:
    """Run one role agent until interrupted."""
    from crewlease.agents import create_agent
    from crewlease.services.reasoning import build_reasoning_agent
    from crewlease.utils.logger import setup_logging

    async def _run(services, config) -> None:
        agent = create_agent(role, services, build_reasoning_agent(config), config)
        setup_logging(config.log_level, worker=agent.agent_id)
        click.echo(f"Agent {agent.agent_id} starting")
        if once:
            worked = await agent.tick()
            click.echo("Worked one item" if worked else "Nothing to do")
            return
        await services.leases.start()
        try:
            await agent.run(poll_interval or config.poll_interval)
        finally:
            await services.leases.stop()

    try:
        _with_services(db_path, _run)
    except KeyboardInterrupt:
        click.echo("Stopped")


@main.command()
@db_option
def sweep(db_path: str | None) -> None:
    """Release every stale lease now."""

    async def _sweep(services, config) -> int:
        return await services.leases.sweep_stale()

    click.echo(f"Released {_with_services(db_path, _sweep)} stale leases")


@main.command()
@db_option
def available(db_path: str | None) -> None:
    """List claimable work items in scheduling order."""

    async def _available(services, config):
        return await services.scheduler.list_available()

    items = _with_services(db_path, _available)
    if not items:
        click.echo("No available work items")
        return
    for item in items:
        click.echo(f"{item.id}  {item.status.value:<11}  {item.type.value:<5}  {item.title}")


@main.command()
@click.argument("work_item_id")
@db_option
def history(work_item_id: str, db_path: str | None) -> None:
    """Show the audit trail of a work item, newest first."""

    async def _history(services, config):
        return await services.work_queue.history(work_item_id)

    for entry in _with_services(db_path, _history):
        click.echo(
            f"{entry.created_at.isoformat()}  {entry.action.value:<13}  "
            f"{entry.created_by}: {entry.content or ''}"
        )


@main.command("dead-letters")
@click.option("--role", default=None, help="Only show one recipient mailbox.")
@db_option
def dead_letters(role: str | None, db_path: str | None) -> None:
    """List dead-lettered messages."""

    async def _dead(services, config):
        return await services.bus.list_dead_letters(role)

    messages = _with_services(db_path, _dead)
    click.echo(json.dumps([m.model_dump(mode="json") for m in messages], indent=2))


@main.command()
@click.argument("message_id")
@db_option
def resurrect(message_id: str, db_path: str | None) -> None:
    """Return a dead letter to the pending queue."""

    async def _resurrect(services, config) -> bool:
        return await services.bus.resurrect(message_id)

    if not _with_services(db_path, _resurrect):
        raise click.ClickException(f"{message_id} is not a dead letter")
    click.echo(f"Message {message_id} resurrected")


@main.command("cleanup-dead-letters")
@click.option("--older-than-days", type=int, default=None, help="Retention in days.")
@db_option
def cleanup_dead_letters(older_than_days: int | None, db_path: str | None) -> None:
    """Delete dead letters past the retention window."""

    async def _cleanup(services, config) -> int:
        days = older_than_days if older_than_days is not None else config.dead_letter_retention_days
        return await services.bus.cleanup_dead_letters(days)

    click.echo(f"Deleted {_with_services(db_path, _cleanup)} dead letters")


@main.command()
@click.argument("item_type", type=click.Choice([t.value for t in WorkItemType]))
@click.argument("title")
@click.option("--description", default=None)
@click.option("--parent", "parent_id", default=None, help="Parent work item ID.")
@click.option(
    "--status",
    type=click.Choice([s.value for s in WorkItemStatus]),
    default=WorkItemStatus.BACKLOG.value,
    show_default=True,
)
@click.option("--priority", type=int, default=None)
@db_option
def create(
    item_type: str,
    title: str,
    description: str | None,
    parent_id: str | None,
    status: str,
    priority: int | None,
    db_path: str | None,
) -> None:
    """Create a work item."""
    from crewlease.errors import InvalidWorkItemError

    async def _create(services, config):
        item = await services.work_queue.create(
            WorkItemType(item_type),
            title,
            description=description,
            parent_id=parent_id,
            status=WorkItemStatus(status),
            priority=priority,
            created_by="cli",
        )
        if item.parent_id:
            epic = await services.work_queue.epic_ancestor(item.parent_id)
            if epic is not None:
                await services.scheduler.recompute_epic_status(epic.id, "cli")
        return item

    try:
        item = _with_services(db_path, _create)
    except InvalidWorkItemError as exc:
        raise click.ClickException(str(exc)) from exc
    click.echo(f"Created {item.type.value} {item.id}: {item.title}")
