from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from importlib import resources
from pathlib import Path
from typing import Any, AsyncIterator, Callable

import aiosqlite

logger = logging.getLogger(__name__)

_DEFAULT_DB_PATH = Path("data/crewlease.db")

Clock = Callable[[], datetime]

_AVAILABLE_ORDER = """
    ORDER BY
        CASE status
            WHEN 'review' THEN 1
            WHEN 'in_progress' THEN 2
            WHEN 'ready' THEN 3
            ELSE 4
        END,
        CASE type
            WHEN 'bug' THEN 1
            WHEN 'story' THEN 2
            WHEN 'task' THEN 3
            WHEN 'epic' THEN 4
        END,
        created_at ASC,
        rowid ASC
"""

_DELIVERY_ORDER = """
    ORDER BY
        CASE priority
            WHEN 'urgent' THEN 1
            WHEN 'high' THEN 2
            WHEN 'medium' THEN 3
            WHEN 'low' THEN 4
        END,
        created_at ASC,
        rowid ASC
"""

# One placeholder: the cutoff before which a ``read`` claim counts as abandoned.
_CLAIMABLE = """(
    status IN ('pending', 'delivered')
    OR (status = 'read' AND read_at < ?)
)"""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_timestamp(value: datetime) -> str:
    """Serialise a datetime so that string order equals time order."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def generate_id(prefix: str) -> str:
    """Return an id like ``STORY-18F3A2C4B1D-9E2F1A``."""
    millis = format(int(time.time() * 1000), "x")
    return f"{prefix}-{millis}-{uuid.uuid4().hex[:6]}".upper()


class Database:
    """Async SQLite layer shared by every crewlease service.

    Holds a single persistent connection with WAL mode. Each worker process
    opens its own ``Database``; SQLite serialises writers across processes.
    Inside one process, write units take ``_mu`` so coroutines sharing the
    connection never interleave inside a transaction.
    """

    def __init__(
        self,
        db_path: str | Path | None = None,
        clock: Clock | None = None,
        busy_timeout: float = 5.0,
    ):
        self.db_path = Path(db_path) if db_path else _DEFAULT_DB_PATH
        self.clock: Clock = clock or utcnow
        self._busy_timeout = busy_timeout
        self._conn: aiosqlite.Connection | None = None
        self._mu = asyncio.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Create the database file, apply the schema, and open the persistent connection."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        schema_sql = (
            resources.files("crewlease").joinpath("db", "schema.sql").read_text()
        )

        self._conn = await aiosqlite.connect(self.db_path, timeout=self._busy_timeout)
        self._conn.row_factory = aiosqlite.Row
        await self._conn.execute("PRAGMA journal_mode=WAL")
        await self._conn.execute("PRAGMA foreign_keys=ON")
        await self._conn.executescript(schema_sql)
        await self._conn.commit()

        logger.info("Database initialized at %s", self.db_path)

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    @property
    def conn(self) -> aiosqlite.Connection:
        assert self._conn is not None, "Database not initialized; call initialize() first"
        return self._conn

    def now(self) -> str:
        return to_timestamp(self.clock())

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Run a write unit under ``BEGIN IMMEDIATE``; roll back and re-raise on error."""
        async with self._mu:
            await self.conn.execute("BEGIN IMMEDIATE")
            try:
                yield self.conn
            except BaseException:
                await self.conn.rollback()
                raise
            else:
                await self.conn.commit()

    async def _fetchone(self, sql: str, params: tuple[Any, ...] = ()) -> dict[str, Any] | None:
        cursor = await self.conn.execute(sql, params)
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def _fetchall(self, sql: str, params: tuple[Any, ...] = ()) -> list[dict[str, Any]]:
        cursor = await self.conn.execute(sql, params)
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    @staticmethod
    async def _insert_history(
        conn: aiosqlite.Connection,
        work_item_id: str,
        action: str,
        content: str | None,
        created_by: str,
        created_at: str,
    ) -> int:
        cursor = await conn.execute(
            """
            INSERT INTO work_history (work_item_id, action, content, created_by, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (work_item_id, action, content, created_by, created_at),
        )
        return cursor.lastrowid  # type: ignore[return-value]

    # ------------------------------------------------------------------
    # Work item operations
    # ------------------------------------------------------------------

    async def create_work_item(
        self,
        item_id: str,
        item_type: str,
        title: str,
        description: str | None,
        parent_id: str | None,
        status: str,
        priority: int | None,
        created_by: str,
    ) -> None:
        now = self.now()
        async with self.transaction() as conn:
            await conn.execute(
                """
                INSERT INTO work_items
                    (id, type, parent_id, title, description, status, priority,
                     created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (item_id, item_type, parent_id, title, description, status, priority, now, now),
            )
            await self._insert_history(
                conn,
                item_id,
                "status_change",
                json.dumps({"from": None, "to": status}),
                created_by,
                now,
            )

    async def get_work_item(self, item_id: str) -> dict[str, Any] | None:
        return await self._fetchone("SELECT * FROM work_items WHERE id = ?", (item_id,))

    async def get_work_items(self, status: str | None = None) -> list[dict[str, Any]]:
        if status:
            return await self._fetchall(
                "SELECT * FROM work_items WHERE status = ? ORDER BY created_at DESC, rowid DESC",
                (status,),
            )
        return await self._fetchall(
            "SELECT * FROM work_items ORDER BY created_at DESC, rowid DESC"
        )

    async def get_child_work_items(self, parent_id: str) -> list[dict[str, Any]]:
        return await self._fetchall(
            "SELECT * FROM work_items WHERE parent_id = ? ORDER BY created_at ASC, rowid ASC",
            (parent_id,),
        )

    async def update_work_item_status(
        self,
        item_id: str,
        status: str,
        actor: str,
        guard: Callable[[dict[str, Any]], None] | None = None,
    ) -> str | None:
        """Set ``status`` and append one ``status_change`` row atomically.

        ``guard`` sees the current row inside the transaction and may raise
        to abort. Returns the previous status, or None if the item is missing.
        """
        now = self.now()
        async with self.transaction() as conn:
            cursor = await conn.execute(
                "SELECT type, status FROM work_items WHERE id = ?", (item_id,)
            )
            row = await cursor.fetchone()
            if row is None:
                return None
            current = dict(row)
            if guard:
                guard(current)
            await conn.execute(
                "UPDATE work_items SET status = ?, updated_at = ? WHERE id = ?",
                (status, now, item_id),
            )
            await self._insert_history(
                conn,
                item_id,
                "status_change",
                json.dumps({"from": current["status"], "to": status}),
                actor,
                now,
            )
        return current["status"]

    async def set_assigned_role(self, item_id: str, role: str, actor: str) -> bool:
        now = self.now()
        async with self.transaction() as conn:
            cursor = await conn.execute(
                "UPDATE work_items SET assigned_role = ?, updated_at = ? WHERE id = ?",
                (role, now, item_id),
            )
            if cursor.rowcount != 1:
                return False
            await self._insert_history(
                conn, item_id, "decision", json.dumps({"assigned_role": role}), actor, now
            )
        return True

    async def count_work_items_by_status(self) -> dict[str, int]:
        rows = await self._fetchall(
            "SELECT status, COUNT(*) AS count FROM work_items GROUP BY status"
        )
        return {row["status"]: row["count"] for row in rows}

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    async def add_history(
        self, item_id: str, action: str, content: str | None, created_by: str
    ) -> int:
        async with self.transaction() as conn:
            return await self._insert_history(
                conn, item_id, action, content, created_by, self.now()
            )

    async def get_history(self, item_id: str) -> list[dict[str, Any]]:
        return await self._fetchall(
            "SELECT * FROM work_history WHERE work_item_id = ? ORDER BY id DESC",
            (item_id,),
        )

    async def get_recent_errors(self, since: str) -> list[dict[str, Any]]:
        return await self._fetchall(
            """
            SELECT * FROM work_history
            WHERE action = 'error' AND created_at > ?
            ORDER BY id DESC
            """,
            (since,),
        )

    async def has_unresolved_error(self, item_id: str) -> bool:
        row = await self._fetchone(
            """
            SELECT COUNT(*) AS count FROM work_history h1
            WHERE h1.work_item_id = ?
              AND h1.action = 'error'
              AND NOT EXISTS (
                  SELECT 1 FROM work_history h2
                  WHERE h2.work_item_id = h1.work_item_id
                    AND h2.action = 'agent_output'
                    AND h2.id > h1.id
                    AND h2.content LIKE '%error resolved%'
              )
            """,
            (item_id,),
        )
        return bool(row and row["count"])

    # ------------------------------------------------------------------
    # Lease operations
    # ------------------------------------------------------------------

    async def claim_work_item(self, item_id: str, agent_id: str, stale_before: str) -> bool:
        now = self.now()
        async with self.transaction() as conn:
            cursor = await conn.execute(
                """
                UPDATE work_items
                SET processing_agent_id = ?, processing_started_at = ?, updated_at = ?
                WHERE id = ?
                  AND (processing_agent_id IS NULL OR processing_started_at < ?)
                """,
                (agent_id, now, now, item_id, stale_before),
            )
            if cursor.rowcount != 1:
                return False
            await self._insert_history(
                conn, item_id, "agent_output", f"claimed by {agent_id}", agent_id, now
            )
        return True

    async def release_work_item(self, item_id: str, agent_id: str) -> bool:
        now = self.now()
        async with self.transaction() as conn:
            cursor = await conn.execute(
                """
                UPDATE work_items
                SET processing_agent_id = NULL, processing_started_at = NULL, updated_at = ?
                WHERE id = ? AND processing_agent_id = ?
                """,
                (now, item_id, agent_id),
            )
            if cursor.rowcount != 1:
                return False
            await self._insert_history(
                conn, item_id, "agent_output", f"released by {agent_id}", agent_id, now
            )
        return True

    async def refresh_lease(self, item_id: str, agent_id: str) -> bool:
        now = self.now()
        async with self.transaction() as conn:
            cursor = await conn.execute(
                """
                UPDATE work_items
                SET processing_started_at = ?, updated_at = ?
                WHERE id = ? AND processing_agent_id = ?
                """,
                (now, now, item_id, agent_id),
            )
        return cursor.rowcount == 1

    async def release_stale_leases(self, stale_before: str) -> list[tuple[str, str]]:
        """Clear every lease started before ``stale_before``; return (item, holder) pairs."""
        now = self.now()
        released: list[tuple[str, str]] = []
        async with self.transaction() as conn:
            cursor = await conn.execute(
                """
                SELECT id, processing_agent_id, processing_started_at FROM work_items
                WHERE processing_agent_id IS NOT NULL AND processing_started_at < ?
                """,
                (stale_before,),
            )
            for row in await cursor.fetchall():
                update = await conn.execute(
                    """
                    UPDATE work_items
                    SET processing_agent_id = NULL, processing_started_at = NULL, updated_at = ?
                    WHERE id = ? AND processing_agent_id = ? AND processing_started_at = ?
                    """,
                    (now, row["id"], row["processing_agent_id"], row["processing_started_at"]),
                )
                if update.rowcount == 1:
                    await self._insert_history(
                        conn,
                        row["id"],
                        "agent_output",
                        f"stale lease of {row['processing_agent_id']} released",
                        "system",
                        now,
                    )
                    released.append((row["id"], row["processing_agent_id"]))
        return released

    async def get_available_work_items(self, stale_before: str) -> list[dict[str, Any]]:
        return await self._fetchall(
            f"""
            SELECT * FROM work_items
            WHERE status != 'done'
              AND (processing_agent_id IS NULL OR processing_started_at < ?)
            {_AVAILABLE_ORDER}
            """,
            (stale_before,),
        )

    async def count_active_lease_holders(self, prefix: str, stale_before: str) -> int:
        row = await self._fetchone(
            """
            SELECT COUNT(DISTINCT processing_agent_id) AS count FROM work_items
            WHERE substr(processing_agent_id, 1, ?) = ?
              AND processing_started_at >= ?
            """,
            (len(prefix), prefix, stale_before),
        )
        return row["count"] if row else 0

    # ------------------------------------------------------------------
    # Message operations
    # ------------------------------------------------------------------

    async def create_message(
        self,
        message_id: str,
        from_agent: str,
        to_agent: str,
        message_type: str,
        subject: str,
        content: str,
        work_item_id: str | None,
        priority: str,
    ) -> dict[str, Any]:
        async with self.transaction() as conn:
            await conn.execute(
                """
                INSERT INTO agent_messages
                    (id, from_agent, to_agent, message_type, subject, content,
                     work_item_id, priority, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message_id,
                    from_agent,
                    to_agent,
                    message_type,
                    subject,
                    content,
                    work_item_id,
                    priority,
                    self.now(),
                ),
            )
            cursor = await conn.execute(
                "SELECT * FROM agent_messages WHERE id = ?", (message_id,)
            )
            row = await cursor.fetchone()
        return dict(row)

    async def get_message(self, message_id: str) -> dict[str, Any] | None:
        return await self._fetchone(
            "SELECT * FROM agent_messages WHERE id = ?", (message_id,)
        )

    async def get_messages_for_agent(
        self, agent_id: str, status: str | None = None
    ) -> list[dict[str, Any]]:
        sql = "SELECT * FROM agent_messages WHERE to_agent = ? AND is_dead_letter = 0"
        params: list[Any] = [agent_id]
        if status:
            sql += " AND status = ?"
            params.append(status)
        return await self._fetchall(f"{sql} {_DELIVERY_ORDER}", tuple(params))

    async def get_deliverable_messages(
        self, agent_id: str, claim_stale_before: str
    ) -> list[dict[str, Any]]:
        """Messages waiting for a handler: unclaimed, or claimed by a worker that vanished."""
        return await self._fetchall(
            f"""
            SELECT * FROM agent_messages
            WHERE to_agent = ? AND is_dead_letter = 0 AND {_CLAIMABLE}
            {_DELIVERY_ORDER}
            """,
            (agent_id, claim_stale_before),
        )

    async def get_messages_for_work_item(self, work_item_id: str) -> list[dict[str, Any]]:
        return await self._fetchall(
            "SELECT * FROM agent_messages WHERE work_item_id = ? ORDER BY created_at ASC, rowid ASC",
            (work_item_id,),
        )

    async def mark_message_delivered(self, message_id: str) -> bool:
        async with self.transaction() as conn:
            cursor = await conn.execute(
                """
                UPDATE agent_messages SET status = 'delivered', delivered_at = ?
                WHERE id = ? AND status = 'pending' AND is_dead_letter = 0
                """,
                (self.now(), message_id),
            )
        return cursor.rowcount == 1

    async def claim_message(self, message_id: str, claim_stale_before: str) -> bool:
        """Move a waiting message to ``read``; False if another worker holds it."""
        async with self.transaction() as conn:
            cursor = await conn.execute(
                f"""
                UPDATE agent_messages SET status = 'read', read_at = ?
                WHERE id = ? AND is_dead_letter = 0 AND {_CLAIMABLE}
                """,
                (self.now(), message_id, claim_stale_before),
            )
        return cursor.rowcount == 1

    async def release_message_claim(self, message_id: str) -> bool:
        """Put an interrupted message back in the queue without spending a retry."""
        async with self.transaction() as conn:
            cursor = await conn.execute(
                """
                UPDATE agent_messages SET status = 'pending', read_at = NULL
                WHERE id = ? AND status = 'read' AND is_dead_letter = 0
                """,
                (message_id,),
            )
        return cursor.rowcount == 1

    async def mark_message_processed(self, message_id: str) -> bool:
        async with self.transaction() as conn:
            cursor = await conn.execute(
                """
                UPDATE agent_messages SET status = 'processed', processed_at = ?
                WHERE id = ? AND status = 'read' AND is_dead_letter = 0
                """,
                (self.now(), message_id),
            )
        return cursor.rowcount == 1

    async def record_message_failure(
        self, message_id: str, error_message: str, max_retries: int
    ) -> dict[str, Any] | None:
        """Bump ``retry_count``; dead-letter the message once it reaches ``max_retries``."""
        async with self.transaction() as conn:
            cursor = await conn.execute(
                """
                UPDATE agent_messages
                SET retry_count = retry_count + 1,
                    last_retry_at = ?,
                    error_message = ?,
                    read_at = NULL,
                    status = CASE WHEN retry_count + 1 >= ? THEN 'failed' ELSE 'pending' END,
                    is_dead_letter = CASE WHEN retry_count + 1 >= ? THEN 1 ELSE 0 END
                WHERE id = ? AND status IN ('pending', 'delivered', 'read')
                  AND is_dead_letter = 0
                """,
                (self.now(), error_message, max_retries, max_retries, message_id),
            )
            if cursor.rowcount != 1:
                return None
            row_cursor = await conn.execute(
                "SELECT * FROM agent_messages WHERE id = ?", (message_id,)
            )
            row = await row_cursor.fetchone()
        return dict(row) if row else None

    async def get_retry_candidates(
        self, agent_id: str, max_retries: int, claim_stale_before: str
    ) -> list[dict[str, Any]]:
        return await self._fetchall(
            f"""
            SELECT * FROM agent_messages
            WHERE to_agent = ?
              AND is_dead_letter = 0
              AND {_CLAIMABLE}
              AND retry_count > 0
              AND retry_count < ?
            {_DELIVERY_ORDER}
            """,
            (agent_id, claim_stale_before, max_retries),
        )

    async def get_dead_letters(self, agent_id: str | None = None) -> list[dict[str, Any]]:
        if agent_id:
            return await self._fetchall(
                """
                SELECT * FROM agent_messages
                WHERE is_dead_letter = 1 AND to_agent = ?
                ORDER BY last_retry_at DESC
                """,
                (agent_id,),
            )
        return await self._fetchall(
            "SELECT * FROM agent_messages WHERE is_dead_letter = 1 ORDER BY last_retry_at DESC"
        )

    async def resurrect_message(self, message_id: str) -> bool:
        async with self.transaction() as conn:
            cursor = await conn.execute(
                """
                UPDATE agent_messages
                SET is_dead_letter = 0,
                    status = 'pending',
                    retry_count = 0,
                    error_message = NULL,
                    last_retry_at = NULL
                WHERE id = ? AND is_dead_letter = 1
                """,
                (message_id,),
            )
        return cursor.rowcount == 1

    async def delete_dead_letters(self, older_than: str) -> int:
        async with self.transaction() as conn:
            cursor = await conn.execute(
                "DELETE FROM agent_messages WHERE is_dead_letter = 1 AND last_retry_at < ?",
                (older_than,),
            )
        return cursor.rowcount

    async def get_message_stats(self, agent_id: str) -> dict[str, Any]:
        by_status = await self._fetchall(
            """
            SELECT status, COUNT(*) AS count FROM agent_messages
            WHERE to_agent = ? GROUP BY status
            """,
            (agent_id,),
        )
        dead = await self._fetchone(
            """
            SELECT COUNT(*) AS count FROM agent_messages
            WHERE to_agent = ? AND is_dead_letter = 1
            """,
            (agent_id,),
        )
        by_priority = await self._fetchall(
            """
            SELECT priority, COUNT(*) AS count FROM agent_messages
            WHERE to_agent = ? AND status = 'pending' AND is_dead_letter = 0
            GROUP BY priority
            """,
            (agent_id,),
        )
        by_type = await self._fetchall(
            """
            SELECT message_type, COUNT(*) AS count FROM agent_messages
            WHERE to_agent = ? GROUP BY message_type
            """,
            (agent_id,),
        )
        return {
            "by_status": {r["status"]: r["count"] for r in by_status},
            "dead_letter": dead["count"] if dead else 0,
            "by_priority": {r["priority"]: r["count"] for r in by_priority},
            "by_type": {r["message_type"]: r["count"] for r in by_type},
        }
