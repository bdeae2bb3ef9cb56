"""Database infrastructure using SQLite with WAL mode.

The store keeps plain rows and enforces only structural constraints
(uniqueness, no self-edges, referential integrity). Graph acyclicity,
gate readiness and close metadata are enforced by the service layer.

Every method accepts an optional ``conn``. Services pass the connection
from :meth:`Database.transaction` so a multi-step workflow commits or
rolls back as a unit; without one, each call runs and commits on its own.
"""

import json
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import aiosqlite
from aiosqlite import Connection
from pydantic import BaseModel

from gur.domain.identifiers import new_root_id
from gur.domain.models import (
    Dependency,
    DependencyType,
    Gate,
    GateResult,
    GateRun,
    GateTaskLink,
    HistoryEntry,
    Task,
    TaskStatus,
    Template,
)
from gur.infrastructure.logger import get_logger

logger = get_logger(__name__)

SCHEMA_VERSION = "1"


def _ts(value: datetime | None) -> str | None:
    """Serialize a timestamp so that text order matches time order."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class OrphanReport(BaseModel):
    """Rows that reference soft-deleted tasks."""

    dependencies: list[Dependency]
    gate_links: list[GateTaskLink]

    @property
    def total(self) -> int:
        return len(self.dependencies) + len(self.gate_links)


class Database:
    """SQLite database with WAL mode for concurrent access."""

    def __init__(self, db_path: Path, busy_timeout_ms: int = 5000) -> None:
        """Initialize database.

        Args:
            db_path: Path to SQLite database file, or ``:memory:``
            busy_timeout_ms: How long a connection waits on a locked database
        """
        self.db_path = db_path
        self.busy_timeout_ms = busy_timeout_ms
        self._initialized = False
        self._shared_conn: Connection | None = None  # For :memory: databases

    @property
    def is_memory(self) -> bool:
        return str(self.db_path) == ":memory:"

    async def initialize(self) -> None:
        """Initialize database schema and settings."""
        if self._initialized:
            return

        if not self.is_memory:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        async with self._get_connection() as conn:
            await conn.execute("PRAGMA journal_mode=WAL")
            await conn.execute("PRAGMA wal_autocheckpoint=1000")
            await self._create_tables(conn)
            await self._create_indexes(conn)
            now = _ts(datetime.now(timezone.utc))
            await conn.executemany(
                "INSERT OR IGNORE INTO config (key, value) VALUES (?, ?)",
                [("schema_version", SCHEMA_VERSION), ("initialized_at", now)],
            )
            await conn.commit()

        self._initialized = True
        logger.debug("database_initialized", path=str(self.db_path))

    async def close(self) -> None:
        """Close the database connection.

        Only needed for :memory: databases to clean up the shared connection.
        File-based databases close connections automatically.
        """
        if self._shared_conn is not None:
            await self._shared_conn.close()
            self._shared_conn = None
            self._initialized = False

    async def _configure(self, conn: Connection) -> None:
        conn.row_factory = aiosqlite.Row
        # Per-connection settings; SQLite defaults foreign_keys to OFF.
        await conn.execute("PRAGMA foreign_keys=ON")
        await conn.execute(f"PRAGMA busy_timeout={int(self.busy_timeout_ms)}")
        await conn.execute("PRAGMA synchronous=NORMAL")
        await conn.execute("PRAGMA cache_size=-64000")
        await conn.execute("PRAGMA temp_store=MEMORY")

    @asynccontextmanager
    async def _get_connection(self) -> AsyncIterator[Connection]:
        """Get database connection with proper settings.

        For :memory: databases, maintains a shared connection to preserve data
        across multiple operations. For file databases, creates a new connection
        each time.
        """
        if self.is_memory:
            if self._shared_conn is None:
                self._shared_conn = await aiosqlite.connect(":memory:")
                await self._configure(self._shared_conn)
            yield self._shared_conn
        else:
            async with aiosqlite.connect(str(self.db_path)) as conn:
                await self._configure(conn)
                yield conn

    @asynccontextmanager
    async def _scoped(self, conn: Connection | None) -> AsyncIterator[Connection]:
        """Yield the caller's connection, or a fresh one for a standalone read."""
        if conn is not None:
            yield conn
        else:
            async with self._get_connection() as own:
                yield own

    @asynccontextmanager
    async def transaction(self, conn: Connection | None = None) -> AsyncIterator[Connection]:
        """Run a block of statements atomically.

        Takes the write lock up front (``BEGIN IMMEDIATE``) so checks made
        inside the block cannot be invalidated by another writer before the
        block commits. Passing an existing transaction connection joins it
        instead of starting a new one.
        """
        if conn is not None:
            yield conn
            return
        async with self._get_connection() as own:
            await own.execute("BEGIN IMMEDIATE")
            try:
                yield own
            except BaseException:
                await own.rollback()
                raise
            await own.commit()

    async def _create_tables(self, conn: Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS tasks (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                notes TEXT NOT NULL DEFAULT '',
                status TEXT NOT NULL DEFAULT 'open'
                    CHECK(status IN ('open', 'in_progress', 'closed', 'archived')),
                priority INTEGER NOT NULL DEFAULT 2 CHECK(priority BETWEEN 0 AND 4),
                type TEXT NOT NULL DEFAULT 'task',
                labels TEXT NOT NULL DEFAULT '[]',
                assignee TEXT,
                parent_id TEXT,
                closed_at TIMESTAMP,
                close_reason TEXT,
                compacted INTEGER NOT NULL DEFAULT 0,
                summary TEXT,
                subtask_counter INTEGER NOT NULL DEFAULT 0,
                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL,
                deleted_at TIMESTAMP,
                FOREIGN KEY (parent_id) REFERENCES tasks(id) ON DELETE CASCADE
            )
            """
        )

        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS dependencies (
                blocker_id TEXT NOT NULL,
                blocked_id TEXT NOT NULL,
                type TEXT NOT NULL DEFAULT 'blocks'
                    CHECK(type IN ('blocks', 'related', 'parent-child')),
                created_at TIMESTAMP NOT NULL,
                PRIMARY KEY (blocker_id, blocked_id),
                FOREIGN KEY (blocker_id) REFERENCES tasks(id) ON DELETE CASCADE,
                FOREIGN KEY (blocked_id) REFERENCES tasks(id) ON DELETE CASCADE,
                CHECK(blocker_id != blocked_id)
            )
            """
        )

        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS gates (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                description TEXT NOT NULL DEFAULT '',
                category TEXT NOT NULL DEFAULT '',
                type TEXT NOT NULL DEFAULT 'manual',
                priority INTEGER NOT NULL DEFAULT 2 CHECK(priority BETWEEN 0 AND 4),
                preconditions TEXT NOT NULL DEFAULT '',
                steps TEXT NOT NULL DEFAULT '',
                expected_result TEXT NOT NULL DEFAULT '',
                command TEXT NOT NULL DEFAULT '',
                labels TEXT NOT NULL DEFAULT '[]',
                last_result TEXT,
                last_run_at TIMESTAMP,
                last_run_by TEXT,
                last_run_notes TEXT,
                run_count INTEGER NOT NULL DEFAULT 0,
                pass_count INTEGER NOT NULL DEFAULT 0,
                fail_count INTEGER NOT NULL DEFAULT 0,
                created_at TIMESTAMP NOT NULL,
                updated_at TIMESTAMP NOT NULL
            )
            """
        )

        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS gate_task_links (
                gate_id TEXT NOT NULL,
                task_id TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending'
                    CHECK(status IN ('pending', 'passed', 'failed', 'skipped')),
                verified_at TIMESTAMP,
                verified_by TEXT,
                notes TEXT,
                created_at TIMESTAMP NOT NULL,
                PRIMARY KEY (gate_id, task_id),
                FOREIGN KEY (gate_id) REFERENCES gates(id) ON DELETE CASCADE,
                FOREIGN KEY (task_id) REFERENCES tasks(id) ON DELETE CASCADE
            )
            """
        )

        # Runs and history outlive purged tasks, so no task foreign keys here.
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS gate_runs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                gate_id TEXT NOT NULL,
                task_id TEXT NOT NULL,
                result TEXT NOT NULL CHECK(result IN ('passed', 'failed', 'skipped')),
                run_by TEXT NOT NULL,
                notes TEXT,
                created_at TIMESTAMP NOT NULL,
                FOREIGN KEY (gate_id) REFERENCES gates(id) ON DELETE CASCADE
            )
            """
        )

        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS task_history (
                id TEXT PRIMARY KEY,
                task_id TEXT NOT NULL,
                field TEXT NOT NULL,
                old_value TEXT NOT NULL,
                new_value TEXT NOT NULL,
                actor TEXT NOT NULL,
                changed_at TIMESTAMP NOT NULL
            )
            """
        )

        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS templates (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL UNIQUE,
                title TEXT NOT NULL DEFAULT '',
                description TEXT NOT NULL DEFAULT '',
                priority INTEGER NOT NULL DEFAULT 2 CHECK(priority BETWEEN 0 AND 4),
                type TEXT NOT NULL DEFAULT 'task',
                labels TEXT NOT NULL DEFAULT '[]',
                created_at TIMESTAMP NOT NULL
            )
            """
        )

        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS config (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
            """
        )

    async def _create_indexes(self, conn: Connection) -> None:
        for statement in (
            "CREATE INDEX IF NOT EXISTS idx_tasks_status_priority ON tasks(status, priority, created_at)",
            "CREATE INDEX IF NOT EXISTS idx_tasks_parent ON tasks(parent_id)",
            "CREATE INDEX IF NOT EXISTS idx_tasks_closed_at ON tasks(closed_at)",
            "CREATE INDEX IF NOT EXISTS idx_dependencies_blocked ON dependencies(blocked_id, type)",
            "CREATE INDEX IF NOT EXISTS idx_gate_links_task ON gate_task_links(task_id, status)",
            "CREATE INDEX IF NOT EXISTS idx_gate_runs_gate ON gate_runs(gate_id, created_at)",
            "CREATE INDEX IF NOT EXISTS idx_history_task ON task_history(task_id, changed_at)",
        ):
            await conn.execute(statement)

    # Config operations
    async def get_config(self, key: str, conn: Connection | None = None) -> str | None:
        async with self._scoped(conn) as c:
            cursor = await c.execute("SELECT value FROM config WHERE key = ?", (key,))
            row = await cursor.fetchone()
            return row["value"] if row else None

    async def set_config(self, key: str, value: str, conn: Connection | None = None) -> None:
        async with self.transaction(conn) as c:
            await c.execute(
                "INSERT INTO config (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (key, value),
            )

    async def list_config(self) -> dict[str, str]:
        async with self._get_connection() as conn:
            cursor = await conn.execute("SELECT key, value FROM config ORDER BY key")
            return {row["key"]: row["value"] for row in await cursor.fetchall()}

    # Task operations
    async def insert_task(self, task: Task, conn: Connection | None = None) -> Task:
        """Insert a new task, assigning a root id when none is set.

        Returns:
            The task as stored (with its id)
        """
        if not task.id:
            task = task.model_copy(update={"id": new_root_id()})
        async with self.transaction(conn) as c:
            await c.execute(
                """
                INSERT INTO tasks (
                    id, title, description, notes, status, priority, type, labels,
                    assignee, parent_id, closed_at, close_reason, compacted, summary,
                    subtask_counter, created_at, updated_at, deleted_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    task.id,
                    task.title,
                    task.description,
                    task.notes,
                    task.status.value,
                    task.priority,
                    task.type,
                    json.dumps(task.labels),
                    task.assignee,
                    task.parent_id,
                    _ts(task.closed_at),
                    task.close_reason,
                    int(task.compacted),
                    task.summary,
                    task.subtask_counter,
                    _ts(task.created_at),
                    _ts(task.updated_at),
                    _ts(task.deleted_at),
                ),
            )
        return task

    async def update_task(self, task: Task, conn: Connection | None = None) -> None:
        """Persist every mutable column of ``task`` and bump updated_at."""
        task.updated_at = datetime.now(timezone.utc)
        async with self.transaction(conn) as c:
            await c.execute(
                """
                UPDATE tasks SET
                    title = ?, description = ?, notes = ?, status = ?, priority = ?,
                    type = ?, labels = ?, assignee = ?, closed_at = ?, close_reason = ?,
                    compacted = ?, summary = ?, updated_at = ?, deleted_at = ?
                WHERE id = ?
                """,
                (
                    task.title,
                    task.description,
                    task.notes,
                    task.status.value,
                    task.priority,
                    task.type,
                    json.dumps(task.labels),
                    task.assignee,
                    _ts(task.closed_at),
                    task.close_reason,
                    int(task.compacted),
                    task.summary,
                    _ts(task.updated_at),
                    _ts(task.deleted_at),
                    task.id,
                ),
            )

    async def next_subtask_ordinal(self, parent_id: str, conn: Connection | None = None) -> int:
        """Reserve the next sibling ordinal under ``parent_id``.

        The counter only grows, so ordinals of deleted subtasks are not reused.
        """
        async with self.transaction(conn) as c:
            await c.execute(
                "UPDATE tasks SET subtask_counter = subtask_counter + 1 WHERE id = ?",
                (parent_id,),
            )
            cursor = await c.execute("SELECT subtask_counter FROM tasks WHERE id = ?", (parent_id,))
            row = await cursor.fetchone()
            return int(row["subtask_counter"])

    async def get_task(
        self, task_id: str, include_deleted: bool = False, conn: Connection | None = None
    ) -> Task | None:
        """Get task by ID."""
        query = "SELECT * FROM tasks WHERE id = ?"
        if not include_deleted:
            query += " AND deleted_at IS NULL"
        async with self._scoped(conn) as c:
            cursor = await c.execute(query, (task_id,))
            row = await cursor.fetchone()
            if row:
                return self._row_to_task(row)
            return None

    async def list_tasks(
        self,
        statuses: Iterable[TaskStatus] | None = None,
        priority: int | None = None,
        task_type: str | None = None,
        assignee: str | None = None,
        label: str | None = None,
        include_archived: bool = False,
        limit: int | None = None,
        conn: Connection | None = None,
    ) -> list[Task]:
        """List non-deleted tasks with optional filters.

        Args:
            statuses: Only these statuses (overrides include_archived)
            priority: Exact priority
            task_type: Exact type
            assignee: Exact assignee
            label: Tasks carrying this label
            include_archived: Include archived tasks when no statuses are given
            limit: Maximum number of tasks to return

        Returns:
            Tasks ordered by priority, newest first within a priority
        """
        where_clauses: list[str] = ["deleted_at IS NULL"]
        params: list[Any] = []

        status_list = [s.value for s in statuses] if statuses else []
        if status_list:
            where_clauses.append(f"status IN ({', '.join('?' for _ in status_list)})")
            params.extend(status_list)
        elif not include_archived:
            where_clauses.append("status != ?")
            params.append(TaskStatus.ARCHIVED.value)

        if priority is not None:
            where_clauses.append("priority = ?")
            params.append(priority)

        if task_type:
            where_clauses.append("type = ?")
            params.append(task_type)

        if assignee:
            where_clauses.append("assignee = ?")
            params.append(assignee)

        if label:
            where_clauses.append("EXISTS (SELECT 1 FROM json_each(tasks.labels) WHERE value = ?)")
            params.append(label)

        query = f"""
            SELECT * FROM tasks
            WHERE {' AND '.join(where_clauses)}
            ORDER BY priority ASC, created_at DESC
        """
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        async with self._scoped(conn) as c:
            cursor = await c.execute(query, tuple(params))
            rows = await cursor.fetchall()
            return [self._row_to_task(row) for row in rows]

    async def search_tasks(
        self, text: str, include_archived: bool = False, limit: int = 100
    ) -> list[Task]:
        """Case-insensitive substring search over title and description."""
        escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        pattern = f"%{escaped}%"
        query = """
            SELECT * FROM tasks
            WHERE deleted_at IS NULL
              AND (title LIKE ? ESCAPE '\\' OR description LIKE ? ESCAPE '\\')
        """
        params: list[Any] = [pattern, pattern]
        if not include_archived:
            query += " AND status != ?"
            params.append(TaskStatus.ARCHIVED.value)
        query += " ORDER BY priority ASC, created_at DESC LIMIT ?"
        params.append(limit)

        async with self._get_connection() as conn:
            cursor = await conn.execute(query, tuple(params))
            return [self._row_to_task(row) for row in await cursor.fetchall()]

    async def list_children(self, parent_id: str, conn: Connection | None = None) -> list[Task]:
        """Direct, non-deleted subtasks of ``parent_id`` in creation order."""
        async with self._scoped(conn) as c:
            cursor = await c.execute(
                "SELECT * FROM tasks WHERE parent_id = ? AND deleted_at IS NULL "
                "ORDER BY created_at ASC, id ASC",
                (parent_id,),
            )
            return [self._row_to_task(row) for row in await cursor.fetchall()]

    async def list_open_children(self, parent_id: str, conn: Connection | None = None) -> list[Task]:
        async with self._scoped(conn) as c:
            cursor = await c.execute(
                "SELECT * FROM tasks WHERE parent_id = ? AND deleted_at IS NULL "
                "AND status NOT IN ('closed', 'archived') ORDER BY id ASC",
                (parent_id,),
            )
            return [self._row_to_task(row) for row in await cursor.fetchall()]

    async def list_subtree_ids(
        self, task_id: str, include_deleted: bool = True, conn: Connection | None = None
    ) -> list[str]:
        """Ids of ``task_id`` and all of its descendants."""
        query = "SELECT id FROM tasks WHERE (id = ? OR id LIKE ?)"
        if not include_deleted:
            query += " AND deleted_at IS NULL"
        async with self._scoped(conn) as c:
            cursor = await c.execute(query + " ORDER BY id", (task_id, f"{task_id}.%"))
            return [row["id"] for row in await cursor.fetchall()]

    async def soft_delete_tasks(self, task_ids: list[str], conn: Connection | None = None) -> int:
        if not task_ids:
            return 0
        placeholders = ", ".join("?" for _ in task_ids)
        now = _ts(datetime.now(timezone.utc))
        async with self.transaction(conn) as c:
            cursor = await c.execute(
                f"UPDATE tasks SET deleted_at = ?, updated_at = ? "
                f"WHERE id IN ({placeholders}) AND deleted_at IS NULL",
                (now, now, *task_ids),
            )
            return cursor.rowcount

    async def purge_tasks(self, task_ids: list[str], conn: Connection | None = None) -> int:
        """Physically delete tasks; edges and gate links cascade."""
        if not task_ids:
            return 0
        placeholders = ", ".join("?" for _ in task_ids)
        async with self.transaction(conn) as c:
            cursor = await c.execute(
                f"DELETE FROM tasks WHERE id IN ({placeholders})", tuple(task_ids)
            )
            return cursor.rowcount

    async def list_done_task_ids(
        self,
        status: TaskStatus,
        before: datetime | None = None,
        compacted: bool | None = None,
        limit: int | None = None,
        conn: Connection | None = None,
    ) -> list[str]:
        """Ids of closed or archived tasks, optionally closed before a cutoff."""
        where_clauses = ["deleted_at IS NULL", "status = ?"]
        params: list[Any] = [status.value]
        if before is not None:
            where_clauses.append("closed_at < ?")
            params.append(_ts(before))
        if compacted is not None:
            where_clauses.append("compacted = ?")
            params.append(int(compacted))
        query = f"SELECT id FROM tasks WHERE {' AND '.join(where_clauses)} ORDER BY closed_at, id"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        async with self._scoped(conn) as c:
            cursor = await c.execute(query, tuple(params))
            return [row["id"] for row in await cursor.fetchall()]

    async def count_tasks_by(self, column: str) -> dict[Any, int]:
        """Count non-deleted tasks grouped by ``status`` or ``priority``."""
        if column not in ("status", "priority", "type"):
            raise ValueError(f"cannot group tasks by {column!r}")
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                f"SELECT {column} AS k, COUNT(*) AS n FROM tasks "
                f"WHERE deleted_at IS NULL GROUP BY {column}"
            )
            return {row["k"]: row["n"] for row in await cursor.fetchall()}

    async def count_tasks_since(self, column: str, since: datetime) -> int:
        if column not in ("created_at", "closed_at"):
            raise ValueError(f"cannot count tasks by {column!r}")
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                f"SELECT COUNT(*) AS n FROM tasks WHERE deleted_at IS NULL AND {column} >= ?",
                (_ts(since),),
            )
            row = await cursor.fetchone()
            return int(row["n"])

    async def count_compacted(self) -> int:
        async with self._get_connection() as conn:
            cursor = await conn.execute(
                "SELECT COUNT(*) AS n FROM tasks WHERE deleted_at IS NULL AND compacted = 1"
            )
            row = await cursor.fetchone()
            return int(row["n"])

    def _row_to_task(self, row: aiosqlite.Row) -> Task:
        """Convert database row to Task model."""
        return Task(
            id=row["id"],
            title=row["title"],
            description=row["description"],
            notes=row["notes"],
            status=TaskStatus(row["status"]),
            priority=row["priority"],
            type=row["type"],
            labels=json.loads(row["labels"]) if row["labels"] else [],
            assignee=row["assignee"],
            parent_id=row["parent_id"],
            closed_at=_parse_ts(row["closed_at"]),
            close_reason=row["close_reason"],
            compacted=bool(row["compacted"]),
            summary=row["summary"],
            subtask_counter=row["subtask_counter"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            deleted_at=_parse_ts(row["deleted_at"]),
        )

    # Dependency operations
    async def insert_dependency(self, dependency: Dependency, conn: Connection | None = None) -> None:
        async with self.transaction(conn) as c:
            await c.execute(
                "INSERT INTO dependencies (blocker_id, blocked_id, type, created_at) "
                "VALUES (?, ?, ?, ?)",
                (
                    dependency.blocker_id,
                    dependency.blocked_id,
                    dependency.type.value,
                    _ts(dependency.created_at),
                ),
            )

    async def get_dependency(
        self, blocker_id: str, blocked_id: str, conn: Connection | None = None
    ) -> Dependency | None:
        async with self._scoped(conn) as c:
            cursor = await c.execute(
                "SELECT * FROM dependencies WHERE blocker_id = ? AND blocked_id = ?",
                (blocker_id, blocked_id),
            )
            row = await cursor.fetchone()
            return self._row_to_dependency(row) if row else None

    async def delete_dependency(
        self, blocker_id: str, blocked_id: str, conn: Connection | None = None
    ) -> bool:
        async with self.transaction(conn) as c:
            cursor = await c.execute(
                "DELETE FROM dependencies WHERE blocker_id = ? AND blocked_id = ?",
                (blocker_id, blocked_id),
            )
            return cursor.rowcount > 0

    async def list_dependencies(
        self,
        blocker_id: str | None = None,
        blocked_id: str | None = None,
        dep_type: DependencyType | None = None,
        conn: Connection | None = None,
    ) -> list[Dependency]:
        where_clauses: list[str] = []
        params: list[Any] = []
        if blocker_id:
            where_clauses.append("blocker_id = ?")
            params.append(blocker_id)
        if blocked_id:
            where_clauses.append("blocked_id = ?")
            params.append(blocked_id)
        if dep_type:
            where_clauses.append("type = ?")
            params.append(dep_type.value)
        where_sql = f"WHERE {' AND '.join(where_clauses)}" if where_clauses else ""

        async with self._scoped(conn) as c:
            cursor = await c.execute(
                f"SELECT * FROM dependencies {where_sql} ORDER BY created_at ASC", tuple(params)
            )
            return [self._row_to_dependency(row) for row in await cursor.fetchall()]

    async def list_blocking_edges(self, conn: Connection | None = None) -> list[tuple[str, str]]:
        """All ``blocks`` edges between live tasks as (blocker, blocked) pairs."""
        async with self._scoped(conn) as c:
            cursor = await c.execute(
                """
                SELECT d.blocker_id, d.blocked_id
                FROM dependencies d
                JOIN tasks a ON a.id = d.blocker_id AND a.deleted_at IS NULL
                JOIN tasks b ON b.id = d.blocked_id AND b.deleted_at IS NULL
                WHERE d.type = 'blocks'
                """
            )
            return [(row["blocker_id"], row["blocked_id"]) for row in await cursor.fetchall()]

    async def list_open_blockers(self, task_id: str, conn: Connection | None = None) -> list[Task]:
        """Live tasks that block ``task_id`` and are neither closed nor archived."""
        async with self._scoped(conn) as c:
            cursor = await c.execute(
                """
                SELECT t.* FROM dependencies d
                JOIN tasks t ON t.id = d.blocker_id
                WHERE d.blocked_id = ? AND d.type = 'blocks'
                  AND t.deleted_at IS NULL
                  AND t.status NOT IN ('closed', 'archived')
                ORDER BY t.priority ASC, t.id ASC
                """,
                (task_id,),
            )
            return [self._row_to_task(row) for row in await cursor.fetchall()]

    async def list_ready_tasks(self, limit: int | None = None) -> list[Task]:
        """Open or in-progress tasks with no open blockers."""
        query = """
            SELECT t.* FROM tasks t
            WHERE t.deleted_at IS NULL
              AND t.status IN ('open', 'in_progress')
              AND NOT EXISTS (
                  SELECT 1 FROM dependencies d
                  JOIN tasks b ON b.id = d.blocker_id
                  WHERE d.blocked_id = t.id AND d.type = 'blocks'
                    AND b.deleted_at IS NULL
                    AND b.status NOT IN ('closed', 'archived')
              )
            ORDER BY t.priority ASC, t.created_at DESC
        """
        params: tuple[Any, ...] = ()
        if limit is not None:
            query += " LIMIT ?"
            params = (limit,)
        async with self._get_connection() as conn:
            cursor = await conn.execute(query, params)
            return [self._row_to_task(row) for row in await cursor.fetchall()]

    def _row_to_dependency(self, row: aiosqlite.Row) -> Dependency:
        return Dependency(
            blocker_id=row["blocker_id"],
            blocked_id=row["blocked_id"],
            type=DependencyType(row["type"]),
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    # Gate operations
    async def insert_gate(self, gate: Gate, conn: Connection | None = None) -> None:
        async with self.transaction(conn) as c:
            await c.execute(
                """
                INSERT INTO gates (
                    id, title, description, category, type, priority, preconditions,
                    steps, expected_result, command, labels, last_result, last_run_at,
                    last_run_by, last_run_notes, run_count, pass_count, fail_count,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    gate.id,
                    gate.title,
                    gate.description,
                    gate.category,
                    gate.type,
                    gate.priority,
                    gate.preconditions,
                    gate.steps,
                    gate.expected_result,
                    gate.command,
                    json.dumps(gate.labels),
                    gate.last_result.value if gate.last_result else None,
                    _ts(gate.last_run_at),
                    gate.last_run_by,
                    gate.last_run_notes,
                    gate.run_count,
                    gate.pass_count,
                    gate.fail_count,
                    _ts(gate.created_at),
                    _ts(gate.updated_at),
                ),
            )

    async def update_gate_run_stats(self, gate: Gate, conn: Connection | None = None) -> None:
        """Persist the lifetime counters and last-run fields of ``gate``."""
        async with self.transaction(conn) as c:
            await c.execute(
                """
                UPDATE gates SET
                    last_result = ?, last_run_at = ?, last_run_by = ?, last_run_notes = ?,
                    run_count = ?, pass_count = ?, fail_count = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    gate.last_result.value if gate.last_result else None,
                    _ts(gate.last_run_at),
                    gate.last_run_by,
                    gate.last_run_notes,
                    gate.run_count,
                    gate.pass_count,
                    gate.fail_count,
                    _ts(gate.updated_at),
                    gate.id,
                ),
            )

    async def get_gate(self, gate_id: str, conn: Connection | None = None) -> Gate | None:
        async with self._scoped(conn) as c:
            cursor = await c.execute("SELECT * FROM gates WHERE id = ?", (gate_id,))
            row = await cursor.fetchone()
            return self._row_to_gate(row) if row else None

    async def list_gates(
        self,
        category: str | None = None,
        gate_type: str | None = None,
        last_result: GateResult | None = None,
    ) -> list[Gate]:
        where_clauses: list[str] = []
        params: list[Any] = []
        if category:
            where_clauses.append("category = ?")
            params.append(category)
        if gate_type:
            where_clauses.append("type = ?")
            params.append(gate_type)
        if last_result:
            where_clauses.append("last_result = ?")
            params.append(last_result.value)
        where_sql = f"WHERE {' AND '.join(where_clauses)}" if where_clauses else ""

        async with self._get_connection() as conn:
            cursor = await conn.execute(
                f"SELECT * FROM gates {where_sql} ORDER BY priority ASC, created_at ASC",
                tuple(params),
            )
            return [self._row_to_gate(row) for row in await cursor.fetchall()]

    def _row_to_gate(self, row: aiosqlite.Row) -> Gate:
        return Gate(
            id=row["id"],
            title=row["title"],
            description=row["description"],
            category=row["category"],
            type=row["type"],
            priority=row["priority"],
            preconditions=row["preconditions"],
            steps=row["steps"],
            expected_result=row["expected_result"],
            command=row["command"],
            labels=json.loads(row["labels"]) if row["labels"] else [],
            last_result=GateResult(row["last_result"]) if row["last_result"] else None,
            last_run_at=_parse_ts(row["last_run_at"]),
            last_run_by=row["last_run_by"],
            last_run_notes=row["last_run_notes"],
            run_count=row["run_count"],
            pass_count=row["pass_count"],
            fail_count=row["fail_count"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    # Gate-task link operations
    async def insert_gate_link(self, link: GateTaskLink, conn: Connection | None = None) -> None:
        async with self.transaction(conn) as c:
            await c.execute(
                """
                INSERT INTO gate_task_links (
                    gate_id, task_id, status, verified_at, verified_by, notes, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    link.gate_id,
                    link.task_id,
                    link.status.value,
                    _ts(link.verified_at),
                    link.verified_by,
                    link.notes,
                    _ts(link.created_at),
                ),
            )

    async def update_gate_link(self, link: GateTaskLink, conn: Connection | None = None) -> None:
        async with self.transaction(conn) as c:
            await c.execute(
                """
                UPDATE gate_task_links
                SET status = ?, verified_at = ?, verified_by = ?, notes = ?
                WHERE gate_id = ? AND task_id = ?
                """,
                (
                    link.status.value,
                    _ts(link.verified_at),
                    link.verified_by,
                    link.notes,
                    link.gate_id,
                    link.task_id,
                ),
            )

    async def delete_gate_link(
        self, gate_id: str, task_id: str, conn: Connection | None = None
    ) -> bool:
        async with self.transaction(conn) as c:
            cursor = await c.execute(
                "DELETE FROM gate_task_links WHERE gate_id = ? AND task_id = ?",
                (gate_id, task_id),
            )
            return cursor.rowcount > 0

    async def get_gate_link(
        self, gate_id: str, task_id: str, conn: Connection | None = None
    ) -> GateTaskLink | None:
        async with self._scoped(conn) as c:
            cursor = await c.execute(
                """
                SELECT l.*, g.title AS gate_title FROM gate_task_links l
                JOIN gates g ON g.id = l.gate_id
                WHERE l.gate_id = ? AND l.task_id = ?
                """,
                (gate_id, task_id),
            )
            row = await cursor.fetchone()
            return self._row_to_gate_link(row) if row else None

    async def list_gate_links(
        self,
        task_id: str | None = None,
        gate_id: str | None = None,
        conn: Connection | None = None,
    ) -> list[GateTaskLink]:
        where_clauses: list[str] = []
        params: list[Any] = []
        if task_id:
            where_clauses.append("l.task_id = ?")
            params.append(task_id)
        if gate_id:
            where_clauses.append("l.gate_id = ?")
            params.append(gate_id)
        where_sql = f"WHERE {' AND '.join(where_clauses)}" if where_clauses else ""

        async with self._scoped(conn) as c:
            cursor = await c.execute(
                f"""
                SELECT l.*, g.title AS gate_title FROM gate_task_links l
                JOIN gates g ON g.id = l.gate_id
                {where_sql}
                ORDER BY g.priority ASC, l.created_at ASC
                """,
                tuple(params),
            )
            return [self._row_to_gate_link(row) for row in await cursor.fetchall()]

    def _row_to_gate_link(self, row: aiosqlite.Row) -> GateTaskLink:
        return GateTaskLink(
            gate_id=row["gate_id"],
            task_id=row["task_id"],
            status=GateResult(row["status"]),
            verified_at=_parse_ts(row["verified_at"]),
            verified_by=row["verified_by"],
            notes=row["notes"],
            created_at=datetime.fromisoformat(row["created_at"]),
            gate_title=row["gate_title"],
        )

    # Gate run operations
    async def insert_gate_run(self, run: GateRun, conn: Connection | None = None) -> GateRun:
        async with self.transaction(conn) as c:
            cursor = await c.execute(
                "INSERT INTO gate_runs (gate_id, task_id, result, run_by, notes, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    run.gate_id,
                    run.task_id,
                    run.result.value,
                    run.run_by,
                    run.notes,
                    _ts(run.created_at),
                ),
            )
            return run.model_copy(update={"id": cursor.lastrowid})

    async def list_gate_runs(
        self, gate_id: str, task_id: str | None = None, limit: int = 20
    ) -> list[GateRun]:
        """Most recent runs of a gate, newest first."""
        query = "SELECT * FROM gate_runs WHERE gate_id = ?"
        params: list[Any] = [gate_id]
        if task_id:
            query += " AND task_id = ?"
            params.append(task_id)
        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)
        async with self._get_connection() as conn:
            cursor = await conn.execute(query, tuple(params))
            return [
                GateRun(
                    id=row["id"],
                    gate_id=row["gate_id"],
                    task_id=row["task_id"],
                    result=GateResult(row["result"]),
                    run_by=row["run_by"],
                    notes=row["notes"],
                    created_at=datetime.fromisoformat(row["created_at"]),
                )
                for row in await cursor.fetchall()
            ]

    # History operations
    async def insert_history(self, entry: HistoryEntry, conn: Connection | None = None) -> None:
        async with self.transaction(conn) as c:
            await c.execute(
                """
                INSERT INTO task_history (
                    id, task_id, field, old_value, new_value, actor, changed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.id,
                    entry.task_id,
                    entry.field,
                    entry.old_value,
                    entry.new_value,
                    entry.actor,
                    _ts(entry.changed_at),
                ),
            )

    async def list_history(
        self, task_id: str, limit: int | None = None, conn: Connection | None = None
    ) -> list[HistoryEntry]:
        """History entries for a task, newest first."""
        query = "SELECT * FROM task_history WHERE task_id = ? ORDER BY changed_at DESC, rowid DESC"
        params: list[Any] = [task_id]
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        async with self._scoped(conn) as c:
            cursor = await c.execute(query, tuple(params))
            return [
                HistoryEntry(
                    id=row["id"],
                    task_id=row["task_id"],
                    field=row["field"],
                    old_value=row["old_value"],
                    new_value=row["new_value"],
                    actor=row["actor"],
                    changed_at=datetime.fromisoformat(row["changed_at"]),
                )
                for row in await cursor.fetchall()
            ]

    # Template operations
    async def insert_template(self, template: Template, conn: Connection | None = None) -> None:
        async with self.transaction(conn) as c:
            await c.execute(
                """
                INSERT INTO templates (
                    id, name, title, description, priority, type, labels, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    template.id,
                    template.name,
                    template.title,
                    template.description,
                    template.priority,
                    template.type,
                    json.dumps(template.labels),
                    _ts(template.created_at),
                ),
            )

    async def get_template(
        self, name_or_id: str, conn: Connection | None = None
    ) -> Template | None:
        async with self._scoped(conn) as c:
            cursor = await c.execute(
                "SELECT * FROM templates WHERE id = ? OR name = ? LIMIT 1",
                (name_or_id, name_or_id),
            )
            row = await cursor.fetchone()
            return self._row_to_template(row) if row else None

    async def list_templates(self) -> list[Template]:
        async with self._get_connection() as conn:
            cursor = await conn.execute("SELECT * FROM templates ORDER BY name ASC")
            return [self._row_to_template(row) for row in await cursor.fetchall()]

    async def delete_template(self, template_id: str) -> bool:
        async with self.transaction() as conn:
            cursor = await conn.execute("DELETE FROM templates WHERE id = ?", (template_id,))
            return cursor.rowcount > 0

    def _row_to_template(self, row: aiosqlite.Row) -> Template:
        return Template(
            id=row["id"],
            name=row["name"],
            title=row["title"],
            description=row["description"],
            priority=row["priority"],
            type=row["type"],
            labels=json.loads(row["labels"]) if row["labels"] else [],
            created_at=datetime.fromisoformat(row["created_at"]),
        )

    # Maintenance
    async def find_orphans(self, conn: Connection | None = None) -> OrphanReport:
        """Edges and gate links that reference soft-deleted tasks."""
        async with self._scoped(conn) as c:
            cursor = await c.execute(
                """
                SELECT d.* FROM dependencies d
                JOIN tasks a ON a.id = d.blocker_id
                JOIN tasks b ON b.id = d.blocked_id
                WHERE a.deleted_at IS NOT NULL OR b.deleted_at IS NOT NULL
                ORDER BY d.created_at
                """
            )
            dependencies = [self._row_to_dependency(row) for row in await cursor.fetchall()]
            cursor = await c.execute(
                """
                SELECT l.*, g.title AS gate_title FROM gate_task_links l
                JOIN gates g ON g.id = l.gate_id
                JOIN tasks t ON t.id = l.task_id
                WHERE t.deleted_at IS NOT NULL
                ORDER BY l.created_at
                """
            )
            links = [self._row_to_gate_link(row) for row in await cursor.fetchall()]
        return OrphanReport(dependencies=dependencies, gate_links=links)
