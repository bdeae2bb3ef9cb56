"""Tests for the SQLite store: schema, transactions and persistence."""

import sqlite3
from datetime import datetime, timezone
from pathlib import Path

import pytest
from gur.domain.models import Dependency, DependencyType, Gate, GateTaskLink, Task, TaskStatus
from gur.infrastructure.database import Database


@pytest.mark.asyncio
class TestSchema:
    """Test schema setup."""

    async def test_initialize_records_schema_version(self, memory_db: Database) -> None:
        config = await memory_db.list_config()

        assert config["schema_version"] == "1"
        assert "initialized_at" in config

    async def test_initialize_is_idempotent(self, file_db: Database, temp_db_path: Path) -> None:
        again = Database(temp_db_path)
        await again.initialize()

        assert await again.get_config("schema_version") == "1"

    async def test_wal_mode(self, file_db: Database, temp_db_path: Path) -> None:
        with sqlite3.connect(temp_db_path) as conn:
            mode = conn.execute("PRAGMA journal_mode").fetchone()[0]

        assert mode == "wal"

    async def test_config_round_trip(self, memory_db: Database) -> None:
        await memory_db.set_config("mode", "local")
        await memory_db.set_config("mode", "shared")

        assert await memory_db.get_config("mode") == "shared"
        assert await memory_db.get_config("missing") is None


@pytest.mark.asyncio
class TestTasks:
    """Test task persistence."""

    async def test_insert_assigns_root_id(self, memory_db: Database) -> None:
        task = await memory_db.insert_task(Task(title="Persist me", labels=["x"]))

        loaded = await memory_db.get_task(task.id)

        assert loaded is not None
        assert loaded.id.startswith("gur-")
        assert loaded.labels == ["x"]
        assert loaded.created_at == task.created_at

    async def test_persists_across_connections(self, file_db: Database, temp_db_path: Path) -> None:
        task = await file_db.insert_task(Task(title="Durable"))

        reopened = Database(temp_db_path)
        await reopened.initialize()

        loaded = await reopened.get_task(task.id)
        assert loaded is not None
        assert loaded.title == "Durable"

    async def test_subtask_counter_only_grows(self, memory_db: Database) -> None:
        parent = await memory_db.insert_task(Task(title="Parent"))

        first = await memory_db.next_subtask_ordinal(parent.id)
        second = await memory_db.next_subtask_ordinal(parent.id)

        assert (first, second) == (1, 2)
        loaded = await memory_db.get_task(parent.id)
        assert loaded is not None
        assert loaded.subtask_counter == 2

    async def test_priority_check_constraint(self, memory_db: Database) -> None:
        task = Task(title="Bad priority")
        task.priority = 9

        with pytest.raises(sqlite3.IntegrityError):
            await memory_db.insert_task(task)

    async def test_soft_delete_hides_rows(self, memory_db: Database) -> None:
        task = await memory_db.insert_task(Task(title="Hide me"))

        assert await memory_db.soft_delete_tasks([task.id]) == 1

        assert await memory_db.get_task(task.id) is None
        assert await memory_db.get_task(task.id, include_deleted=True) is not None
        assert await memory_db.list_tasks() == []

    async def test_subtree_ids_do_not_match_sibling_prefixes(self, memory_db: Database) -> None:
        parent = await memory_db.insert_task(Task(title="Parent"))
        for ordinal in (1, 10):
            await memory_db.insert_task(
                Task(id=f"{parent.id}.{ordinal}", title=f"Child {ordinal}", parent_id=parent.id)
            )
        await memory_db.insert_task(
            Task(id=f"{parent.id}.1.1", title="Grandchild", parent_id=f"{parent.id}.1")
        )

        subtree = await memory_db.list_subtree_ids(f"{parent.id}.1")

        assert subtree == [f"{parent.id}.1", f"{parent.id}.1.1"]

    async def test_done_ids_filter(self, memory_db: Database) -> None:
        closed = await memory_db.insert_task(
            Task(
                title="Closed",
                status=TaskStatus.CLOSED,
                closed_at=datetime.now(timezone.utc),
                close_reason="done",
            )
        )
        await memory_db.insert_task(Task(title="Open"))

        assert await memory_db.list_done_task_ids(TaskStatus.CLOSED) == [closed.id]
        assert await memory_db.list_done_task_ids(TaskStatus.ARCHIVED) == []


@pytest.mark.asyncio
class TestTransactions:
    """Test atomicity of multi-statement writes."""

    async def test_rollback_on_error(self, file_db: Database) -> None:
        with pytest.raises(RuntimeError):
            async with file_db.transaction() as conn:
                await file_db.insert_task(Task(id="gur-0000000a", title="Lost"), conn=conn)
                raise RuntimeError("boom")

        assert await file_db.get_task("gur-0000000a") is None

    async def test_commit(self, file_db: Database) -> None:
        async with file_db.transaction() as conn:
            await file_db.insert_task(Task(id="gur-0000000b", title="Kept"), conn=conn)
            await file_db.insert_task(Task(id="gur-0000000c", title="Also kept"), conn=conn)

        assert await file_db.get_task("gur-0000000b") is not None
        assert await file_db.get_task("gur-0000000c") is not None

    async def test_memory_rollback(self, memory_db: Database) -> None:
        with pytest.raises(RuntimeError):
            async with memory_db.transaction() as conn:
                await memory_db.insert_task(Task(id="gur-0000000d", title="Lost"), conn=conn)
                raise RuntimeError("boom")

        assert await memory_db.get_task("gur-0000000d") is None


@pytest.mark.asyncio
class TestEdgesAndLinks:
    """Test dependency and gate link storage."""

    async def test_self_edge_rejected_by_schema(self, memory_db: Database) -> None:
        task = await memory_db.insert_task(Task(title="Loop"))
        edge = Dependency.model_construct(
            blocker_id=task.id,
            blocked_id=task.id,
            type=DependencyType.BLOCKS,
            created_at=task.created_at,
        )

        with pytest.raises(sqlite3.IntegrityError):
            await memory_db.insert_dependency(edge)

    async def test_purge_cascades(self, memory_db: Database) -> None:
        a = await memory_db.insert_task(Task(title="A"))
        b = await memory_db.insert_task(Task(title="B"))
        gate = Gate(title="Review")
        await memory_db.insert_gate(gate)
        await memory_db.insert_dependency(Dependency(blocker_id=a.id, blocked_id=b.id))
        await memory_db.insert_gate_link(GateTaskLink(gate_id=gate.id, task_id=a.id))

        await memory_db.purge_tasks([a.id])

        assert await memory_db.list_dependencies(blocked_id=b.id) == []
        assert await memory_db.list_gate_links(task_id=a.id) == []
        assert await memory_db.get_gate(gate.id) is not None

    async def test_blocking_edges_skip_deleted_tasks(self, memory_db: Database) -> None:
        a = await memory_db.insert_task(Task(title="A"))
        b = await memory_db.insert_task(Task(title="B"))
        await memory_db.insert_dependency(Dependency(blocker_id=a.id, blocked_id=b.id))

        assert await memory_db.list_blocking_edges() == [(a.id, b.id)]

        await memory_db.soft_delete_tasks([a.id])

        assert await memory_db.list_blocking_edges() == []
        orphans = await memory_db.find_orphans()
        assert orphans.total == 1
