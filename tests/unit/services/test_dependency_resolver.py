"""Unit tests for DependencyResolver service."""

import pytest
from gur.domain.models import DependencyType, Task, TaskStatus
from gur.infrastructure.exceptions import (
    CircularDependencyError,
    DependencyNotFoundError,
    DuplicateDependencyError,
    InvalidIdentifierError,
    SelfBlockError,
    TaskNotFoundError,
)
from gur.services import ClosureWorkflow, DependencyResolver, HistoryService, TaskService


async def _chain(tasks: TaskService, count: int) -> list[Task]:
    return [await tasks.create_task(f"Task {i}") for i in range(count)]


@pytest.mark.asyncio
class TestAddBlocker:
    """Test edge insertion and validation order."""

    async def test_add_and_list(self, resolver: DependencyResolver, tasks: TaskService) -> None:
        a, b = await _chain(tasks, 2)

        dep = await resolver.add_blocker(a.id, b.id)
        listing_b = await resolver.list_for_task(b.id)
        listing_a = await resolver.list_for_task(a.id)

        assert dep.type == DependencyType.BLOCKS
        assert [d.blocker_id for d in listing_b.blocked_by] == [a.id]
        assert listing_b.blocks == []
        assert [d.blocked_id for d in listing_a.blocks] == [b.id]

    async def test_self_block_rejected(
        self, resolver: DependencyResolver, tasks: TaskService
    ) -> None:
        (a,) = await _chain(tasks, 1)

        with pytest.raises(SelfBlockError):
            await resolver.add_blocker(a.id, a.id)

    async def test_self_block_checked_before_existence(self, resolver: DependencyResolver) -> None:
        with pytest.raises(SelfBlockError):
            await resolver.add_blocker("gur-00000000", "gur-00000000")

    async def test_missing_task(self, resolver: DependencyResolver, tasks: TaskService) -> None:
        (a,) = await _chain(tasks, 1)

        with pytest.raises(TaskNotFoundError) as exc_info:
            await resolver.add_blocker(a.id, "gur-ffffffff")

        assert exc_info.value.entity_id == "gur-ffffffff"

    @pytest.mark.parametrize("bad_id", ["GUR-ABC.01", "gur-0a1b2c3d.", "gur-0a1b2c3d.0"])
    async def test_malformed_id_rejected(
        self, resolver: DependencyResolver, tasks: TaskService, bad_id: str
    ) -> None:
        (a,) = await _chain(tasks, 1)

        with pytest.raises(InvalidIdentifierError):
            await resolver.add_blocker(a.id, bad_id)
        with pytest.raises(InvalidIdentifierError):
            await resolver.remove_blocker(bad_id, a.id)
        with pytest.raises(InvalidIdentifierError):
            await resolver.list_for_task(bad_id)

    async def test_duplicate_rejected(
        self, resolver: DependencyResolver, tasks: TaskService
    ) -> None:
        a, b = await _chain(tasks, 2)
        await resolver.add_blocker(a.id, b.id)

        with pytest.raises(DuplicateDependencyError):
            await resolver.add_blocker(a.id, b.id)

    async def test_direct_cycle_rejected(
        self, resolver: DependencyResolver, tasks: TaskService
    ) -> None:
        a, b = await _chain(tasks, 2)
        await resolver.add_blocker(a.id, b.id)

        with pytest.raises(CircularDependencyError) as exc_info:
            await resolver.add_blocker(b.id, a.id)

        assert exc_info.value.path == [a.id, b.id]

    async def test_transitive_cycle_rejected(
        self, resolver: DependencyResolver, tasks: TaskService
    ) -> None:
        """Test A blocks B, B blocks C; C blocking A would close the loop."""
        a, b, c = await _chain(tasks, 3)
        await resolver.add_blocker(a.id, b.id)
        await resolver.add_blocker(b.id, c.id)

        with pytest.raises(CircularDependencyError) as exc_info:
            await resolver.add_blocker(c.id, a.id)

        assert exc_info.value.path == [a.id, b.id, c.id]
        assert str(exc_info.value).startswith(
            f"circular dependency detected: {c.id} already depends on {a.id}"
        )
        assert (await resolver.list_for_task(a.id)).blocked_by == []

    async def test_diamond_is_not_a_cycle(
        self, resolver: DependencyResolver, tasks: TaskService
    ) -> None:
        a, b, c, d = await _chain(tasks, 4)
        await resolver.add_blocker(a.id, b.id)
        await resolver.add_blocker(a.id, c.id)
        await resolver.add_blocker(b.id, d.id)
        await resolver.add_blocker(c.id, d.id)

        assert not await resolver.would_create_cycle(a.id, d.id)
        assert await resolver.would_create_cycle(d.id, a.id)

    async def test_related_edges_skip_cycle_check(
        self, resolver: DependencyResolver, tasks: TaskService
    ) -> None:
        a, b = await _chain(tasks, 2)
        await resolver.add_blocker(a.id, b.id)

        dep = await resolver.add_blocker(b.id, a.id, dep_type=DependencyType.RELATED)

        assert dep.type == DependencyType.RELATED
        assert await resolver.open_blockers_of(a.id) == []

    async def test_long_chain(self, resolver: DependencyResolver, tasks: TaskService) -> None:
        chain = await _chain(tasks, 30)
        for blocker, blocked in zip(chain, chain[1:]):
            await resolver.add_blocker(blocker.id, blocked.id)

        path = await resolver.find_path(chain[0].id, chain[-1].id)

        assert path == [t.id for t in chain]
        assert await resolver.would_create_cycle(chain[-1].id, chain[0].id)

    async def test_history_recorded_on_blocked_task(
        self, resolver: DependencyResolver, tasks: TaskService, history: HistoryService
    ) -> None:
        a, b = await _chain(tasks, 2)

        await resolver.add_blocker(a.id, b.id, actor="carol")
        await resolver.remove_blocker(a.id, b.id, actor="carol")

        entries = [e for e in await history.list_for_task(b.id) if e.field == "dependency:blocks"]
        assert [(e.old_value, e.new_value) for e in entries] == [(a.id, ""), ("", a.id)]
        assert {e.actor for e in entries} == {"carol"}


@pytest.mark.asyncio
class TestRemoveBlocker:
    async def test_remove(self, resolver: DependencyResolver, tasks: TaskService) -> None:
        a, b = await _chain(tasks, 2)
        await resolver.add_blocker(a.id, b.id)

        await resolver.remove_blocker(a.id, b.id)

        assert (await resolver.list_for_task(b.id)).blocked_by == []
        # The reverse edge is allowed once the first edge is gone
        await resolver.add_blocker(b.id, a.id)

    async def test_remove_missing_edge(
        self, resolver: DependencyResolver, tasks: TaskService
    ) -> None:
        a, b = await _chain(tasks, 2)

        with pytest.raises(DependencyNotFoundError):
            await resolver.remove_blocker(a.id, b.id)


@pytest.mark.asyncio
class TestReadySet:
    """Test blocker-aware queries."""

    async def test_open_blockers_ignore_closed(
        self,
        resolver: DependencyResolver,
        tasks: TaskService,
        closure: ClosureWorkflow,
        verified_task: Task,
    ) -> None:
        (blocked,) = await _chain(tasks, 1)
        await resolver.add_blocker(verified_task.id, blocked.id)

        assert [t.id for t in await resolver.open_blockers_of(blocked.id)] == [verified_task.id]

        await closure.close(verified_task.id, reason="done")

        assert await resolver.open_blockers_of(blocked.id) == []

    async def test_ready_tasks(self, resolver: DependencyResolver, tasks: TaskService) -> None:
        a, b, c = await _chain(tasks, 3)
        await resolver.add_blocker(a.id, b.id)
        await tasks.update_task(c.id, status=TaskStatus.IN_PROGRESS)

        ready = {t.id for t in await resolver.get_ready_tasks()}

        assert ready == {a.id, c.id}

    async def test_ready_tasks_sorted_by_priority(
        self, resolver: DependencyResolver, tasks: TaskService
    ) -> None:
        low = await tasks.create_task("Low", priority=4)
        high = await tasks.create_task("High", priority=0)

        ready = await resolver.get_ready_tasks()

        assert [t.id for t in ready] == [high.id, low.id]
        assert len(await resolver.get_ready_tasks(limit=1)) == 1

    async def test_deleted_blocker_does_not_block(
        self, resolver: DependencyResolver, tasks: TaskService
    ) -> None:
        a, b = await _chain(tasks, 2)
        await resolver.add_blocker(a.id, b.id)

        await tasks.delete_task(a.id)

        assert await resolver.open_blockers_of(b.id) == []
        assert b.id in {t.id for t in await resolver.get_ready_tasks()}
