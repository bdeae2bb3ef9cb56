"""Dependency graph service.

Edges are stored as (blocker, blocked) id pairs. Only ``blocks`` edges
take part in cycle prevention, closure checks and the ready set;
``related`` and ``parent-child`` edges are informational.
"""

from collections import defaultdict, deque

from aiosqlite import Connection
from pydantic import BaseModel

from gur.domain.identifiers import validate_task_id
from gur.domain.models import Dependency, DependencyType, Task
from gur.infrastructure.database import Database
from gur.infrastructure.exceptions import (
    CircularDependencyError,
    DependencyNotFoundError,
    DuplicateDependencyError,
    SelfBlockError,
    TaskNotFoundError,
)
from gur.infrastructure.logger import get_logger
from gur.services.history_service import HistoryService

logger = get_logger(__name__)


class DependencyListing(BaseModel):
    """Edges touching one task, split by direction."""

    blocked_by: list[Dependency]
    blocks: list[Dependency]


class DependencyResolver:
    """Handles dependency graph operations and validation.

    The ``blocks`` subgraph is kept acyclic: an edge blocker -> blocked is
    refused when blocked can already reach blocker through existing
    ``blocks`` edges. The check is a breadth-first search over an
    adjacency map keyed by task id, O(V + E) per insertion.
    """

    def __init__(self, database: Database, history: HistoryService | None = None):
        """Initialize dependency resolver.

        Args:
            database: Database instance for accessing tasks and edges
            history: Audit trail; edge changes are recorded on the blocked task
        """
        self.db = database
        self.history = history or HistoryService(database)

    async def _build_blocking_graph(self, conn: Connection | None = None) -> dict[str, set[str]]:
        """Adjacency map: blocker id -> ids it blocks."""
        graph: dict[str, set[str]] = defaultdict(set)
        for blocker_id, blocked_id in await self.db.list_blocking_edges(conn=conn):
            graph[blocker_id].add(blocked_id)
        return graph

    async def find_path(
        self, start_id: str, target_id: str, conn: Connection | None = None
    ) -> list[str] | None:
        """Shortest chain of ``blocks`` edges from start to target, if any.

        Returns:
            Ids from start_id to target_id inclusive, or None if unreachable
        """
        graph = await self._build_blocking_graph(conn)
        parents: dict[str, str | None] = {start_id: None}
        queue: deque[str] = deque([start_id])

        while queue:
            current = queue.popleft()
            if current == target_id:
                path = [current]
                while (prev := parents[path[-1]]) is not None:
                    path.append(prev)
                return list(reversed(path))
            for child in graph.get(current, ()):
                if child not in parents:
                    parents[child] = current
                    queue.append(child)
        return None

    async def would_create_cycle(
        self, blocker_id: str, blocked_id: str, conn: Connection | None = None
    ) -> bool:
        return await self.find_path(blocked_id, blocker_id, conn=conn) is not None

    async def add_blocker(
        self,
        blocker_id: str,
        blocked_id: str,
        dep_type: DependencyType = DependencyType.BLOCKS,
        actor: str = "user",
    ) -> Dependency:
        """Add an edge saying ``blocker_id`` must finish before ``blocked_id``.

        Args:
            blocker_id: Task that blocks
            blocked_id: Task that is blocked
            dep_type: Edge type; only ``blocks`` is checked for cycles
            actor: Who made the change

        Returns:
            The stored edge

        Raises:
            InvalidIdentifierError: If either id is malformed
            SelfBlockError: If both ids are the same
            TaskNotFoundError: If either task does not exist
            DuplicateDependencyError: If an edge between the pair exists
            CircularDependencyError: If the edge would close a cycle
        """
        if blocker_id == blocked_id:
            raise SelfBlockError(blocker_id)
        validate_task_id(blocker_id)
        validate_task_id(blocked_id)

        async with self.db.transaction() as conn:
            for task_id in (blocker_id, blocked_id):
                if await self.db.get_task(task_id, conn=conn) is None:
                    raise TaskNotFoundError(task_id)

            if await self.db.get_dependency(blocker_id, blocked_id, conn=conn) is not None:
                raise DuplicateDependencyError(blocker_id, blocked_id)

            if dep_type == DependencyType.BLOCKS:
                path = await self.find_path(blocked_id, blocker_id, conn=conn)
                if path is not None:
                    logger.info(
                        "dependency_cycle_rejected",
                        blocker_id=blocker_id,
                        blocked_id=blocked_id,
                        path=path,
                    )
                    raise CircularDependencyError(blocker_id, blocked_id, path)

            dependency = Dependency(blocker_id=blocker_id, blocked_id=blocked_id, type=dep_type)
            await self.db.insert_dependency(dependency, conn=conn)
            await self.history.record_change(
                blocked_id, f"dependency:{dep_type.value}", "", blocker_id, actor, conn=conn
            )

        logger.info(
            "dependency_added", blocker_id=blocker_id, blocked_id=blocked_id, type=dep_type.value
        )
        return dependency

    async def remove_blocker(self, blocker_id: str, blocked_id: str, actor: str = "user") -> None:
        """Delete the edge between two tasks.

        Raises:
            TaskNotFoundError: If either task does not exist
            InvalidIdentifierError: If either id is malformed
            DependencyNotFoundError: If no edge exists between them
        """
        validate_task_id(blocker_id)
        validate_task_id(blocked_id)
        async with self.db.transaction() as conn:
            for task_id in (blocker_id, blocked_id):
                if await self.db.get_task(task_id, conn=conn) is None:
                    raise TaskNotFoundError(task_id)

            existing = await self.db.get_dependency(blocker_id, blocked_id, conn=conn)
            if existing is None:
                raise DependencyNotFoundError(blocker_id, blocked_id)

            await self.db.delete_dependency(blocker_id, blocked_id, conn=conn)
            await self.history.record_change(
                blocked_id,
                f"dependency:{existing.type.value}",
                blocker_id,
                "",
                actor,
                conn=conn,
            )

        logger.info("dependency_removed", blocker_id=blocker_id, blocked_id=blocked_id)

    async def list_for_task(self, task_id: str) -> DependencyListing:
        """Edges where the task is blocked and edges where it blocks others."""
        validate_task_id(task_id)
        if await self.db.get_task(task_id) is None:
            raise TaskNotFoundError(task_id)
        return DependencyListing(
            blocked_by=await self.db.list_dependencies(blocked_id=task_id),
            blocks=await self.db.list_dependencies(blocker_id=task_id),
        )

    async def open_blockers_of(self, task_id: str, conn: Connection | None = None) -> list[Task]:
        """Tasks blocking ``task_id`` that are neither closed nor archived."""
        return await self.db.list_open_blockers(task_id, conn=conn)

    async def get_ready_tasks(self, limit: int | None = None) -> list[Task]:
        """Open or in-progress tasks with zero open blockers."""
        return await self.db.list_ready_tasks(limit=limit)
