"""Gate verification engine.

A gate is a reusable requirement (a test suite, a review). Linking a gate
to a task creates a per-task verification record that starts ``pending``.
A task is ready to close only when it has at least one linked gate and
every link is ``passed``; ``failed``, ``pending`` and ``skipped`` links
all block.
"""

from datetime import datetime, timezone

from aiosqlite import Connection
from pydantic import BaseModel

from gur.domain.identifiers import validate_gate_id, validate_task_id
from gur.domain.models import Gate, GateResult, GateRun, GateTaskLink
from gur.infrastructure.database import Database
from gur.infrastructure.exceptions import (
    DuplicateGateLinkError,
    GateLinkNotFoundError,
    GateNotFoundError,
    GatesNotReadyError,
    InvalidValueError,
    TaskNotFoundError,
)
from gur.infrastructure.logger import get_logger
from gur.services.history_service import HistoryService

logger = get_logger(__name__)


def _validate_pair(gate_id: str, task_id: str) -> None:
    validate_gate_id(gate_id)
    validate_task_id(task_id)


class CloseReadiness(BaseModel):
    """Aggregate gate state of one task."""

    task_id: str
    links: list[GateTaskLink]
    failing: list[GateTaskLink]

    @property
    def ready(self) -> bool:
        return bool(self.links) and not self.failing

    @property
    def has_gates(self) -> bool:
        return bool(self.links)


class GateService:
    """Manages gates, their links to tasks, and per-task verification."""

    def __init__(self, database: Database, history: HistoryService | None = None):
        self.db = database
        self.history = history or HistoryService(database)

    async def create_gate(
        self,
        title: str,
        description: str = "",
        category: str = "",
        gate_type: str = "manual",
        priority: int = 2,
        preconditions: str = "",
        steps: str = "",
        expected_result: str = "",
        command: str = "",
        labels: list[str] | None = None,
    ) -> Gate:
        gate = Gate(
            title=title,
            description=description,
            category=category,
            type=gate_type or "manual",
            priority=priority,
            preconditions=preconditions,
            steps=steps,
            expected_result=expected_result,
            command=command,
            labels=labels or [],
        )
        await self.db.insert_gate(gate)
        logger.info("gate_created", gate_id=gate.id, title=gate.title, category=gate.category)
        return gate

    async def get_gate(self, gate_id: str, conn: Connection | None = None) -> Gate:
        validate_gate_id(gate_id)
        gate = await self.db.get_gate(gate_id, conn=conn)
        if gate is None:
            raise GateNotFoundError(gate_id)
        return gate

    async def list_gates(
        self,
        category: str | None = None,
        gate_type: str | None = None,
        last_result: GateResult | None = None,
    ) -> list[Gate]:
        return await self.db.list_gates(
            category=category, gate_type=gate_type, last_result=last_result
        )

    async def recent_runs(
        self, gate_id: str, task_id: str | None = None, limit: int = 10
    ) -> list[GateRun]:
        await self.get_gate(gate_id)
        return await self.db.list_gate_runs(gate_id, task_id=task_id, limit=limit)

    async def links_for_gate(self, gate_id: str) -> list[GateTaskLink]:
        await self.get_gate(gate_id)
        return await self.db.list_gate_links(gate_id=gate_id)

    async def links_for_task(
        self, task_id: str, conn: Connection | None = None
    ) -> list[GateTaskLink]:
        return await self.db.list_gate_links(task_id=task_id, conn=conn)

    async def link_gate(self, gate_id: str, task_id: str, actor: str = "user") -> GateTaskLink:
        """Attach a gate to a task with status ``pending``.

        Raises:
            GateNotFoundError: If the gate does not exist
            TaskNotFoundError: If the task does not exist
            InvalidIdentifierError: If either id is malformed
            DuplicateGateLinkError: If the pair is already linked
        """
        _validate_pair(gate_id, task_id)
        async with self.db.transaction() as conn:
            gate = await self.get_gate(gate_id, conn=conn)
            if await self.db.get_task(task_id, conn=conn) is None:
                raise TaskNotFoundError(task_id)
            if await self.db.get_gate_link(gate_id, task_id, conn=conn) is not None:
                raise DuplicateGateLinkError(gate_id, task_id)

            link = GateTaskLink(gate_id=gate_id, task_id=task_id, gate_title=gate.title)
            await self.db.insert_gate_link(link, conn=conn)
            await self.history.record_change(
                task_id, f"gate:{gate_id}", "", GateResult.PENDING, actor, conn=conn
            )

        logger.info("gate_linked", gate_id=gate_id, task_id=task_id)
        return link

    async def unlink_gate(self, gate_id: str, task_id: str, actor: str = "user") -> None:
        """Detach a gate from a task.

        Raises:
            InvalidIdentifierError: If either id is malformed
            GateLinkNotFoundError: If the pair is not linked
        """
        _validate_pair(gate_id, task_id)
        async with self.db.transaction() as conn:
            link = await self.db.get_gate_link(gate_id, task_id, conn=conn)
            if link is None:
                raise GateLinkNotFoundError(gate_id, task_id)
            await self.db.delete_gate_link(gate_id, task_id, conn=conn)
            await self.history.record_change(
                task_id, f"gate:{gate_id}", link.status, "", actor, conn=conn
            )

        logger.info("gate_unlinked", gate_id=gate_id, task_id=task_id)

    async def record_verification(
        self,
        gate_id: str,
        task_id: str,
        result: GateResult,
        verifier: str = "user",
        notes: str | None = None,
    ) -> GateTaskLink:
        """Record the outcome of verifying a gate for one task.

        Overwrites the link's status, timestamp, verifier and notes, bumps
        the gate's lifetime counters and appends a run record. Passing a
        gate for one task says nothing about other tasks it is linked to.

        Args:
            gate_id: Gate that was verified
            task_id: Task it was verified for
            result: ``passed``, ``failed`` or ``skipped``
            verifier: Who ran the verification
            notes: Free-text notes

        Returns:
            The updated link

        Raises:
            InvalidValueError: If result is ``pending``
            InvalidIdentifierError: If either id is malformed
            GateNotFoundError: If the gate does not exist
            TaskNotFoundError: If the task does not exist
            GateLinkNotFoundError: If the gate is not linked to the task
        """
        if result == GateResult.PENDING:
            raise InvalidValueError("verification result must be passed, failed or skipped")
        _validate_pair(gate_id, task_id)

        async with self.db.transaction() as conn:
            gate = await self.get_gate(gate_id, conn=conn)
            if await self.db.get_task(task_id, conn=conn) is None:
                raise TaskNotFoundError(task_id)
            link = await self.db.get_gate_link(gate_id, task_id, conn=conn)
            if link is None:
                raise GateLinkNotFoundError(gate_id, task_id)

            now = datetime.now(timezone.utc)
            previous = link.status
            link.status = result
            link.verified_at = now
            link.verified_by = verifier
            link.notes = notes
            await self.db.update_gate_link(link, conn=conn)

            gate.record_run(result, verifier, notes, at=now)
            await self.db.update_gate_run_stats(gate, conn=conn)
            await self.db.insert_gate_run(
                GateRun(
                    gate_id=gate_id,
                    task_id=task_id,
                    result=result,
                    run_by=verifier,
                    notes=notes,
                    created_at=now,
                ),
                conn=conn,
            )
            await self.history.record_change(
                task_id, f"gate:{gate_id}", previous, result, verifier, conn=conn
            )

        logger.info(
            "gate_verified",
            gate_id=gate_id,
            task_id=task_id,
            result=result.value,
            verifier=verifier,
        )
        return link

    async def close_readiness(
        self, task_id: str, conn: Connection | None = None
    ) -> CloseReadiness:
        """Evaluate whether the task's gates allow it to close.

        Returns:
            All links of the task and the subset that is not ``passed``
        """
        links = await self.links_for_task(task_id, conn=conn)
        failing = [link for link in links if not link.is_passed]
        return CloseReadiness(task_id=task_id, links=links, failing=failing)

    async def check_close_readiness(self, task_id: str, conn: Connection | None = None) -> None:
        """Raise GatesNotReadyError unless the task is gate-ready to close."""
        readiness = await self.close_readiness(task_id, conn=conn)
        if not readiness.ready:
            raise GatesNotReadyError(task_id, readiness.failing)

    async def list_failing_for_task(self, task_id: str) -> list[GateTaskLink]:
        return (await self.close_readiness(task_id)).failing

    async def passed_links_for_task(
        self, task_id: str, conn: Connection | None = None
    ) -> list[GateTaskLink]:
        links = await self.links_for_task(task_id, conn=conn)
        return [link for link in links if link.is_passed]
