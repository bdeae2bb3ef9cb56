"""Closure workflow: close, reopen, archive and unarchive tasks.

Closing is the one operation that must agree with the dependency graph,
the subtask hierarchy and the gate engine at the same moment, so every
check and the resulting mutation run inside a single ``BEGIN IMMEDIATE``
transaction. No other writer can add a blocker or reopen a subtask
between the check and the write.
"""

from datetime import datetime, timezone

from aiosqlite import Connection
from pydantic import BaseModel

from gur.domain.identifiers import validate_task_id
from gur.domain.models import Task, TaskStatus
from gur.domain.ports.confirmation import ConfirmationPrompt, NonInteractiveConfirmation
from gur.infrastructure.database import Database
from gur.infrastructure.exceptions import (
    AlreadyClosedError,
    ConfirmationDeclinedError,
    ConfirmationRequiredError,
    GatesNotReadyError,
    InvalidTransitionError,
    InvalidValueError,
    OpenBlockersError,
    OpenSubtasksError,
    TaskNotFoundError,
)
from gur.infrastructure.logger import get_logger
from gur.services.dependency_resolver import DependencyResolver
from gur.services.gate_service import GateService
from gur.services.history_service import HistoryService

logger = get_logger(__name__)

FORCE_CLOSE_PREFIX = "[FORCE CLOSED] "


class CloseResult(BaseModel):
    task: Task
    forced: bool = False


class ClosureWorkflow:
    """Guards every transition into and out of the closed state.

    A normal close requires:

    1. no open blockers (``blocks`` edges from tasks not closed/archived)
    2. no open direct subtasks
    3. at least one linked gate, every one of them ``passed``

    ``force=True`` bypasses only the gate check, and only after a human
    confirms through the ConfirmationPrompt. In a non-interactive context
    the forced close is refused, so automation cannot skip quality gates.
    """

    def __init__(
        self,
        database: Database,
        dependencies: DependencyResolver | None = None,
        gates: GateService | None = None,
        history: HistoryService | None = None,
        confirmation: ConfirmationPrompt | None = None,
        batch_size: int = 100,
    ):
        """Initialize closure workflow.

        Args:
            database: Database instance
            dependencies: Dependency graph service
            gates: Gate verification engine
            history: Audit trail
            confirmation: Prompt used for forced closes
            batch_size: Maximum tasks per transaction in bulk archive
        """
        self.db = database
        self.history = history or HistoryService(database)
        self.dependencies = dependencies or DependencyResolver(database, self.history)
        self.gates = gates or GateService(database, self.history)
        self.confirmation = confirmation or NonInteractiveConfirmation()
        self.batch_size = batch_size

    async def close(
        self, task_id: str, reason: str, force: bool = False, actor: str = "user"
    ) -> CloseResult:
        """Close a task after checking blockers, subtasks and gates.

        Checks and writes share one ``BEGIN IMMEDIATE`` transaction. A forced
        close asks for confirmation inside it, so the database write lock is
        held while the prompt waits for an answer; other writers block, up to
        their busy timeout, until the user replies.

        Args:
            task_id: Task to close
            reason: Why it is being closed (required)
            force: Skip the blocker and subtask checks, and bypass failing
                gates after interactive confirmation
            actor: Who is closing the task

        Returns:
            The closed task and whether the gate check was overridden

        Raises:
            TaskNotFoundError: If the task does not exist
            InvalidIdentifierError: If task_id is malformed
            AlreadyClosedError: If the task is closed or archived
            InvalidValueError: If reason is empty
            OpenBlockersError: Open blocking tasks (non-forced only)
            OpenSubtasksError: Open subtasks (non-forced only)
            GatesNotReadyError: Gates missing or not all passed (non-forced)
            ConfirmationRequiredError: Forced close with no interactive terminal
            ConfirmationDeclinedError: Forced close declined by the user
        """
        reason = reason.strip()

        async with self.db.transaction() as conn:
            task = await self._require(task_id, conn)
            if task.status.is_done:
                raise AlreadyClosedError(task)
            if not reason:
                raise InvalidValueError(
                    f"a close reason is required to close {task_id}",
                    remediation=f"gur close {task_id} --reason '...'",
                )

            forced = False
            if not force:
                blockers = await self.dependencies.open_blockers_of(task_id, conn=conn)
                if blockers:
                    raise OpenBlockersError(task_id, blockers)
                subtasks = await self.db.list_open_children(task_id, conn=conn)
                if subtasks:
                    raise OpenSubtasksError(task_id, subtasks)
                await self.gates.check_close_readiness(task_id, conn=conn)
            else:
                readiness = await self.gates.close_readiness(task_id, conn=conn)
                if not readiness.ready:
                    self._confirm_force_close(GatesNotReadyError(task_id, readiness.failing))
                    reason = FORCE_CLOSE_PREFIX + reason
                    forced = True

            previous = task.status
            task.status = TaskStatus.CLOSED
            task.close_reason = reason
            task.closed_at = datetime.now(timezone.utc)
            await self.history.record_change(
                task_id, "status", previous, TaskStatus.CLOSED, actor, conn=conn
            )
            await self.history.record_change(task_id, "close_reason", "", reason, actor, conn=conn)
            await self.db.update_task(task, conn=conn)

        if forced:
            logger.warning("task_force_closed", task_id=task_id, actor=actor)
        logger.info("task_closed", task_id=task_id, forced=forced)
        return CloseResult(task=task, forced=forced)

    def _confirm_force_close(self, failure: GatesNotReadyError) -> None:
        if not self.confirmation.is_interactive():
            raise ConfirmationRequiredError(
                f"{failure.message}\n"
                "--force requires interactive confirmation when gates have not passed",
                remediation="Re-run in an interactive terminal, or verify the gates",
            )
        if not self.confirmation.confirm(
            f"{failure.message}\nClose anyway? Type 'yes' to bypass the quality gates"
        ):
            raise ConfirmationDeclinedError("force close cancelled")

    async def reopen(self, task_id: str, actor: str = "user") -> Task:
        """Move a closed task back to open and clear its close metadata.

        Raises:
            TaskNotFoundError: If the task does not exist
            InvalidTransitionError: If the task is not closed
        """
        async with self.db.transaction() as conn:
            task = await self._require(task_id, conn)
            if task.status != TaskStatus.CLOSED:
                raise InvalidTransitionError(
                    task_id,
                    task.status.value,
                    TaskStatus.OPEN.value,
                    remediation="Only closed tasks can be reopened",
                )

            await self.history.record_change(
                task_id, "status", task.status, TaskStatus.OPEN, actor, conn=conn
            )
            await self.history.record_change(
                task_id, "close_reason", task.close_reason, "", actor, conn=conn
            )
            task.status = TaskStatus.OPEN
            task.close_reason = None
            task.closed_at = None
            await self.db.update_task(task, conn=conn)

        logger.info("task_reopened", task_id=task_id)
        return task

    async def archive(self, task_id: str, actor: str = "user") -> Task:
        """Move a closed task to archived, keeping its close metadata."""
        task = await self._move(task_id, TaskStatus.CLOSED, TaskStatus.ARCHIVED, actor)
        logger.info("task_archived", task_id=task_id)
        return task

    async def unarchive(self, task_id: str, actor: str = "user") -> Task:
        """Move an archived task back to closed."""
        task = await self._move(task_id, TaskStatus.ARCHIVED, TaskStatus.CLOSED, actor)
        logger.info("task_unarchived", task_id=task_id)
        return task

    async def archive_closed(
        self, before: datetime | None = None, actor: str = "user", dry_run: bool = False
    ) -> list[str]:
        """Archive all closed tasks, optionally only those closed before a cutoff.

        Work is committed in transactions of at most ``batch_size`` tasks.

        Returns:
            Ids that were (or, with dry_run, would be) archived
        """
        candidates = await self.db.list_done_task_ids(TaskStatus.CLOSED, before=before)
        if dry_run:
            return candidates

        archived: list[str] = []
        for start in range(0, len(candidates), self.batch_size):
            batch = candidates[start : start + self.batch_size]
            async with self.db.transaction() as conn:
                for task_id in batch:
                    task = await self.db.get_task(task_id, conn=conn)
                    if task is None or task.status != TaskStatus.CLOSED:
                        continue
                    await self.history.record_change(
                        task_id, "status", task.status, TaskStatus.ARCHIVED, actor, conn=conn
                    )
                    task.status = TaskStatus.ARCHIVED
                    await self.db.update_task(task, conn=conn)
                    archived.append(task_id)
            logger.debug("archive_batch_committed", size=len(batch))

        logger.info("tasks_archived", count=len(archived))
        return archived

    async def _require(self, task_id: str, conn: Connection) -> Task:
        validate_task_id(task_id)
        task = await self.db.get_task(task_id, conn=conn)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    async def _move(
        self, task_id: str, expected: TaskStatus, target: TaskStatus, actor: str
    ) -> Task:
        async with self.db.transaction() as conn:
            task = await self._require(task_id, conn)
            if task.status != expected:
                raise InvalidTransitionError(
                    task_id,
                    task.status.value,
                    target.value,
                    remediation=f"Only {expected.value} tasks can become {target.value}",
                )
            await self.history.record_change(task_id, "status", task.status, target, actor, conn=conn)
            task.status = target
            await self.db.update_task(task, conn=conn)
        return task
