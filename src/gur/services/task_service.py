"""Task lifecycle service: create, update, query, compact and delete tasks.

Closing, reopening and archiving live in ``closure_workflow`` because they
must consult the dependency graph and the gate engine.
"""

from datetime import datetime, timedelta, timezone
from typing import Any

from aiosqlite import Connection
from pydantic import BaseModel

from gur.domain.identifiers import derive_subtask_id, validate_task_id
from gur.domain.models import GateTaskLink, Task, TaskStatus, can_transition
from gur.domain.ports.confirmation import ConfirmationPrompt, NonInteractiveConfirmation
from gur.infrastructure.database import Database, OrphanReport
from gur.infrastructure.exceptions import (
    ConfirmationDeclinedError,
    ConfirmationRequiredError,
    InvalidTransitionError,
    InvalidValueError,
    PreconditionFailedError,
    TaskNotFoundError,
)
from gur.infrastructure.logger import get_logger
from gur.services.gate_service import GateService
from gur.services.history_service import HistoryService
from gur.services.template_service import TemplateService

logger = get_logger(__name__)

SCOPE_FIELDS = ("title", "description", "type")


class TaskStats(BaseModel):
    total: int
    by_status: dict[str, int]
    by_priority: dict[int, int]


class ActivitySummary(BaseModel):
    """Snapshot of recent activity for the ``summary`` command."""

    by_status: dict[str, int]
    created_last_24h: int
    closed_last_24h: int
    compacted: int
    high_priority_open: list[Task]


class CleanupReport(BaseModel):
    orphans: OrphanReport
    removed: int
    dry_run: bool


class CompactionResult(BaseModel):
    compacted: list[Task]
    dry_run: bool


def compaction_summary(task: Task) -> str:
    """One-line summary that replaces a compacted task's description."""
    summary = task.title
    if task.close_reason:
        summary += f" | Closed: {task.close_reason}"
    if task.type != "task":
        summary = f"[{task.type}] {summary}"
    return summary


class TaskService:
    """Creates, updates, queries and maintains tasks.

    Every field change is written to the audit trail in the same
    transaction as the change itself.
    """

    def __init__(
        self,
        database: Database,
        history: HistoryService | None = None,
        gates: GateService | None = None,
        templates: TemplateService | None = None,
        confirmation: ConfirmationPrompt | None = None,
        default_priority: int = 2,
        default_type: str = "task",
        batch_size: int = 100,
    ):
        """Initialize task service.

        Args:
            database: Database instance
            history: Audit trail (default: one over the same database)
            gates: Gate engine, used to protect verified scope
            templates: Template lookup for ``create_task(template=...)``
            confirmation: Prompt for scope changes on verified tasks
            default_priority: Priority for new tasks when none is given
            default_type: Type for new tasks when none is given
            batch_size: Maximum tasks per transaction in bulk compaction
        """
        self.db = database
        self.history = history or HistoryService(database)
        self.gates = gates or GateService(database, self.history)
        self.templates = templates or TemplateService(database)
        self.confirmation = confirmation or NonInteractiveConfirmation()
        self.default_priority = default_priority
        self.default_type = default_type
        self.batch_size = batch_size

    async def create_task(
        self,
        title: str | None = None,
        description: str | None = None,
        priority: int | None = None,
        task_type: str | None = None,
        labels: list[str] | None = None,
        assignee: str | None = None,
        parent_id: str | None = None,
        template: str | None = None,
        actor: str = "user",
    ) -> Task:
        """Create an open task, optionally from a template or under a parent.

        Explicit arguments override template values. A subtask gets the id
        ``<parent_id>.<n>`` where n is one more than the number of subtasks
        ever created under the parent.

        Args:
            title: Task title (required unless the template provides one)
            description: Task description
            priority: 0 (critical) to 4 (lowest)
            task_type: Free-form type, conventionally task/bug/feature/epic
            labels: Initial labels
            assignee: Assignee name
            parent_id: Create as a subtask of this task
            template: Template name or id supplying defaults
            actor: Who created the task

        Returns:
            The stored task

        Raises:
            InvalidValueError: If title is missing or priority out of range
            TaskNotFoundError: If the parent does not exist
            InvalidIdentifierError: If parent_id is malformed
            TemplateNotFoundError: If the template does not exist
            PreconditionFailedError: If the parent is closed or archived
        """
        if template:
            base = (await self.templates.get_template(template)).to_task()
            fields: dict[str, Any] = base.model_dump(
                include={"title", "description", "priority", "type", "labels"}
            )
        else:
            fields = {
                "title": "",
                "description": "",
                "priority": self.default_priority,
                "type": self.default_type,
                "labels": [],
            }

        if title is not None:
            fields["title"] = title
        if description is not None:
            fields["description"] = description
        if priority is not None:
            fields["priority"] = self._validate_priority(priority)
        if task_type:
            fields["type"] = task_type
        if labels:
            fields["labels"] = sorted(set(fields["labels"]) | set(labels))
        if not str(fields["title"]).strip():
            raise InvalidValueError("task title must not be empty")

        task = Task(assignee=assignee, **fields)

        if parent_id:
            validate_task_id(parent_id)

        async with self.db.transaction() as conn:
            if parent_id:
                parent = await self.db.get_task(parent_id, conn=conn)
                if parent is None:
                    raise TaskNotFoundError(parent_id)
                if parent.status.is_done:
                    raise PreconditionFailedError(
                        f"cannot add a subtask to {parent.status.value} task {parent_id}",
                        remediation=f"Reopen it first: gur reopen {parent_id}",
                    )
                ordinal = await self.db.next_subtask_ordinal(parent_id, conn=conn)
                task.id = derive_subtask_id(parent_id, ordinal)
                task.parent_id = parent_id

            task = await self.db.insert_task(task, conn=conn)
            await self.history.record_change(task.id, "created", "", task.title, actor, conn=conn)

        logger.info(
            "task_created",
            task_id=task.id,
            parent_id=task.parent_id,
            priority=task.priority,
            template=template,
        )
        return task

    async def get_task(self, task_id: str, include_deleted: bool = False) -> Task | None:
        return await self.db.get_task(task_id, include_deleted=include_deleted)

    async def require_task(self, task_id: str, conn: Connection | None = None) -> Task:
        validate_task_id(task_id)
        task = await self.db.get_task(task_id, conn=conn)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    async def update_task(
        self,
        task_id: str,
        title: str | None = None,
        description: str | None = None,
        priority: int | None = None,
        task_type: str | None = None,
        status: TaskStatus | None = None,
        assignee: str | None = None,
        notes: str | None = None,
        add_labels: list[str] | None = None,
        remove_labels: list[str] | None = None,
        actor: str = "user",
    ) -> Task:
        """Apply field changes and record each one in the audit trail.

        Changing title, description or type of a task whose gates already
        passed may invalidate verified work, so it needs confirmation.
        Closing goes through the closure workflow, never through update.

        Raises:
            TaskNotFoundError: If the task does not exist
            InvalidValueError: If priority or title is invalid
            InvalidTransitionError: If the status change is not allowed
            ConfirmationRequiredError: Scope change on verified task, no terminal
            ConfirmationDeclinedError: Scope change declined by the user
        """
        if priority is not None:
            self._validate_priority(priority)
        if title is not None and not title.strip():
            raise InvalidValueError("task title must not be empty")

        async with self.db.transaction() as conn:
            task = await self.require_task(task_id, conn=conn)

            if status is not None and status != task.status:
                self._check_update_transition(task, status)

            changes: dict[str, Any] = {}
            if title is not None:
                changes["title"] = title.strip()
            if description is not None:
                changes["description"] = description
            if task_type:
                changes["type"] = task_type.strip().lower()
            scope_changed = any(
                field in changes and changes[field] != getattr(task, field)
                for field in SCOPE_FIELDS
            )
            if scope_changed:
                passed = await self.gates.passed_links_for_task(task_id, conn=conn)
                if passed:
                    self._confirm_scope_change(task, passed)

            if priority is not None:
                changes["priority"] = priority
            if status is not None:
                changes["status"] = status
            if assignee is not None:
                changes["assignee"] = assignee or None

            for field, new_value in changes.items():
                await self.history.record_change(
                    task_id, field, getattr(task, field), new_value, actor, conn=conn
                )
                setattr(task, field, new_value)

            if notes:
                await self.history.record_change(task_id, "notes", "", notes, actor, conn=conn)
                task.notes = self._append_note(task.notes, notes)

            labels = set(task.labels)
            for label in add_labels or []:
                if label not in labels:
                    await self.history.record_change(
                        task_id, "label_added", "", label, actor, conn=conn
                    )
                    labels.add(label)
            for label in remove_labels or []:
                if label in labels:
                    await self.history.record_change(
                        task_id, "label_removed", label, "", actor, conn=conn
                    )
                    labels.discard(label)
            task.labels = sorted(labels)

            await self.db.update_task(task, conn=conn)

        logger.info("task_updated", task_id=task_id, fields=sorted(changes))
        return task

    def _check_update_transition(self, task: Task, target: TaskStatus) -> None:
        if task.status.is_done:
            raise InvalidTransitionError(
                task.id,
                task.status.value,
                target.value,
                remediation=f"Use 'gur reopen {task.id}' first",
            )
        if target == TaskStatus.CLOSED:
            raise InvalidTransitionError(
                task.id,
                task.status.value,
                target.value,
                remediation=f"Use 'gur close {task.id} --reason ...' to close a task",
            )
        if target == TaskStatus.ARCHIVED or not can_transition(task.status, target):
            raise InvalidTransitionError(task.id, task.status.value, target.value)

    def _confirm_scope_change(self, task: Task, passed: list[GateTaskLink]) -> None:
        gates = ", ".join(f"{link.gate_id} ({link.gate_title})" for link in passed)
        message = (
            f"Task {task.id} has {len(passed)} gate(s) that already passed: {gates}. "
            "Changing title, description, or type may affect the scope of verified work."
        )
        if not self.confirmation.is_interactive():
            raise ConfirmationRequiredError(
                f"{message}\nScope-changing update requires interactive confirmation "
                "when gates have passed.",
                remediation="Re-run in an interactive terminal to confirm",
            )
        if not self.confirmation.confirm(message):
            raise ConfirmationDeclinedError("update cancelled")
        logger.warning("scope_change_confirmed", task_id=task.id, passed_gates=len(passed))

    @staticmethod
    def _append_note(existing: str, note: str) -> str:
        stamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M")
        line = f"[{stamp}] {note}"
        return f"{existing}\n{line}" if existing else line

    @staticmethod
    def _validate_priority(priority: int) -> int:
        if not 0 <= priority <= 4:
            raise InvalidValueError(
                f"invalid priority {priority}: must be 0 (critical) to 4 (lowest)"
            )
        return priority

    async def list_tasks(
        self,
        status: TaskStatus | None = None,
        priority: int | None = None,
        task_type: str | None = None,
        assignee: str | None = None,
        label: str | None = None,
        include_archived: bool = False,
        limit: int | None = None,
    ) -> list[Task]:
        """List live tasks; archived ones only when asked for."""
        if priority is not None:
            self._validate_priority(priority)
        return await self.db.list_tasks(
            statuses=[status] if status else None,
            priority=priority,
            task_type=task_type,
            assignee=assignee,
            label=label,
            include_archived=include_archived,
            limit=limit,
        )

    async def search_tasks(self, query: str, include_archived: bool = False) -> list[Task]:
        if not query.strip():
            raise InvalidValueError("search query must not be empty")
        return await self.db.search_tasks(query.strip(), include_archived=include_archived)

    async def subtasks_of(self, task_id: str) -> list[Task]:
        await self.require_task(task_id)
        return await self.db.list_children(task_id)

    async def stats(self) -> TaskStats:
        by_status = await self.db.count_tasks_by("status")
        by_priority = await self.db.count_tasks_by("priority")
        return TaskStats(
            total=sum(by_status.values()),
            by_status={s.value: by_status.get(s.value, 0) for s in TaskStatus},
            by_priority={p: by_priority.get(p, 0) for p in range(5)},
        )

    async def summary(self, high_priority_limit: int = 5) -> ActivitySummary:
        since = datetime.now(timezone.utc) - timedelta(hours=24)
        stats = await self.stats()
        urgent = await self.db.list_tasks(
            statuses=[TaskStatus.OPEN, TaskStatus.IN_PROGRESS], limit=None
        )
        return ActivitySummary(
            by_status=stats.by_status,
            created_last_24h=await self.db.count_tasks_since("created_at", since),
            closed_last_24h=await self.db.count_tasks_since("closed_at", since),
            compacted=await self.db.count_compacted(),
            high_priority_open=[t for t in urgent if t.priority <= 1][:high_priority_limit],
        )

    # Compaction

    async def compact_task(self, task_id: str, actor: str = "user", dry_run: bool = False) -> Task:
        """Replace a finished task's description and notes with a summary.

        Raises:
            TaskNotFoundError: If the task does not exist
            InvalidTransitionError: If the task is not closed or archived
            PreconditionFailedError: If the task is already compacted
        """
        async with self.db.transaction() as conn:
            task = await self.require_task(task_id, conn=conn)
            self._check_compactable(task)
            if dry_run:
                return task.model_copy(update={"summary": compaction_summary(task)})
            await self._compact(task, actor, conn)
        logger.info("task_compacted", task_id=task_id)
        return task

    async def compact_closed(
        self,
        before: datetime | None = None,
        actor: str = "user",
        dry_run: bool = False,
    ) -> CompactionResult:
        """Compact every finished, uncompacted task closed before ``before``.

        Work is committed in transactions of at most ``batch_size`` tasks.
        """
        candidates: list[str] = []
        for status in (TaskStatus.CLOSED, TaskStatus.ARCHIVED):
            candidates += await self.db.list_done_task_ids(status, before=before, compacted=False)

        compacted: list[Task] = []
        for start in range(0, len(candidates), self.batch_size):
            batch = candidates[start : start + self.batch_size]
            async with self.db.transaction() as conn:
                for task_id in batch:
                    task = await self.db.get_task(task_id, conn=conn)
                    if task is None or task.compacted or not task.status.is_done:
                        continue
                    if dry_run:
                        compacted.append(
                            task.model_copy(update={"summary": compaction_summary(task)})
                        )
                        continue
                    await self._compact(task, actor, conn)
                    compacted.append(task)
            logger.debug("compaction_batch_committed", size=len(batch), dry_run=dry_run)

        logger.info("tasks_compacted", count=len(compacted), dry_run=dry_run)
        return CompactionResult(compacted=compacted, dry_run=dry_run)

    def _check_compactable(self, task: Task) -> None:
        if not task.status.is_done:
            raise InvalidTransitionError(
                task.id,
                task.status.value,
                "compacted",
                remediation="Only closed or archived tasks can be compacted",
            )
        if task.compacted:
            raise PreconditionFailedError(
                f"task {task.id} is already compacted (summary: {task.summary})"
            )

    async def _compact(self, task: Task, actor: str, conn: Connection) -> None:
        summary = compaction_summary(task)
        await self.history.record_change(task.id, "summary", task.summary, summary, actor, conn=conn)
        await self.history.record_change(task.id, "compacted", False, True, actor, conn=conn)
        task.summary = summary
        task.description = ""
        task.notes = ""
        task.compacted = True
        await self.db.update_task(task, conn=conn)

    # Deletion and maintenance

    async def delete_task(self, task_id: str, actor: str = "user") -> list[str]:
        """Soft-delete a task and all of its descendants.

        Returns:
            Ids hidden by this call; descendants already deleted are skipped
        """
        async with self.db.transaction() as conn:
            await self.require_task(task_id, conn=conn)
            ids = await self.db.list_subtree_ids(task_id, include_deleted=False, conn=conn)
            await self.db.soft_delete_tasks(ids, conn=conn)
            for deleted_id in ids:
                await self.history.record_change(
                    deleted_id, "deleted", False, True, actor, conn=conn
                )
        logger.info("task_deleted", task_id=task_id, count=len(ids))
        return ids

    async def purge_task(self, task_id: str) -> list[str]:
        """Physically remove a task and its descendants.

        Edges and gate links go with them; history entries and gate runs
        are kept.
        """
        validate_task_id(task_id)
        async with self.db.transaction() as conn:
            if await self.db.get_task(task_id, include_deleted=True, conn=conn) is None:
                raise TaskNotFoundError(task_id)
            ids = await self.db.list_subtree_ids(task_id, conn=conn)
            await self.db.purge_tasks(ids, conn=conn)
        logger.warning("task_purged", task_id=task_id, count=len(ids))
        return ids

    async def cleanup_orphans(self, dry_run: bool = False) -> CleanupReport:
        """Remove edges and gate links that reference soft-deleted tasks."""
        async with self.db.transaction() as conn:
            orphans = await self.db.find_orphans(conn=conn)
            removed = 0
            if not dry_run:
                for dep in orphans.dependencies:
                    if await self.db.delete_dependency(dep.blocker_id, dep.blocked_id, conn=conn):
                        removed += 1
                for link in orphans.gate_links:
                    if await self.db.delete_gate_link(link.gate_id, link.task_id, conn=conn):
                        removed += 1
        logger.info("orphans_cleaned", found=orphans.total, removed=removed, dry_run=dry_run)
        return CleanupReport(orphans=orphans, removed=removed, dry_run=dry_run)
