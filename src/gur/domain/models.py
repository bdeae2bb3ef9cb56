"""Core domain models for gur."""

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator

from gur.domain.identifiers import (
    new_gate_id,
    new_history_id,
    new_template_id,
    parse_ancestry,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TaskStatus(str, Enum):
    """Task lifecycle states."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    CLOSED = "closed"
    ARCHIVED = "archived"

    @property
    def is_done(self) -> bool:
        """Closed and archived tasks no longer block anything."""
        return self in (TaskStatus.CLOSED, TaskStatus.ARCHIVED)


# Allowed status transitions. Entering CLOSED from an active status is only
# reachable through the closure workflow, which applies its own guards.
STATUS_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.OPEN: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.CLOSED}),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.OPEN, TaskStatus.CLOSED}),
    TaskStatus.CLOSED: frozenset({TaskStatus.OPEN, TaskStatus.ARCHIVED}),
    TaskStatus.ARCHIVED: frozenset({TaskStatus.CLOSED}),
}


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    return target in STATUS_TRANSITIONS[current]


class TaskType(str, Enum):
    """Conventional task types. The stored type is an open string."""

    TASK = "task"
    BUG = "bug"
    FEATURE = "feature"
    EPIC = "epic"


class DependencyType(str, Enum):
    """Type of dependency relationship."""

    BLOCKS = "blocks"  # only this type participates in cycle checks and closure
    RELATED = "related"
    PARENT_CHILD = "parent-child"


class GateResult(str, Enum):
    """Verification status of a gate for one task."""

    PENDING = "pending"
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"  # recorded, but still blocks closure


class Task(BaseModel):
    """A unit of work.

    Attributes:
        id: Hierarchical id; empty until the store assigns one
        notes: Append-only, one timestamped entry per line
        parent_id: Immediate parent for subtasks
        subtask_counter: Number of subtasks ever created under this task
        compacted: Description and notes were replaced by ``summary``
        deleted_at: Soft-delete marker; deleted tasks are hidden from queries
    """

    id: str = ""
    title: str = Field(min_length=1)
    description: str = ""
    notes: str = ""
    status: TaskStatus = TaskStatus.OPEN
    priority: int = Field(default=2, ge=0, le=4)
    type: str = TaskType.TASK.value
    labels: list[str] = Field(default_factory=list)
    assignee: str | None = None
    parent_id: str | None = None
    closed_at: datetime | None = None
    close_reason: str | None = None
    compacted: bool = False
    summary: str | None = None
    subtask_counter: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    deleted_at: datetime | None = None

    @field_validator("title")
    @classmethod
    def validate_title(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("title must not be empty")
        return v

    @field_validator("type")
    @classmethod
    def validate_type(cls, v: str) -> str:
        v = v.strip().lower()
        if not v:
            raise ValueError("type must not be empty")
        return v

    @field_validator("labels")
    @classmethod
    def normalize_labels(cls, v: list[str]) -> list[str]:
        """Drop blanks and duplicates, keep sorted for stable storage."""
        return sorted({label.strip() for label in v if label.strip()})

    @model_validator(mode="after")
    def validate_close_metadata(self) -> "Task":
        """closed_at and close_reason are set iff the task is closed.

        Archived tasks keep whatever close metadata they had.
        """
        has_metadata = self.closed_at is not None or bool(self.close_reason)
        if self.status == TaskStatus.CLOSED:
            if self.closed_at is None or not self.close_reason:
                raise ValueError("closed tasks require closed_at and close_reason")
        elif self.status != TaskStatus.ARCHIVED and has_metadata:
            raise ValueError(f"{self.status.value} tasks cannot carry close metadata")
        return self

    @property
    def depth(self) -> int:
        return parse_ancestry(self.id).depth if self.id else 0

    @property
    def root_id(self) -> str:
        return parse_ancestry(self.id).root_id if self.id else ""


class Dependency(BaseModel):
    """Directed edge: ``blocker_id`` must finish before ``blocked_id``."""

    blocker_id: str
    blocked_id: str
    type: DependencyType = DependencyType.BLOCKS
    created_at: datetime = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def validate_not_self(self) -> "Dependency":
        if self.blocker_id == self.blocked_id:
            raise ValueError("a task cannot depend on itself")
        return self


class Gate(BaseModel):
    """A reusable verification requirement with lifetime run counters.

    Counters are informational only; closure depends on the per-task
    GateTaskLink status.
    """

    id: str = Field(default_factory=new_gate_id)
    title: str = Field(min_length=1)
    description: str = ""
    category: str = ""
    type: str = "manual"
    priority: int = Field(default=2, ge=0, le=4)
    preconditions: str = ""
    steps: str = ""
    expected_result: str = ""
    command: str = ""
    labels: list[str] = Field(default_factory=list)
    last_result: GateResult | None = None
    last_run_at: datetime | None = None
    last_run_by: str | None = None
    last_run_notes: str | None = None
    run_count: int = Field(default=0, ge=0)
    pass_count: int = Field(default=0, ge=0)
    fail_count: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def pass_rate(self) -> float:
        """Percentage of runs that passed, 0 when never run."""
        if self.run_count == 0:
            return 0.0
        return self.pass_count / self.run_count * 100

    def record_run(
        self, result: GateResult, run_by: str, notes: str | None, at: datetime | None = None
    ) -> None:
        self.run_count += 1
        if result == GateResult.PASSED:
            self.pass_count += 1
        elif result == GateResult.FAILED:
            self.fail_count += 1
        self.last_result = result
        self.last_run_at = at or utcnow()
        self.last_run_by = run_by
        self.last_run_notes = notes
        self.updated_at = self.last_run_at


class GateTaskLink(BaseModel):
    """Per-task instance of a gate with its own verification status.

    ``gate_title`` is populated when the link is loaded together with its gate.
    """

    gate_id: str
    task_id: str
    status: GateResult = GateResult.PENDING
    verified_at: datetime | None = None
    verified_by: str | None = None
    notes: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    gate_title: str | None = None

    @property
    def is_passed(self) -> bool:
        return self.status == GateResult.PASSED


class GateRun(BaseModel):
    """One verification call, kept in time order."""

    id: int | None = None
    gate_id: str
    task_id: str
    result: GateResult
    run_by: str
    notes: str | None = None
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("result")
    @classmethod
    def validate_result(cls, v: GateResult) -> GateResult:
        if v == GateResult.PENDING:
            raise ValueError("a gate run cannot record a pending result")
        return v


class HistoryEntry(BaseModel):
    """Immutable record of one field transition on one task."""

    id: str = Field(default_factory=new_history_id)
    task_id: str
    field: str
    old_value: str
    new_value: str
    actor: str
    changed_at: datetime = Field(default_factory=utcnow)


class Template(BaseModel):
    """Named defaults for creating tasks."""

    id: str = Field(default_factory=new_template_id)
    name: str = Field(min_length=1)
    title: str = ""
    description: str = ""
    priority: int = Field(default=2, ge=0, le=4)
    type: str = TaskType.TASK.value
    labels: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)

    def to_task(self, title: str | None = None) -> Task:
        """Build an unsaved open task from this template."""
        return Task(
            title=title or self.title or self.name,
            description=self.description,
            priority=self.priority,
            type=self.type,
            labels=list(self.labels),
        )
