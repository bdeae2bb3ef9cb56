"""Exception hierarchy for the gur task tracker.

Errors fall into four families that callers can branch on:

- ``NotFoundError``: an unknown task, gate, link, edge or template id.
- ``InvariantViolationError``: the request would break a data-model rule.
- ``PreconditionFailedError``: the request is valid but the current state
  forbids it (open blockers, open subtasks, unverified gates).
- ``ConfirmationRequiredError``: an override needs a human at a terminal.

None of them are retried automatically.
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from gur.domain.models import GateTaskLink, Task


class GurError(Exception):
    """Base exception for all gur errors.

    Attributes:
        message: Error message describing what went wrong
        remediation: Optional guidance on how to fix the issue
    """

    def __init__(self, message: str, remediation: str | None = None):
        super().__init__(message)
        self.remediation = remediation

    @property
    def message(self) -> str:
        return str(self.args[0])

    def __str__(self) -> str:
        """Return formatted error message with remediation if available."""
        if self.remediation:
            return f"{self.args[0]}\n\nRemediation: {self.remediation}"
        return str(self.args[0])


# Not found


class NotFoundError(GurError):
    """Referenced entity does not exist."""

    entity = "entity"

    def __init__(self, entity_id: str, message: str | None = None, remediation: str | None = None):
        super().__init__(message or f"{self.entity} not found: {entity_id}", remediation)
        self.entity_id = entity_id


class TaskNotFoundError(NotFoundError):
    entity = "task"


class GateNotFoundError(NotFoundError):
    entity = "gate"


class TemplateNotFoundError(NotFoundError):
    entity = "template"


class GateLinkNotFoundError(NotFoundError):
    """No link exists between a gate and a task."""

    entity = "gate link"

    def __init__(self, gate_id: str, task_id: str):
        super().__init__(
            f"{gate_id}:{task_id}",
            message=f"gate {gate_id} is not linked to task {task_id}",
            remediation=f"Link it first: gur gate link {gate_id} {task_id}",
        )
        self.gate_id = gate_id
        self.task_id = task_id


class DependencyNotFoundError(NotFoundError):
    """No dependency edge exists between two tasks."""

    entity = "dependency"

    def __init__(self, blocker_id: str, blocked_id: str):
        super().__init__(
            f"{blocker_id}->{blocked_id}",
            message=f"no dependency: {blocker_id} does not block {blocked_id}",
        )
        self.blocker_id = blocker_id
        self.blocked_id = blocked_id


# Invariant violations


class InvariantViolationError(GurError):
    """The requested change would break a data-model rule."""

    pass


class InvalidValueError(InvariantViolationError):
    """A field value is outside its allowed set or range."""

    pass


class InvalidIdentifierError(InvalidValueError):
    """An identifier is not well-formed."""

    def __init__(self, value: str, kind: str = "task"):
        super().__init__(f"invalid {kind} id: {value!r}")
        self.value = value


class InvalidTransitionError(InvariantViolationError):
    """Status transition is not allowed from the current status."""

    def __init__(self, task_id: str, current: str, target: str, remediation: str | None = None):
        super().__init__(
            f"task {task_id} cannot move from {current} to {target}", remediation=remediation
        )
        self.task_id = task_id
        self.current = current
        self.target = target


class SelfBlockError(InvariantViolationError):
    def __init__(self, task_id: str):
        super().__init__(f"task cannot block itself: {task_id}")
        self.task_id = task_id


class CircularDependencyError(InvariantViolationError):
    """Adding an edge would close a cycle in the blocking graph.

    Attributes:
        blocker_id: Requested blocker
        blocked_id: Requested blocked task
        path: Existing chain of ``blocks`` edges from blocked_id to blocker_id
    """

    def __init__(self, blocker_id: str, blocked_id: str, path: list[str] | None = None):
        message = f"circular dependency detected: {blocker_id} already depends on {blocked_id}"
        if path:
            message += f" (existing chain: {' -> '.join(path)})"
        super().__init__(message)
        self.blocker_id = blocker_id
        self.blocked_id = blocked_id
        self.path = path or []


class DuplicateDependencyError(InvariantViolationError):
    def __init__(self, blocker_id: str, blocked_id: str):
        super().__init__(f"dependency already exists: {blocker_id} -> {blocked_id}")
        self.blocker_id = blocker_id
        self.blocked_id = blocked_id


class DuplicateGateLinkError(InvariantViolationError):
    def __init__(self, gate_id: str, task_id: str):
        super().__init__(f"gate {gate_id} already linked to task {task_id}")
        self.gate_id = gate_id
        self.task_id = task_id


class DuplicateTemplateError(InvariantViolationError):
    def __init__(self, name: str):
        super().__init__(f"template already exists: {name}")
        self.name = name


class AlreadyClosedError(InvariantViolationError):
    """Task is already closed; carries the existing close metadata."""

    def __init__(self, task: "Task"):
        closed_at = task.closed_at.strftime("%Y-%m-%d %H:%M") if task.closed_at else "unknown"
        super().__init__(
            f"task {task.id} is already {task.status.value} "
            f"(closed {closed_at}: {task.close_reason or 'no reason recorded'})",
            remediation=f"Reopen it first: gur reopen {task.id}",
        )
        self.task_id = task.id
        self.close_reason = task.close_reason
        self.closed_at = task.closed_at


# Precondition failures


class PreconditionFailedError(GurError):
    """Current state forbids the operation until something else is resolved."""

    pass


class OpenBlockersError(PreconditionFailedError):
    """Task is blocked by tasks that are not yet closed."""

    def __init__(self, task_id: str, blockers: list["Task"]):
        listing = ", ".join(f"{b.id} ({b.status.value})" for b in blockers)
        super().__init__(
            f"cannot close {task_id}: blocked by {len(blockers)} open issue(s): {listing}",
            remediation="Close the blocking issues first or remove the dependencies",
        )
        self.task_id = task_id
        self.blockers = blockers


class OpenSubtasksError(PreconditionFailedError):
    """Task has direct children that are not yet closed."""

    def __init__(self, task_id: str, subtasks: list["Task"]):
        listing = ", ".join(s.id for s in subtasks)
        super().__init__(
            f"cannot close {task_id}: has {len(subtasks)} open subtask(s): {listing}",
            remediation="Close all subtasks first",
        )
        self.task_id = task_id
        self.subtasks = subtasks


class GatesNotReadyError(PreconditionFailedError):
    """Task has no gates linked, or some linked gates have not passed."""

    def __init__(self, task_id: str, failing: list["GateTaskLink"]):
        if failing:
            lines = [f"cannot close {task_id}: {len(failing)} gate(s) not verified:"]
            hints = []
            for link in failing:
                title = f" {link.gate_title}" if link.gate_title else ""
                lines.append(f"  - {link.gate_id}{title} [{link.status.value}]")
                hints.append(f"gur gate pass {link.gate_id} {task_id}")
            message = "\n".join(lines)
            remediation = "Verify each gate: " + "; ".join(hints)
        else:
            message = f"cannot close {task_id}: no gates linked"
            remediation = f"Link at least one gate: gur gate link <gate-id> {task_id}"
        super().__init__(message, remediation=remediation)
        self.task_id = task_id
        self.failing = failing


# Confirmation


class ConfirmationRequiredError(GurError):
    """Operation needs interactive confirmation but none is available."""

    pass


class ConfirmationDeclinedError(GurError):
    """User was asked to confirm and declined."""

    pass
