"""Unit tests for the exception hierarchy."""

from datetime import datetime, timezone

from gur.domain.models import GateResult, GateTaskLink, Task, TaskStatus
from gur.infrastructure.exceptions import (
    AlreadyClosedError,
    CircularDependencyError,
    ConfirmationRequiredError,
    GateLinkNotFoundError,
    GatesNotReadyError,
    GurError,
    InvariantViolationError,
    NotFoundError,
    OpenSubtasksError,
    PreconditionFailedError,
    SelfBlockError,
    TaskNotFoundError,
)


class TestExceptionHierarchy:
    """Test custom exception hierarchy."""

    def test_gur_error_is_base_exception(self) -> None:
        error = GurError("Test error")
        assert isinstance(error, Exception)
        assert str(error) == "Test error"
        assert error.message == "Test error"

    def test_remediation_is_appended(self) -> None:
        error = GurError("Broken", remediation="Run: gur init")

        assert error.remediation == "Run: gur init"
        assert "Remediation: Run: gur init" in str(error)
        assert error.message == "Broken"

    def test_families(self) -> None:
        assert isinstance(TaskNotFoundError("gur-00000000"), NotFoundError)
        assert isinstance(SelfBlockError("gur-00000000"), InvariantViolationError)
        assert isinstance(CircularDependencyError("a", "b"), InvariantViolationError)
        assert isinstance(OpenSubtasksError("a", []), PreconditionFailedError)
        assert isinstance(ConfirmationRequiredError("x"), GurError)


class TestMessages:
    """Errors name the entities involved."""

    def test_not_found_names_id(self) -> None:
        assert "gur-12345678" in str(TaskNotFoundError("gur-12345678"))

    def test_link_not_found_suggests_linking(self) -> None:
        error = GateLinkNotFoundError("gate-00000001", "gur-00000002")
        assert "Link it first" in str(error)

    def test_cycle_names_both_ids_and_path(self) -> None:
        error = CircularDependencyError("gur-a", "gur-b", ["gur-b", "gur-c", "gur-a"])

        assert "gur-a already depends on gur-b" in str(error)
        assert "gur-b -> gur-c -> gur-a" in str(error)

    def test_already_closed_reports_reason(self) -> None:
        task = Task(
            id="gur-00000001",
            title="x",
            status=TaskStatus.CLOSED,
            closed_at=datetime(2025, 1, 2, 3, 4, tzinfo=timezone.utc),
            close_reason="shipped",
        )

        message = str(AlreadyClosedError(task))

        assert "already closed" in message
        assert "2025-01-02 03:04" in message
        assert "shipped" in message

    def test_gates_not_ready_lists_links(self) -> None:
        link = GateTaskLink(
            gate_id="gate-0000000a",
            task_id="gur-00000001",
            status=GateResult.SKIPPED,
            gate_title="Review",
        )

        error = GatesNotReadyError("gur-00000001", [link])

        assert "gate-0000000a Review [skipped]" in str(error)
        assert "gur gate pass gate-0000000a gur-00000001" in str(error)
        assert error.failing == [link]

    def test_gates_not_ready_without_links(self) -> None:
        assert "no gates linked" in str(GatesNotReadyError("gur-00000001", []))
