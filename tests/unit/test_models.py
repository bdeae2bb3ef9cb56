"""Unit tests for domain models."""

from datetime import datetime, timezone

import pytest
from gur.domain.models import (
    Dependency,
    Gate,
    GateResult,
    GateRun,
    Task,
    TaskStatus,
    Template,
    can_transition,
)
from pydantic import ValidationError


class TestTask:
    """Tests for the Task model."""

    def test_defaults(self) -> None:
        task = Task(title="Write docs")

        assert task.id == ""
        assert task.status == TaskStatus.OPEN
        assert task.priority == 2
        assert task.type == "task"
        assert task.labels == []
        assert task.closed_at is None
        assert task.close_reason is None
        assert task.compacted is False

    def test_title_is_stripped_and_required(self) -> None:
        assert Task(title="  padded  ").title == "padded"
        with pytest.raises(ValidationError):
            Task(title="   ")

    @pytest.mark.parametrize("priority", [-1, 5])
    def test_priority_range(self, priority: int) -> None:
        with pytest.raises(ValidationError):
            Task(title="x", priority=priority)

    def test_type_is_open_string(self) -> None:
        assert Task(title="x", type="Spike").type == "spike"

    def test_labels_normalized(self) -> None:
        task = Task(title="x", labels=["b", "a", "b", " ", " c "])
        assert task.labels == ["a", "b", "c"]

    def test_closed_requires_close_metadata(self) -> None:
        with pytest.raises(ValidationError):
            Task(title="x", status=TaskStatus.CLOSED)
        with pytest.raises(ValidationError):
            Task(title="x", status=TaskStatus.CLOSED, closed_at=datetime.now(timezone.utc))

    def test_open_cannot_carry_close_metadata(self) -> None:
        with pytest.raises(ValidationError):
            Task(title="x", close_reason="done")

    def test_archived_keeps_close_metadata(self) -> None:
        task = Task(
            title="x",
            status=TaskStatus.ARCHIVED,
            closed_at=datetime.now(timezone.utc),
            close_reason="shipped",
        )
        assert task.close_reason == "shipped"

    def test_hierarchy_properties(self) -> None:
        task = Task(id="gur-0a1b2c3d.2.1", title="x")
        assert task.depth == 2
        assert task.root_id == "gur-0a1b2c3d"


class TestStatusTransitions:
    @pytest.mark.parametrize(
        ("current", "target", "allowed"),
        [
            (TaskStatus.OPEN, TaskStatus.IN_PROGRESS, True),
            (TaskStatus.IN_PROGRESS, TaskStatus.OPEN, True),
            (TaskStatus.OPEN, TaskStatus.CLOSED, True),
            (TaskStatus.CLOSED, TaskStatus.OPEN, True),
            (TaskStatus.CLOSED, TaskStatus.ARCHIVED, True),
            (TaskStatus.ARCHIVED, TaskStatus.CLOSED, True),
            (TaskStatus.OPEN, TaskStatus.ARCHIVED, False),
            (TaskStatus.ARCHIVED, TaskStatus.OPEN, False),
            (TaskStatus.CLOSED, TaskStatus.IN_PROGRESS, False),
        ],
    )
    def test_transition_table(self, current: TaskStatus, target: TaskStatus, allowed: bool) -> None:
        assert can_transition(current, target) is allowed

    def test_done_statuses(self) -> None:
        assert TaskStatus.CLOSED.is_done
        assert TaskStatus.ARCHIVED.is_done
        assert not TaskStatus.IN_PROGRESS.is_done


class TestGate:
    """Tests for Gate counters."""

    def test_pass_rate_without_runs(self) -> None:
        assert Gate(title="Lint").pass_rate == 0.0

    def test_record_run_updates_counters(self) -> None:
        gate = Gate(title="Lint")

        gate.record_run(GateResult.PASSED, "alice", "clean")
        gate.record_run(GateResult.FAILED, "bob", None)
        gate.record_run(GateResult.SKIPPED, "bob", "flaky")

        assert gate.run_count == 3
        assert gate.pass_count == 1
        assert gate.fail_count == 1
        assert gate.last_result == GateResult.SKIPPED
        assert gate.last_run_by == "bob"
        assert gate.last_run_notes == "flaky"
        assert gate.pass_rate == pytest.approx(100 / 3)

    def test_gate_run_rejects_pending(self) -> None:
        with pytest.raises(ValidationError):
            GateRun(gate_id="gate-00000000", task_id="gur-00000000", result="pending", run_by="x")


def test_dependency_rejects_self_edge() -> None:
    with pytest.raises(ValidationError):
        Dependency(blocker_id="gur-00000000", blocked_id="gur-00000000")


def test_template_to_task() -> None:
    template = Template(name="bugfix", description="Repro steps", priority=1, type="bug")

    task = template.to_task()

    assert task.title == "bugfix"
    assert task.type == "bug"
    assert task.priority == 1
    assert task.status == TaskStatus.OPEN
    assert template.to_task("Crash on save").title == "Crash on save"
