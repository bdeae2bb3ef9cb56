"""Domain models and identifiers for gur."""

from gur.domain.models import (
    Dependency,
    DependencyType,
    Gate,
    GateResult,
    GateRun,
    GateTaskLink,
    HistoryEntry,
    Task,
    TaskStatus,
    Template,
)

__all__ = [
    "Dependency",
    "DependencyType",
    "Gate",
    "GateResult",
    "GateRun",
    "GateTaskLink",
    "HistoryEntry",
    "Task",
    "TaskStatus",
    "Template",
]
