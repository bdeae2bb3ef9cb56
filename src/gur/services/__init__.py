"""Service layer: dependency graph, gates, history, tasks and closure."""

from gur.services.closure_workflow import ClosureWorkflow, CloseResult
from gur.services.dependency_resolver import DependencyResolver
from gur.services.gate_service import CloseReadiness, GateService
from gur.services.history_service import HistoryService
from gur.services.task_service import TaskService
from gur.services.template_service import TemplateService

__all__ = [
    "CloseReadiness",
    "CloseResult",
    "ClosureWorkflow",
    "DependencyResolver",
    "GateService",
    "HistoryService",
    "TaskService",
    "TemplateService",
]
