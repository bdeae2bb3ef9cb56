"""Pytest configuration and fixtures."""

from collections.abc import AsyncGenerator, Generator
from pathlib import Path

import pytest
from gur.domain.models import Gate, GateResult, Task
from gur.domain.ports.confirmation import ConfirmationPrompt
from gur.infrastructure.database import Database
from gur.services import (
    ClosureWorkflow,
    DependencyResolver,
    GateService,
    HistoryService,
    TaskService,
    TemplateService,
)


class ScriptedConfirmation(ConfirmationPrompt):
    """Confirmation prompt with a fixed answer that records what it was asked."""

    def __init__(self, interactive: bool = True, answer: bool = True):
        self.interactive = interactive
        self.answer = answer
        self.prompts: list[str] = []

    def is_interactive(self) -> bool:
        return self.interactive

    def confirm(self, message: str) -> bool:
        self.prompts.append(message)
        return self.answer


# Database fixtures
@pytest.fixture
def temp_db_path(tmp_path: Path) -> Generator[Path, None, None]:
    """Temporary database file path inside a .guardrails directory."""
    db_path = tmp_path / ".guardrails" / "db.sqlite"
    yield db_path


@pytest.fixture
async def memory_db() -> AsyncGenerator[Database, None]:
    """Create in-memory database for fast tests."""
    db = Database(Path(":memory:"))
    await db.initialize()
    yield db
    # Cleanup: close the shared connection for :memory: databases
    await db.close()


@pytest.fixture
async def file_db(temp_db_path: Path) -> AsyncGenerator[Database, None]:
    """Create file-based database for persistence and transaction tests."""
    db = Database(temp_db_path)
    await db.initialize()
    yield db


# Service fixtures
@pytest.fixture
def confirmation() -> ScriptedConfirmation:
    """Non-interactive by default, like a script or CI run."""
    return ScriptedConfirmation(interactive=False, answer=False)


@pytest.fixture
def history(memory_db: Database) -> HistoryService:
    return HistoryService(memory_db)


@pytest.fixture
def resolver(memory_db: Database, history: HistoryService) -> DependencyResolver:
    return DependencyResolver(memory_db, history)


@pytest.fixture
def gates(memory_db: Database, history: HistoryService) -> GateService:
    return GateService(memory_db, history)


@pytest.fixture
def templates(memory_db: Database) -> TemplateService:
    return TemplateService(memory_db)


@pytest.fixture
def tasks(
    memory_db: Database,
    history: HistoryService,
    gates: GateService,
    templates: TemplateService,
    confirmation: ScriptedConfirmation,
) -> TaskService:
    return TaskService(
        memory_db,
        history=history,
        gates=gates,
        templates=templates,
        confirmation=confirmation,
        batch_size=2,
    )


@pytest.fixture
def closure(
    memory_db: Database,
    resolver: DependencyResolver,
    gates: GateService,
    history: HistoryService,
    confirmation: ScriptedConfirmation,
) -> ClosureWorkflow:
    return ClosureWorkflow(
        memory_db,
        dependencies=resolver,
        gates=gates,
        history=history,
        confirmation=confirmation,
        batch_size=2,
    )


# Test data fixtures
@pytest.fixture
async def gate(gates: GateService) -> Gate:
    """A single reusable gate."""
    return await gates.create_gate("Unit tests pass", category="testing", gate_type="automated")


@pytest.fixture
async def verified_task(tasks: TaskService, gates: GateService, gate: Gate) -> Task:
    """Open task with one linked gate that has passed."""
    task = await tasks.create_task("Verified work")
    await gates.link_gate(gate.id, task.id)
    await gates.record_verification(gate.id, task.id, GateResult.PASSED, verifier="ci")
    return task

