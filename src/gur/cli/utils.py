"""Shared helpers for CLI commands: service wiring, durations, prompts.

Duration strings
----------------
``--before`` options take ``<number><unit>`` where unit is one of
``h`` (hours), ``d`` (days), ``w`` (weeks), ``m`` (30 days) or
``y`` (365 days). Months and years are approximations.
"""

import asyncio
import re
import sys
from collections.abc import Coroutine
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, TypeVar

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape

from gur.domain.ports.confirmation import ConfirmationPrompt
from gur.infrastructure.config import Config, ConfigManager
from gur.infrastructure.database import Database
from gur.infrastructure.exceptions import GurError
from gur.infrastructure.logger import bind_actor, setup_logging
from gur.services import (
    ClosureWorkflow,
    DependencyResolver,
    GateService,
    HistoryService,
    TaskService,
    TemplateService,
)

console = Console()

T = TypeVar("T")

DURATION_HOURS = {
    "h": 1,
    "d": 24,
    "w": 24 * 7,
    "m": 24 * 30,
    "y": 24 * 365,
}


def parse_duration(duration_str: str) -> timedelta:
    """Parse a duration string (e.g. '12h', '7d', '2w') into a timedelta.

    Raises:
        ValueError: If the format or unit is invalid, or the value is zero
    """
    match = re.match(r"^(\d+)([hdwmy])$", duration_str.lower().strip())
    if not match:
        raise ValueError(
            f"Invalid duration format: '{duration_str}'. "
            "Expected format: <number><unit> (e.g., '12h', '7d', '2w', '1m', '1y')"
        )
    value = int(match.group(1))
    if value == 0:
        raise ValueError("Duration must be greater than zero")
    return timedelta(hours=value * DURATION_HOURS[match.group(2)])


def cutoff_from(before: str | None) -> datetime | None:
    """Convert a ``--before`` duration into an absolute UTC cutoff."""
    if before is None:
        return None
    try:
        return datetime.now(timezone.utc) - parse_duration(before)
    except ValueError as e:
        raise typer.BadParameter(str(e), param_hint="--before") from e


class TerminalConfirmation(ConfirmationPrompt):
    """Asks on the controlling terminal; the answer must be exactly 'yes'."""

    def is_interactive(self) -> bool:
        return sys.stdin.isatty()

    def confirm(self, message: str) -> bool:
        console.print(f"[yellow]WARNING:[/yellow] {escape(message)}")
        answer = typer.prompt("Do you want to proceed? (yes/no)", default="no")
        return answer.strip().lower() == "yes"


@dataclass
class Services:
    config: Config
    config_manager: ConfigManager
    database: Database
    history: HistoryService
    dependencies: DependencyResolver
    gates: GateService
    templates: TemplateService
    tasks: TaskService
    closure: ClosureWorkflow

    @property
    def actor(self) -> str:
        return self.config.actor


async def get_services(
    require_init: bool = True, project_root: Path | None = None
) -> Services:
    """Load configuration, open the project database and wire the services.

    Raises:
        GurError: If no ``.guardrails`` directory exists and require_init is set
    """
    config_manager = ConfigManager(project_root)
    if require_init and not config_manager.is_initialized():
        raise GurError(
            "not a gur project (no .guardrails directory found)",
            remediation="Run 'gur init' in the project root",
        )
    config = config_manager.load_config()
    setup_logging(log_level=config.log_level, log_dir=config_manager.get_log_dir())
    bind_actor(config.actor)

    database = Database(
        config_manager.get_database_path(), busy_timeout_ms=config.database.busy_timeout_ms
    )
    await database.initialize()

    confirmation = TerminalConfirmation()
    history = HistoryService(database, default_limit=config.maintenance.history_limit)
    dependencies = DependencyResolver(database, history)
    gates = GateService(database, history)
    templates = TemplateService(database)
    tasks = TaskService(
        database,
        history=history,
        gates=gates,
        templates=templates,
        confirmation=confirmation,
        default_priority=config.tracker.default_priority,
        default_type=config.tracker.default_type,
        batch_size=config.maintenance.batch_size,
    )
    closure = ClosureWorkflow(
        database,
        dependencies=dependencies,
        gates=gates,
        history=history,
        confirmation=confirmation,
        batch_size=config.maintenance.batch_size,
    )
    return Services(
        config=config,
        config_manager=config_manager,
        database=database,
        history=history,
        dependencies=dependencies,
        gates=gates,
        templates=templates,
        tasks=tasks,
        closure=closure,
    )


def run(coro: Coroutine[Any, Any, T]) -> T:
    """Run a command coroutine, turning gur errors into a clean exit code 1."""
    try:
        return asyncio.run(coro)
    except (GurError, ValidationError) as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(1) from e


def status_style(status: str) -> str:
    return {
        "open": "white",
        "in_progress": "cyan",
        "closed": "green",
        "archived": "dim",
        "pending": "yellow",
        "passed": "green",
        "failed": "red",
        "skipped": "magenta",
    }.get(status, "white")
