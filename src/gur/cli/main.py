"""gur CLI - task tracking with dependency graphs and quality gates."""

import sys
from datetime import timezone
from pathlib import Path

import typer
from rich.markup import escape
from rich.table import Table

from gur import __version__
from gur.cli.gate_commands import dep_app, gate_app, template_app
from gur.cli.utils import console, cutoff_from, get_services, run, status_style
from gur.domain.models import Task, TaskStatus
from gur.infrastructure.config import DATA_DIR_NAME, ConfigManager

app = typer.Typer(
    name="gur",
    help="Local task tracker with blocking dependencies and mandatory quality gates",
    no_args_is_help=True,
)

app.add_typer(gate_app, name="gate")
app.add_typer(dep_app, name="dep")
app.add_typer(template_app, name="template")


def _task_table(tasks: list[Task], title: str | None = None) -> Table:
    table = Table(title=title)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("P", justify="right")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Title")
    table.add_column("Assignee", style="dim")
    for task in tasks:
        style = status_style(task.status.value)
        table.add_row(
            task.id,
            str(task.priority),
            task.type,
            f"[{style}]{task.status.value}[/{style}]",
            escape(task.summary if task.compacted and task.summary else task.title),
            escape(task.assignee or ""),
        )
    return table


# ===== Version =====
@app.command()
def version() -> None:
    """Show gur version."""
    console.print(f"[bold]gur[/bold] version [cyan]{__version__}[/cyan]")


# ===== Project =====
@app.command()
def init(
    project_name: str | None = typer.Option(None, "--name", help="Project name"),
    mode: str = typer.Option("local", help="Storage mode recorded in the config table"),
) -> None:
    """Initialize a .guardrails directory and database in the current directory."""

    async def _init() -> None:
        existed = ConfigManager(Path.cwd()).is_initialized()
        services = await get_services(require_init=False, project_root=Path.cwd())
        db = services.database
        await db.set_config("project_name", project_name or Path.cwd().name)
        await db.set_config("mode", mode)
        if existed:
            console.print(f"[yellow]![/yellow] {DATA_DIR_NAME}/ already initialized")
        else:
            console.print(f"[green]✓[/green] Initialized {DATA_DIR_NAME}/ in {Path.cwd()}")

    run(_init())


# ===== Task Commands =====
@app.command()
def create(
    title: str | None = typer.Argument(None, help="Task title"),
    description: str | None = typer.Option(None, "--description", "-d", help="Description"),
    priority: int | None = typer.Option(None, "--priority", "-p", help="0 (critical) to 4"),
    task_type: str | None = typer.Option(None, "--type", "-t", help="task, bug, feature, epic"),
    label: list[str] = typer.Option([], "--label", "-l", help="Label (repeatable)"),
    assignee: str | None = typer.Option(None, "--assignee", "-a", help="Assignee"),
    parent: str | None = typer.Option(None, "--parent", help="Create as subtask of this task"),
    template: str | None = typer.Option(None, "--template", help="Template name or id"),
) -> None:
    """Create a new task."""
    if title is None and template is None:
        raise typer.BadParameter("a title is required unless --template is given")

    async def _create() -> None:
        services = await get_services()
        task = await services.tasks.create_task(
            title=title,
            description=description,
            priority=priority,
            task_type=task_type,
            labels=label,
            assignee=assignee,
            parent_id=parent,
            template=template,
            actor=services.actor,
        )
        console.print(f"[green]✓[/green] Created {task.id}: {escape(task.title)}")

    run(_create())


@app.command()
def show(task_id: str = typer.Argument(..., help="Task ID")) -> None:
    """Show task details, dependencies and gates."""

    async def _show() -> None:
        services = await get_services()
        task = await services.tasks.require_task(task_id)
        deps = await services.dependencies.list_for_task(task_id)
        links = await services.gates.links_for_task(task_id)
        subtasks = await services.tasks.subtasks_of(task_id)

        style = status_style(task.status.value)
        console.print(f"[bold cyan]{task.id}[/bold cyan] {escape(task.title)}")
        console.print(
            f"Status: [{style}]{task.status.value}[/{style}]  Priority: {task.priority}  "
            f"Type: {task.type}"
        )
        if task.assignee:
            console.print(f"Assignee: {escape(task.assignee)}")
        if task.labels:
            console.print(f"Labels: {escape(', '.join(task.labels))}")
        if task.parent_id:
            console.print(f"Parent: {task.parent_id}")
        console.print(f"Created: {task.created_at:%Y-%m-%d %H:%M}")
        if task.closed_at:
            console.print(
                f"Closed: {task.closed_at:%Y-%m-%d %H:%M} ({escape(task.close_reason or '')})"
            )
        if task.compacted:
            console.print(f"\n[dim]Compacted:[/dim] {escape(task.summary or '')}")
        if task.description:
            console.print(f"\n{escape(task.description)}")
        if task.notes:
            console.print(f"\n[bold]Notes[/bold]\n{escape(task.notes)}")

        if deps.blocked_by:
            console.print("\n[bold]Blocked by[/bold]")
            for dep in deps.blocked_by:
                console.print(f"  {dep.blocker_id} ({dep.type.value})")
        if deps.blocks:
            console.print("\n[bold]Blocks[/bold]")
            for dep in deps.blocks:
                console.print(f"  {dep.blocked_id} ({dep.type.value})")
        if subtasks:
            console.print("\n[bold]Subtasks[/bold]")
            for sub in subtasks:
                sstyle = status_style(sub.status.value)
                console.print(
                    f"  {sub.id} [{sstyle}]{sub.status.value}[/{sstyle}] {escape(sub.title)}"
                )
        if links:
            console.print("\n[bold]Gates[/bold]")
            for link in links:
                gstyle = status_style(link.status.value)
                console.print(
                    f"  {link.gate_id} [{gstyle}]{link.status.value}[/{gstyle}] "
                    f"{escape(link.gate_title or '')}"
                )

    run(_show())


@app.command("list")
def list_tasks(
    status: TaskStatus | None = typer.Option(None, "--status", "-s", help="Filter by status"),
    priority: int | None = typer.Option(None, "--priority", "-p", help="Filter by priority"),
    task_type: str | None = typer.Option(None, "--type", "-t", help="Filter by type"),
    assignee: str | None = typer.Option(None, "--assignee", "-a", help="Filter by assignee"),
    label: str | None = typer.Option(None, "--label", "-l", help="Filter by label"),
    all_tasks: bool = typer.Option(False, "--all", help="Include archived tasks"),
    limit: int = typer.Option(100, help="Maximum number of tasks"),
) -> None:
    """List tasks, highest priority first."""

    async def _list() -> None:
        services = await get_services()
        tasks = await services.tasks.list_tasks(
            status=status,
            priority=priority,
            task_type=task_type,
            assignee=assignee,
            label=label,
            include_archived=all_tasks,
            limit=limit,
        )
        if not tasks:
            console.print("[dim]No tasks found[/dim]")
            return
        console.print(_task_table(tasks))

    run(_list())


@app.command()
def update(
    task_id: str = typer.Argument(..., help="Task ID"),
    title: str | None = typer.Option(None, "--title", help="New title"),
    description: str | None = typer.Option(None, "--description", "-d", help="New description"),
    priority: int | None = typer.Option(None, "--priority", "-p", help="New priority"),
    task_type: str | None = typer.Option(None, "--type", "-t", help="New type"),
    status: TaskStatus | None = typer.Option(None, "--status", "-s", help="open or in_progress"),
    assignee: str | None = typer.Option(None, "--assignee", "-a", help="New assignee"),
    notes: str | None = typer.Option(None, "--notes", help="Append a note"),
    label: list[str] = typer.Option([], "--label", help="Add label (repeatable)"),
    remove_label: list[str] = typer.Option([], "--remove-label", help="Remove label"),
) -> None:
    """Update task fields. Every change is recorded in the task history."""

    async def _update() -> None:
        services = await get_services()
        task = await services.tasks.update_task(
            task_id,
            title=title,
            description=description,
            priority=priority,
            task_type=task_type,
            status=status,
            assignee=assignee,
            notes=notes,
            add_labels=label,
            remove_labels=remove_label,
            actor=services.actor,
        )
        console.print(f"[green]✓[/green] Updated {task.id}")

    run(_update())


@app.command()
def close(
    task_id: str = typer.Argument(..., help="Task ID"),
    reason: str = typer.Option(..., "--reason", "-r", help="Why the task is closed"),
    force: bool = typer.Option(
        False, "--force", help="Bypass failing gates (requires interactive confirmation)"
    ),
) -> None:
    """Close a task. Requires no open blockers or subtasks and all gates passed."""

    async def _close() -> None:
        services = await get_services()
        result = await services.closure.close(
            task_id, reason, force=force, actor=services.actor
        )
        if result.forced:
            console.print(f"[yellow]![/yellow] Force closed {task_id} (gates bypassed)")
        else:
            console.print(f"[green]✓[/green] Closed {task_id}")

    run(_close())


@app.command()
def reopen(task_id: str = typer.Argument(..., help="Task ID")) -> None:
    """Reopen a closed task."""

    async def _reopen() -> None:
        services = await get_services()
        await services.closure.reopen(task_id, actor=services.actor)
        console.print(f"[green]✓[/green] Reopened {task_id}")

    run(_reopen())


@app.command()
def archive(
    task_id: str | None = typer.Argument(None, help="Task ID"),
    all_closed: bool = typer.Option(False, "--all", help="Archive every closed task"),
    before: str | None = typer.Option(None, help="Only tasks closed before this age (e.g. 30d)"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would be archived"),
) -> None:
    """Archive a closed task, or all closed tasks with --all / --before."""
    if task_id is None and not all_closed and before is None:
        raise typer.BadParameter("give a task id, --all, or --before")
    cutoff = cutoff_from(before)

    async def _archive() -> None:
        services = await get_services()
        if task_id is not None:
            await services.closure.archive(task_id, actor=services.actor)
            console.print(f"[green]✓[/green] Archived {task_id}")
            return
        ids = await services.closure.archive_closed(
            before=cutoff, actor=services.actor, dry_run=dry_run
        )
        verb = "Would archive" if dry_run else "Archived"
        console.print(f"[green]✓[/green] {verb} {len(ids)} task(s)")
        for archived_id in ids if dry_run else []:
            console.print(f"  {archived_id}")

    run(_archive())


@app.command()
def unarchive(task_id: str = typer.Argument(..., help="Task ID")) -> None:
    """Return an archived task to closed."""

    async def _unarchive() -> None:
        services = await get_services()
        await services.closure.unarchive(task_id, actor=services.actor)
        console.print(f"[green]✓[/green] Unarchived {task_id}")

    run(_unarchive())


@app.command()
def compact(
    task_id: str | None = typer.Argument(None, help="Task ID"),
    before: str | None = typer.Option(None, help="Only tasks closed before this age (e.g. 90d)"),
    all_done: bool = typer.Option(False, "--all", help="Compact every closed/archived task"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would be compacted"),
) -> None:
    """Replace description and notes of finished tasks with a one-line summary."""
    if task_id is None and not all_done and before is None:
        raise typer.BadParameter("give a task id, --all, or --before")
    cutoff = cutoff_from(before)

    async def _compact() -> None:
        services = await get_services()
        if task_id is not None:
            task = await services.tasks.compact_task(
                task_id, actor=services.actor, dry_run=dry_run
            )
            verb = "Would compact" if dry_run else "Compacted"
            console.print(f"[green]✓[/green] {verb} {task.id}: {escape(task.summary or '')}")
            return
        result = await services.tasks.compact_closed(
            before=cutoff, actor=services.actor, dry_run=dry_run
        )
        verb = "Would compact" if dry_run else "Compacted"
        console.print(f"[green]✓[/green] {verb} {len(result.compacted)} task(s)")
        for task in result.compacted:
            console.print(f"  {task.id}: {escape(task.summary or '')}")

    run(_compact())


@app.command()
def delete(task_id: str = typer.Argument(..., help="Task ID")) -> None:
    """Hide a task and its subtasks (soft delete)."""

    async def _delete() -> None:
        services = await get_services()
        ids = await services.tasks.delete_task(task_id, actor=services.actor)
        console.print(f"[green]✓[/green] Deleted {len(ids)} task(s)")

    run(_delete())


@app.command()
def purge(
    task_id: str = typer.Argument(..., help="Task ID"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Permanently remove a task, its subtasks, edges and gate links."""
    if not yes:
        typer.confirm(f"Permanently purge {task_id} and its subtasks?", abort=True)

    async def _purge() -> None:
        services = await get_services()
        ids = await services.tasks.purge_task(task_id)
        console.print(f"[green]✓[/green] Purged {len(ids)} task(s)")

    run(_purge())


@app.command()
def ready(limit: int = typer.Option(20, help="Maximum number of tasks")) -> None:
    """Show open tasks with no open blockers."""

    async def _ready() -> None:
        services = await get_services()
        tasks = await services.dependencies.get_ready_tasks(limit=limit)
        if not tasks:
            console.print("[dim]No ready tasks[/dim]")
            return
        console.print(_task_table(tasks, title="Ready"))

    run(_ready())


@app.command()
def search(
    query: str = typer.Argument(..., help="Text to look for in title and description"),
    all_tasks: bool = typer.Option(False, "--all", help="Include archived tasks"),
) -> None:
    """Search tasks by title and description."""

    async def _search() -> None:
        services = await get_services()
        tasks = await services.tasks.search_tasks(query, include_archived=all_tasks)
        if not tasks:
            console.print("[dim]No matching tasks[/dim]")
            return
        console.print(_task_table(tasks))

    run(_search())


@app.command()
def stats() -> None:
    """Show task counts by status and priority."""

    async def _stats() -> None:
        services = await get_services()
        result = await services.tasks.stats()

        table = Table(title=f"Tasks ({result.total})")
        table.add_column("Status")
        table.add_column("Count", justify="right")
        for status_name, count in result.by_status.items():
            table.add_row(status_name, str(count))
        console.print(table)

        table = Table(title="By priority")
        table.add_column("Priority", justify="right")
        table.add_column("Count", justify="right")
        for priority_value, count in result.by_priority.items():
            table.add_row(f"P{priority_value}", str(count))
        console.print(table)

    run(_stats())


@app.command()
def summary() -> None:
    """Summarize recent activity."""

    async def _summary() -> None:
        services = await get_services()
        result = await services.tasks.summary()
        counts = ", ".join(f"{k}: {v}" for k, v in result.by_status.items())
        console.print(f"[bold]Status[/bold] {counts}")
        console.print(
            f"Last 24h: {result.created_last_24h} created, {result.closed_last_24h} closed"
        )
        console.print(f"Compacted: {result.compacted}")
        if result.high_priority_open:
            console.print(_task_table(result.high_priority_open, title="High priority open"))

    run(_summary())


@app.command()
def history(
    task_id: str = typer.Argument(..., help="Task ID"),
    limit: int | None = typer.Option(None, help="Maximum number of entries"),
) -> None:
    """Show the change history of a task, newest first."""

    async def _history() -> None:
        services = await get_services()
        entries = await services.history.list_for_task(task_id, limit=limit)
        if not entries:
            console.print(f"[dim]No history for {task_id}[/dim]")
            return
        table = Table(title=f"History of {task_id}")
        table.add_column("When", style="dim", no_wrap=True)
        table.add_column("Field")
        table.add_column("Old")
        table.add_column("New")
        table.add_column("By", style="dim")
        for entry in entries:
            table.add_row(
                entry.changed_at.astimezone(timezone.utc).strftime("%Y-%m-%d %H:%M:%S"),
                entry.field,
                escape(entry.old_value),
                escape(entry.new_value),
                escape(entry.actor),
            )
        console.print(table)

    run(_history())


@app.command()
def cleanup(
    dry_run: bool = typer.Option(False, "--dry-run", help="Only report what would be removed"),
) -> None:
    """Remove dependencies and gate links that point at deleted tasks."""

    async def _cleanup() -> None:
        services = await get_services()
        report = await services.tasks.cleanup_orphans(dry_run=dry_run)
        if report.orphans.total == 0:
            console.print("[green]✓[/green] No orphaned records")
            return
        for dep in report.orphans.dependencies:
            console.print(f"  dependency {dep.blocker_id} -> {dep.blocked_id}")
        for link in report.orphans.gate_links:
            console.print(f"  gate link {link.gate_id} -> {link.task_id}")
        if dry_run:
            console.print(f"[yellow]![/yellow] Would remove {report.orphans.total} record(s)")
        else:
            console.print(f"[green]✓[/green] Removed {report.removed} record(s)")

    run(_cleanup())


# ===== Main Entry Point =====
def main() -> None:
    """Main entry point."""
    try:
        app()
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted[/yellow]")
        sys.exit(130)


if __name__ == "__main__":
    main()
