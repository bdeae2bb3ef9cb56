"""Gate, dependency and template commands."""

import typer
from rich.markup import escape
from rich.table import Table

from gur.cli.utils import console, get_services, run, status_style
from gur.domain.models import DependencyType, GateResult

gate_app = typer.Typer(help="Quality gates and per-task verification", no_args_is_help=True)
dep_app = typer.Typer(help="Task dependencies", no_args_is_help=True)
template_app = typer.Typer(help="Task templates", no_args_is_help=True)


# ===== Gates =====
@gate_app.command("create")
def gate_create(
    title: str = typer.Argument(..., help="Gate title"),
    description: str = typer.Option("", "--description", "-d"),
    category: str = typer.Option("", "--category", "-c", help="e.g. testing, review"),
    gate_type: str = typer.Option("manual", "--type", "-t", help="Free-form gate type"),
    priority: int = typer.Option(2, "--priority", "-p", min=0, max=4),
    preconditions: str = typer.Option("", help="What must hold before running the gate"),
    steps: str = typer.Option("", help="How to run the gate"),
    expected: str = typer.Option("", help="Expected result"),
    command: str = typer.Option("", help="Command that runs the gate"),
    label: list[str] = typer.Option([], "--label", "-l", help="Label (repeatable)"),
) -> None:
    """Create a reusable gate."""

    async def _create() -> None:
        services = await get_services()
        gate = await services.gates.create_gate(
            title,
            description=description,
            category=category,
            gate_type=gate_type,
            priority=priority,
            preconditions=preconditions,
            steps=steps,
            expected_result=expected,
            command=command,
            labels=label,
        )
        console.print(f"[green]✓[/green] Created gate {gate.id}: {escape(gate.title)}")

    run(_create())


@gate_app.command("list")
def gate_list(
    category: str | None = typer.Option(None, "--category", "-c"),
    gate_type: str | None = typer.Option(None, "--type", "-t"),
    result: GateResult | None = typer.Option(None, "--result", help="Filter by last result"),
) -> None:
    """List gates with their lifetime pass rate."""

    async def _list() -> None:
        services = await get_services()
        gates = await services.gates.list_gates(
            category=category, gate_type=gate_type, last_result=result
        )
        if not gates:
            console.print("[dim]No gates found[/dim]")
            return
        table = Table()
        table.add_column("ID", style="cyan", no_wrap=True)
        table.add_column("P", justify="right")
        table.add_column("Category")
        table.add_column("Type")
        table.add_column("Title")
        table.add_column("Last")
        table.add_column("Runs", justify="right")
        table.add_column("Pass %", justify="right")
        for gate in gates:
            last = gate.last_result.value if gate.last_result else "-"
            table.add_row(
                gate.id,
                str(gate.priority),
                escape(gate.category),
                escape(gate.type),
                escape(gate.title),
                f"[{status_style(last)}]{last}[/{status_style(last)}]",
                str(gate.run_count),
                f"{gate.pass_rate:.0f}",
            )
        console.print(table)

    run(_list())


@gate_app.command("show")
def gate_show(
    gate_id: str = typer.Argument(..., help="Gate ID"),
    runs: int = typer.Option(10, help="Number of recent runs to show"),
) -> None:
    """Show a gate, the tasks it is linked to and its recent runs."""

    async def _show() -> None:
        services = await get_services()
        gate = await services.gates.get_gate(gate_id)
        links = await services.gates.links_for_gate(gate_id)
        recent = await services.gates.recent_runs(gate_id, limit=runs)

        console.print(f"[bold cyan]{gate.id}[/bold cyan] {escape(gate.title)}")
        console.print(
            f"Category: {escape(gate.category or '-')}  Type: {escape(gate.type)}  "
            f"Priority: {gate.priority}"
        )
        for label, value in (
            ("Description", gate.description),
            ("Preconditions", gate.preconditions),
            ("Steps", gate.steps),
            ("Expected", gate.expected_result),
            ("Command", gate.command),
        ):
            if value:
                console.print(f"{label}: {escape(value)}")
        console.print(
            f"Runs: {gate.run_count} (passed {gate.pass_count}, failed {gate.fail_count}, "
            f"{gate.pass_rate:.0f}% pass rate)"
        )

        if links:
            console.print("\n[bold]Linked tasks[/bold]")
            for link in links:
                style = status_style(link.status.value)
                console.print(f"  {link.task_id} [{style}]{link.status.value}[/{style}]")
        if recent:
            console.print("\n[bold]Recent runs[/bold]")
            for gate_run in recent:
                style = status_style(gate_run.result.value)
                console.print(
                    f"  {gate_run.created_at:%Y-%m-%d %H:%M} {gate_run.task_id} "
                    f"[{style}]{gate_run.result.value}[/{style}] by {escape(gate_run.run_by)}"
                )

    run(_show())


@gate_app.command("link")
def gate_link(
    gate_id: str = typer.Argument(..., help="Gate ID"),
    task_id: str = typer.Argument(..., help="Task ID"),
) -> None:
    """Require a gate to pass before a task can close."""

    async def _link() -> None:
        services = await get_services()
        await services.gates.link_gate(gate_id, task_id, actor=services.actor)
        console.print(f"[green]✓[/green] Linked {gate_id} to {task_id} (pending)")

    run(_link())


@gate_app.command("unlink")
def gate_unlink(
    gate_id: str = typer.Argument(..., help="Gate ID"),
    task_id: str = typer.Argument(..., help="Task ID"),
) -> None:
    """Remove a gate requirement from a task."""

    async def _unlink() -> None:
        services = await get_services()
        await services.gates.unlink_gate(gate_id, task_id, actor=services.actor)
        console.print(f"[green]✓[/green] Unlinked {gate_id} from {task_id}")

    run(_unlink())


def _verify(
    gate_id: str, task_id: str, result: GateResult, notes: str | None, by: str | None
) -> None:
    async def _record() -> None:
        services = await get_services()
        await services.gates.record_verification(
            gate_id, task_id, result, verifier=by or services.actor, notes=notes
        )
        style = status_style(result.value)
        console.print(f"Gate {gate_id} [{style}]{result.value}[/{style}] for {task_id}")

    run(_record())


_BY_HELP = "Who ran the verification (defaults to the configured actor)"


@gate_app.command("pass")
def gate_pass(
    gate_id: str = typer.Argument(..., help="Gate ID"),
    task_id: str = typer.Argument(..., help="Task ID"),
    notes: str | None = typer.Option(None, "--notes", "-n"),
    by: str | None = typer.Option(None, "--by", help=_BY_HELP),
) -> None:
    """Record that a gate passed for a task."""
    _verify(gate_id, task_id, GateResult.PASSED, notes, by)


@gate_app.command("fail")
def gate_fail(
    gate_id: str = typer.Argument(..., help="Gate ID"),
    task_id: str = typer.Argument(..., help="Task ID"),
    notes: str | None = typer.Option(None, "--notes", "-n"),
    by: str | None = typer.Option(None, "--by", help=_BY_HELP),
) -> None:
    """Record that a gate failed for a task."""
    _verify(gate_id, task_id, GateResult.FAILED, notes, by)


@gate_app.command("skip")
def gate_skip(
    gate_id: str = typer.Argument(..., help="Gate ID"),
    task_id: str = typer.Argument(..., help="Task ID"),
    notes: str | None = typer.Option(None, "--notes", "-n"),
    by: str | None = typer.Option(None, "--by", help=_BY_HELP),
) -> None:
    """Record that a gate was skipped for a task. Skipped gates still block closing."""
    _verify(gate_id, task_id, GateResult.SKIPPED, notes, by)


@gate_app.command("check")
def gate_check(task_id: str = typer.Argument(..., help="Task ID")) -> None:
    """Report whether a task's gates allow it to close."""

    async def _check() -> None:
        services = await get_services()
        await services.tasks.require_task(task_id)
        readiness = await services.gates.close_readiness(task_id)
        if readiness.ready:
            console.print(f"[green]✓[/green] {task_id}: all {len(readiness.links)} gate(s) passed")
            return
        if not readiness.has_gates:
            console.print(f"[red]✗[/red] {task_id}: no gates linked")
        else:
            console.print(f"[red]✗[/red] {task_id}: {len(readiness.failing)} gate(s) not passed")
            for link in readiness.failing:
                style = status_style(link.status.value)
                console.print(
                    f"  {link.gate_id} [{style}]{link.status.value}[/{style}] "
                    f"{escape(link.gate_title or '')}  -> gur gate pass {link.gate_id} {task_id}"
                )
        raise typer.Exit(1)

    run(_check())


# ===== Dependencies =====
@dep_app.command("add")
def dep_add(
    blocker_id: str = typer.Argument(..., help="Task that must finish first"),
    blocked_id: str = typer.Argument(..., help="Task that waits"),
    dep_type: DependencyType = typer.Option(DependencyType.BLOCKS, "--type", "-t"),
) -> None:
    """Record that BLOCKER_ID blocks BLOCKED_ID."""

    async def _add() -> None:
        services = await get_services()
        await services.dependencies.add_blocker(
            blocker_id, blocked_id, dep_type=dep_type, actor=services.actor
        )
        console.print(f"[green]✓[/green] {blocker_id} {dep_type.value} {blocked_id}")

    run(_add())


@dep_app.command("remove")
def dep_remove(
    blocker_id: str = typer.Argument(..., help="Blocking task"),
    blocked_id: str = typer.Argument(..., help="Blocked task"),
) -> None:
    """Remove the dependency between two tasks."""

    async def _remove() -> None:
        services = await get_services()
        await services.dependencies.remove_blocker(blocker_id, blocked_id, actor=services.actor)
        console.print(f"[green]✓[/green] Removed {blocker_id} -> {blocked_id}")

    run(_remove())


@dep_app.command("list")
def dep_list(task_id: str = typer.Argument(..., help="Task ID")) -> None:
    """Show what blocks a task and what it blocks."""

    async def _list() -> None:
        services = await get_services()
        listing = await services.dependencies.list_for_task(task_id)
        open_ids = {t.id for t in await services.dependencies.open_blockers_of(task_id)}
        console.print(f"[bold]{task_id}[/bold] blocked by:")
        if not listing.blocked_by:
            console.print("  [dim]nothing[/dim]")
        for dep in listing.blocked_by:
            state = " [red](open)[/red]" if dep.blocker_id in open_ids else ""
            console.print(f"  {dep.blocker_id} ({dep.type.value}){state}")
        console.print(f"[bold]{task_id}[/bold] blocks:")
        if not listing.blocks:
            console.print("  [dim]nothing[/dim]")
        for dep in listing.blocks:
            console.print(f"  {dep.blocked_id} ({dep.type.value})")

    run(_list())


# ===== Templates =====
@template_app.command("create")
def template_create(
    name: str = typer.Argument(..., help="Unique template name"),
    title: str = typer.Option("", "--title", help="Default task title"),
    description: str = typer.Option("", "--description", "-d"),
    priority: int = typer.Option(2, "--priority", "-p", min=0, max=4),
    task_type: str = typer.Option("task", "--type", "-t"),
    label: list[str] = typer.Option([], "--label", "-l"),
) -> None:
    """Create a task template."""

    async def _create() -> None:
        services = await get_services()
        template = await services.templates.create_template(
            name,
            title=title,
            description=description,
            priority=priority,
            task_type=task_type,
            labels=label,
        )
        console.print(f"[green]✓[/green] Created template {template.id}: {escape(template.name)}")

    run(_create())


@template_app.command("list")
def template_list() -> None:
    """List task templates."""

    async def _list() -> None:
        services = await get_services()
        templates = await services.templates.list_templates()
        if not templates:
            console.print("[dim]No templates[/dim]")
            return
        table = Table()
        table.add_column("ID", style="cyan", no_wrap=True)
        table.add_column("Name")
        table.add_column("Type")
        table.add_column("P", justify="right")
        table.add_column("Title")
        for template in templates:
            table.add_row(
                template.id,
                escape(template.name),
                escape(template.type),
                str(template.priority),
                escape(template.title),
            )
        console.print(table)

    run(_list())


@template_app.command("show")
def template_show(name: str = typer.Argument(..., help="Template name or ID")) -> None:
    """Show a task template."""

    async def _show() -> None:
        services = await get_services()
        template = await services.templates.get_template(name)
        console.print(f"[bold cyan]{template.id}[/bold cyan] {escape(template.name)}")
        console.print(f"Title: {escape(template.title or '-')}")
        console.print(f"Type: {escape(template.type)}  Priority: {template.priority}")
        if template.labels:
            console.print(f"Labels: {escape(', '.join(template.labels))}")
        if template.description:
            console.print(f"\n{escape(template.description)}")

    run(_show())


@template_app.command("delete")
def template_delete(name: str = typer.Argument(..., help="Template name or ID")) -> None:
    """Delete a task template."""

    async def _delete() -> None:
        services = await get_services()
        template = await services.templates.delete_template(name)
        console.print(f"[green]✓[/green] Deleted template {escape(template.name)}")

    run(_delete())
