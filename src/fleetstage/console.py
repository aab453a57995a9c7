"""Rich rendering of plans, status and results, and the interactive destroy prompt."""

from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from fleetstage.orchestrator.infra import StageStatus
from fleetstage.orchestrator.planner import ActionType, StagePlan
from fleetstage.orchestrator.results import ExecutionStatus, StageResult
from fleetstage.providers.base import ServerStatus

ACTION_STYLES = {
    ActionType.CREATE: "green",
    ActionType.UPDATE: "yellow",
    ActionType.START: "yellow",
    ActionType.STOP: "yellow",
    ActionType.WAIT: "cyan",
    ActionType.DELETE: "red",
    ActionType.NO_CHANGE: "dim",
}

STATUS_STYLES = {
    ServerStatus.RUNNING: "green",
    ServerStatus.STARTING: "yellow",
    ServerStatus.STOPPING: "yellow",
    ServerStatus.STOPPED: "blue",
    ServerStatus.NOT_FOUND: "dim",
}


def plan_table(plan: StagePlan) -> Table:
    table = Table(title=f"Stage: {plan.stage} ({plan.operation})", show_header=True,
                  header_style="bold cyan")
    table.add_column("Resource", style="cyan")
    table.add_column("Action")
    table.add_column("Details")

    for planned in plan.actions:
        style = ACTION_STYLES[planned.action]
        table.add_row(
            planned.resource_key,
            f"[{style}]{planned.action.value}[/{style}]",
            planned.description,
        )
    return table


def render_plan(plan: StagePlan, console: Optional[Console] = None) -> None:
    """Print a plan as a table followed by its one-line summary."""
    console = console or Console()
    if not plan.actions:
        console.print("[dim]Nothing to do[/dim]")
        return
    console.print(plan_table(plan))
    console.print(f"[bold]Plan:[/bold] {plan.summary()}")


def render_status(status: StageStatus, console: Optional[Console] = None) -> None:
    """Print live server states and DNS records of a stage."""
    console = console or Console()
    if not status.servers:
        console.print(f"[dim]Stage {status.stage} is local; no servers[/dim]")
        return

    servers = Table(title=f"Servers in {status.stage}", show_header=True, header_style="bold cyan")
    servers.add_column("Server", style="cyan")
    servers.add_column("Status")
    servers.add_column("Identity", style="magenta")
    servers.add_column("Address", style="green")
    for name, report in sorted(status.servers.items()):
        style = STATUS_STYLES[report.status]
        servers.add_row(
            name,
            f"[{style}]{report.status.value}[/{style}]",
            report.identity or "N/A",
            report.ipv4 or report.ipv6 or "",
        )
    console.print(servers)

    if status.dns:
        records = Table(title="DNS records", show_header=True, header_style="bold cyan")
        records.add_column("Name", style="cyan")
        records.add_column("Type", style="magenta")
        records.add_column("Value", style="green")
        for record in status.dns:
            records.add_row(record.name, record.type.value, record.value)
        console.print(records)

    for error in status.errors:
        console.print(f"[red]✗[/red] {error}")


def render_result(result: StageResult, console: Optional[Console] = None) -> None:
    """Print a panel summarizing a stage operation, then each failure."""
    console = console or Console()
    outcomes = result.outcomes
    succeeded = sum(1 for o in outcomes if o.status == ExecutionStatus.SUCCESS)
    skipped = sum(1 for o in outcomes if o.status == ExecutionStatus.SKIPPED)

    if result.is_success():
        header, border = "[green]✓ Done[/green]", "green"
    else:
        header, border = "[red]✗ Finished with errors[/red]", "red"

    console.print(Panel.fit(
        f"{header}\n\n"
        f"Stage: {result.stage}\n"
        f"Succeeded: {succeeded}\n"
        f"Failed: {len(result.failed)}\n"
        f"Skipped: {skipped}",
        title=f"{result.operation}",
        border_style=border,
    ))

    for outcome in result.failed:
        console.print(f"  [red]✗[/red] {outcome.resource_key}: {outcome.message}")
    if result.container_error is not None:
        console.print(f"  [red]✗[/red] containers: {result.container_error.message}")


class InteractiveConfirmation:
    """Shows the teardown plan and asks before a stage is destroyed."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def __call__(self, plan: StagePlan) -> bool:
        self.console.print(Panel.fit(
            f"[bold red]⚠ WARNING: This will destroy resources[/bold red]\n\n"
            f"Stage: {plan.stage}\n"
            f"{plan.summary()}",
            title="Destruction Plan",
            border_style="red",
        ))
        self.console.print(plan_table(plan))

        confirmed = click.confirm(
            "Are you sure you want to destroy these resources?",
            default=False,
        )
        if not confirmed:
            self.console.print("[yellow]Destruction cancelled[/yellow]")
        return confirmed
