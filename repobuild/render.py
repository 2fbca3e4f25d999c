"""
Rendering functions for repobuild output.

This module handles the pretty-printing of run reports and plans.
Services return data, this module makes it human-readable.
"""

from typing import Iterable

from rich import box
from rich.console import Console
from rich.table import Table

from .domain.plan import BuildPlan, StageStatus
from .domain.pin import VersionPin
from .domain.report import RunReport

console = Console()

STATUS_STYLES = {
    StageStatus.SUCCEEDED: "green",
    StageStatus.FAILED: "bold red",
    StageStatus.SKIPPED: "yellow",
    StageStatus.RUNNING: "cyan",
    StageStatus.PENDING: "dim",
}


def _status_cell(status: StageStatus) -> str:
    style = STATUS_STYLES[status]
    return f"[{style}]{status.value}[/{style}]"


def render_report(report: RunReport) -> None:
    """
    Render a run report as one table with a row per lane and a column per stage.

    Failures are listed below the table with their annotations.
    """
    kinds = []
    for lane in report.lanes:
        for stage in lane.stages:
            if stage.kind not in kinds:
                kinds.append(stage.kind)
    kinds.sort(key=lambda k: k.index)

    table = Table(
        title=f"{report.plan.product} {report.plan.version}",
        box=box.ROUNDED,
        show_header=True,
        header_style="bold magenta",
    )
    table.add_column("Platform", style="cyan")
    for kind in kinds:
        table.add_column(kind.value.capitalize())

    for lane in report.lanes:
        cells = []
        for kind in kinds:
            stage = lane.stage(kind)
            cells.append(_status_cell(stage.status) if stage else "[dim]-[/dim]")
        table.add_row(lane.name, *cells)

    console.print(table)

    for stage in report.failed_stages:
        console.print(f"[red]✗[/red] {stage.platform.name} {stage.kind.value}: {stage.error.message if stage.error else ''}")
        for name in stage.failed_components:
            component = stage.component(name)
            console.print(f"    {name}: {component.error.message if component.error else 'failed'}")
    for error in report.plan.planning_errors:
        console.print(f"[yellow]![/yellow] {error.message}")
    if report.cancelled:
        console.print("[yellow]Run was cancelled[/yellow]")


def render_plan(plan: BuildPlan) -> None:
    """Render a compiled plan: stages, load order and skips per lane."""
    table = Table(
        title=f"Plan for {plan.product} {plan.version}",
        box=box.ROUNDED,
        show_header=True,
        header_style="bold magenta",
    )
    table.add_column("Platform", style="cyan")
    table.add_column("Stages")
    table.add_column("Load order", style="dim")
    table.add_column("Skipped tests", style="yellow")
    table.add_column("Excluded", style="yellow")

    for lane in plan.lanes:
        name = lane.name
        if plan.tentative == name:
            name += " (tentative)"
        table.add_row(
            name,
            " → ".join(s.kind.value for s in lane.stages),
            ", ".join(lane.load_order),
            ", ".join(lane.skip_list),
            ", ".join(lane.excluded),
        )
    console.print(table)

    for dependency in plan.lane_dependencies:
        console.print(
            f"[dim]{dependency.lane} {dependency.stage.value} waits for "
            f"{dependency.waits_on_lane} {dependency.waits_on_stage.value}[/dim]"
        )
    for error in plan.planning_errors:
        console.print(f"[yellow]![/yellow] {error.message}")


def render_pins(pins: Iterable[VersionPin], title: str = "Version pins") -> None:
    table = Table(title=title, box=box.ROUNDED, show_header=True, header_style="bold magenta")
    table.add_column("Tool", style="cyan")
    table.add_column("Version", style="green")
    table.add_column("Effective from", style="dim")
    table.add_column("#", justify="right", style="dim")
    for pin in pins:
        table.add_row(pin.tool, pin.version, pin.effective_from, str(pin.sequence))
    console.print(table)
