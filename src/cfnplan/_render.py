from typing import Dict, List, Optional

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from cfnplan.graph import DependencyGraph
from cfnplan.planner import Plan, PlanAction
from cfnplan.schema import Template
from cfnplan.validation import ValidationReport

_ACTION_STYLES = {
    PlanAction.CREATE: "green",
    PlanAction.UPDATE: "yellow",
    PlanAction.REPLACE: "magenta",
    PlanAction.DELETE: "red",
}


def _table(title: Optional[str] = None) -> Table:
    return Table(
        box=box.SQUARE,
        show_lines=False,
        title=title,
        title_style="bold",
        title_justify="left",
    )


def render_report(console: Console, report: ValidationReport) -> None:
    if not report.findings:
        console.print("[green]No problems found.[/green]")
        return

    table = _table()
    table.add_column("Severity")
    table.add_column("Code")
    table.add_column("Location")
    table.add_column("Message")
    for finding in report.findings:
        colour = "red" if finding.severity == "error" else "yellow"
        table.add_row(
            f"[{colour}]{finding.severity}[/{colour}]",
            finding.code,
            escape(finding.location or ""),
            escape(finding.message),
        )
    console.print(table)
    console.print(
        f"{len(report.errors)} error(s), {len(report.warnings)} warning(s)"
    )


def render_plan(console: Console, plan: Plan) -> None:
    if plan.report.warnings:
        render_report(console, plan.report)

    if not plan.has_changes:
        console.print("[green]No changes.[/green]")
        return

    table = _table("Plan")
    table.add_column("#", justify="right")
    table.add_column("Action")
    table.add_column("Logical ID")
    table.add_column("Type")
    table.add_column("Wave", justify="right")
    table.add_column("Reason")
    for index, step in enumerate(plan.steps, start=1):
        style = _ACTION_STYLES[step.action]
        table.add_row(
            str(index),
            f"[{style}]{step.action.value}[/{style}]",
            step.logical_id,
            step.resource_type,
            "" if step.wave is None else str(step.wave),
            escape(step.reason),
        )
    console.print(table)
    summary = ", ".join(
        f"{count} to {action}" for action, count in plan.counts().items()
    )
    console.print(f"Plan: {summary}.")


def render_tree(console: Console, template: Template, graph: DependencyGraph) -> None:
    """Print each wave with the resources it contains and what they wait on."""
    root = Tree("[bold]Apply order[/bold]")
    for index, wave in enumerate(graph.waves()):
        branch = root.add(f"wave {index}")
        for name in wave:
            dependencies = graph.dependencies(name)
            label = f"{name} [dim]({template.resources[name].type})[/dim]"
            if dependencies:
                label += " <- " + ", ".join(dependencies)
            branch.add(label)
    console.print(root)


def render_events(
    console: Console, stack_name: str, events: List[Dict[str, str]]
) -> None:
    if not events:
        console.print(f"\nNo events found for stack {stack_name}.\n")
        return

    table = _table(f"Events for {stack_name}")
    table.add_column("Timestamp")
    table.add_column("Logical ID")
    table.add_column("Type")
    table.add_column("Status")
    table.add_column("Reason")
    for event in events:
        status = event["resource_status"]
        if status.endswith("FAILED"):
            status = f"[red]{status}[/red]"
        elif status.endswith("COMPLETE"):
            status = f"[green]{status}[/green]"
        table.add_row(
            event["timestamp"],
            event["logical_id"],
            event["resource_type"],
            status,
            escape(event["status_reason"]),
        )
    console.print(table)
