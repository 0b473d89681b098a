import json
import os
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, Optional, Tuple

import click
from rich.console import Console
from rich.prompt import Confirm

from cfnplan._logging import configure_logging
from cfnplan._render import render_events, render_plan, render_report, render_tree
from cfnplan._unpack_tags import unpack_parameters, unpack_tags
from cfnplan.errors import (
    CyclicDependencyError,
    PlanningError,
    StackOperationError,
    TemplateLoadError,
)
from cfnplan.graph import DependencyGraph
from cfnplan.loader import load_template
from cfnplan.planner import build_plan
from cfnplan.schema import PlannerConfig, Template
from cfnplan.stacks import StackClient
from cfnplan.validation import validate_template


class StackCommandError(click.ClickException):
    exit_code = 3


template_argument = click.argument(
    "template_path",
    metavar="TEMPLATE",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
parameter_option = click.option(
    "-p",
    "--parameter",
    "parameters",
    multiple=True,
    metavar="KEY=VALUE",
    help="Parameter value to plan or deploy with. Repeatable.",
)
region_option = click.option(
    "--region",
    default=None,
    help="AWS region (defaults to CFNPLAN_REGION or AWS_REGION).",
)
strict_option = click.option(
    "--strict/--no-strict", default=None, help="Treat warnings as failures."
)


def format_option(*choices: str):
    return click.option(
        "--format",
        "output_format",
        type=click.Choice(choices),
        default=choices[0],
        show_default=True,
    )


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(package_name="cfnplan", message="cfnplan %(version)s")
@click.option(
    "--verbose", is_flag=True, default=False, help="Increase logging verbosity."
)
def main(verbose: bool) -> None:
    """Validate CloudFormation templates and plan the order they apply in."""
    configure_logging(verbose=verbose)


@main.command()
@template_argument
@parameter_option
@strict_option
@click.option(
    "--remote", is_flag=True, default=False, help="Also validate with CloudFormation."
)
@region_option
@format_option("table", "json")
def validate(
    template_path: Path,
    parameters: Tuple[str, ...],
    strict: Optional[bool],
    remote: bool,
    region: Optional[str],
    output_format: str,
) -> None:
    """Check references, dependency cycles, parameters and CIDR blocks."""
    config = _config(region=region, strict=strict)
    template = _load(template_path)
    values = _parameters(parameters)
    report = validate_template(template, values if parameters else None)
    passed = report.passed(config.strict)

    remote_result = None
    if remote and report.ok:
        with _stack_errors():
            client = _stack_client(config)
            remote_result = client.validate_remote(
                template_path.read_text(encoding="utf-8")
            )

    if output_format == "json":
        payload = report.model_dump(mode="json")
        payload["ok"] = passed
        if remote_result is not None:
            payload["remote"] = remote_result
        click.echo(json.dumps(payload, indent=2))
    else:
        console = Console()
        render_report(console, report)
        if remote_result is not None:
            console.print("[green]CloudFormation accepted the template.[/green]")
            if remote_result["capabilities"]:
                console.print(
                    "Required capabilities: " + ", ".join(remote_result["capabilities"])
                )

    if not passed:
        sys.exit(1)


@main.command()
@template_argument
@click.option(
    "--previous",
    "previous_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Template currently deployed; only differences are planned.",
)
@click.option(
    "--stack", "stack_name", default=None, help="Plan against a deployed stack."
)
@parameter_option
@strict_option
@region_option
@format_option("table", "json")
def plan(
    template_path: Path,
    previous_path: Optional[Path],
    stack_name: Optional[str],
    parameters: Tuple[str, ...],
    strict: Optional[bool],
    region: Optional[str],
    output_format: str,
) -> None:
    """Compute the order resources would be created, updated or deleted in."""
    if previous_path is not None and stack_name is not None:
        raise click.UsageError("--previous and --stack cannot be used together")

    config = _config(region=region, strict=strict)
    template = _load(template_path)
    values = _parameters(parameters)

    previous: Optional[Template] = None
    if previous_path is not None:
        previous = _load(previous_path)
    elif stack_name is not None:
        with _stack_errors():
            previous = _deployed_template(_stack_client(config), stack_name)

    console = Console()
    try:
        result = build_plan(template, previous, values or None, strict=config.strict)
    except PlanningError as e:
        if output_format == "json":
            payload = e.report.model_dump(mode="json") if e.report else {}
            payload["error"] = str(e)
            click.echo(json.dumps(payload, indent=2))
        else:
            if e.report is not None:
                render_report(console, e.report)
            console.print(f"[red]Cannot plan: {e}[/red]")
        sys.exit(1)

    if output_format == "json":
        payload = result.model_dump(mode="json")
        payload["rollback_order"] = result.rollback_order()
        click.echo(json.dumps(payload, indent=2))
    else:
        render_plan(console, result)


@main.command()
@template_argument
@format_option("tree", "dot", "json")
def graph(template_path: Path, output_format: str) -> None:
    """Show the resource dependency graph."""
    template = _load(template_path)
    dependency_graph = DependencyGraph.from_template(template)

    if output_format == "dot":
        click.echo(dependency_graph.to_dot(template_path.stem), nl=False)
        return

    try:
        order = dependency_graph.topological_order()
        waves = dependency_graph.waves()
    except CyclicDependencyError as e:
        raise click.ClickException(str(e))

    if output_format == "json":
        payload = {
            "nodes": dependency_graph.nodes,
            "edges": [list(edge) for edge in dependency_graph.edges()],
            "order": order,
            "waves": waves,
        }
        click.echo(json.dumps(payload, indent=2))
    else:
        render_tree(Console(), template, dependency_graph)


@main.command()
@template_argument
@click.option("--stack-name", default=None, help="Defaults to CFNPLAN_STACK_NAME.")
@parameter_option
@click.option(
    "--tags", "tags_str", default=None, help="Stack tags as 'key1=value1;key2=value2'."
)
@click.option(
    "--capability",
    "capabilities",
    multiple=True,
    help="Capability to acknowledge, e.g. CAPABILITY_IAM. Detected when omitted.",
)
@click.option("--yes", "-y", is_flag=True, default=False, help="Do not ask to confirm.")
@click.option("--wait/--no-wait", default=True, help="Wait for the stack to settle.")
@strict_option
@region_option
def deploy(
    template_path: Path,
    stack_name: Optional[str],
    parameters: Tuple[str, ...],
    tags_str: Optional[str],
    capabilities: Tuple[str, ...],
    yes: bool,
    wait: bool,
    strict: Optional[bool],
    region: Optional[str],
) -> None:
    """Plan, then create or update the stack through CloudFormation."""
    config = _config(region=region, strict=strict, stack_name=stack_name)
    if config.stack_name is None:
        raise click.UsageError("a stack name is required (--stack-name)")
    try:
        tags = unpack_tags(tags_str)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--tags")

    template = _load(template_path)
    values = _parameters(parameters)
    console = Console()

    with _stack_errors():
        client = _stack_client(config)
        previous = _deployed_template(client, config.stack_name)

        try:
            result = build_plan(
                template, previous, values or None, strict=config.strict
            )
        except PlanningError as e:
            if e.report is not None:
                render_report(console, e.report)
            console.print(f"[red]Cannot deploy: {e}[/red]")
            sys.exit(1)

        render_plan(console, result)

        if not yes and _is_interactive_shell():
            if not Confirm.ask(f"Deploy stack {config.stack_name}?"):
                console.print("Cancelled.")
                return

        operation = client.deploy(
            config.stack_name,
            template_path.read_text(encoding="utf-8"),
            parameters=values,
            tags=tags,
            capabilities=capabilities or None,
        )
        if operation == "none":
            console.print(f"Stack {config.stack_name} is already up to date.")
            return
        if not wait:
            console.print(f"Started {operation} of stack {config.stack_name}.")
            return

        status = client.wait(config.stack_name)
        console.print(f"[green]Stack {config.stack_name}: {status}[/green]")


@main.command()
@click.argument("stack_name")
@click.option("--limit", type=click.IntRange(min=1), default=30, show_default=True)
@region_option
def events(stack_name: str, limit: int, region: Optional[str]) -> None:
    """Show the most recent events of a stack."""
    config = _config(region=region)
    with _stack_errors():
        recent = _stack_client(config).events(stack_name, limit=limit)
    render_events(Console(), stack_name, recent)


def _config(**overrides: Optional[object]) -> PlannerConfig:
    try:
        return PlannerConfig.from_settings(
            **{key: value for key, value in overrides.items() if value is not None}
        )
    except ValueError as e:
        raise click.UsageError(str(e))


def _stack_client(config: PlannerConfig) -> StackClient:
    try:
        return StackClient(config)
    except ValueError as e:
        raise click.UsageError(str(e))


def _load(path: Path) -> Template:
    try:
        return load_template(path)
    except TemplateLoadError as e:
        raise click.ClickException(str(e))


def _deployed_template(client: StackClient, stack_name: str) -> Optional[Template]:
    try:
        return client.deployed_template(stack_name)
    except TemplateLoadError as e:
        raise click.ClickException(
            f"cannot read the deployed template of stack {stack_name}: {e}"
        )


def _parameters(pairs: Tuple[str, ...]) -> Dict[str, str]:
    try:
        return unpack_parameters(pairs)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--parameter")


@contextmanager
def _stack_errors() -> Iterator[None]:
    try:
        yield
    except StackOperationError as e:
        raise StackCommandError(str(e))


def _is_interactive_shell() -> bool:
    # only prompt in an interactive shell
    is_interactive_shell = sys.stdin.isatty()
    is_ci = "CI" in os.environ
    is_pytest = "PYTEST_CURRENT_TEST" in os.environ
    return is_interactive_shell and not is_ci and not is_pytest
