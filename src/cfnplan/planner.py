"""
Compute apply plans for templates.

A plan lists the resource operations the provisioning engine would perform,
in an order where every resource is handled after the resources it depends
on. When a previous template is given (a file, or the template of a deployed
stack), the plan only contains the differences.
"""

from enum import Enum
from logging import getLogger
from typing import Dict, List, Mapping, Optional, Set, Tuple

from pydantic import BaseModel

from cfnplan.conditions import (
    active_resources,
    evaluate_conditions,
    resolve_parameters,
)
from cfnplan.errors import CyclicDependencyError, PlanningError
from cfnplan.graph import DependencyGraph
from cfnplan.schema import Template, TemplateResource
from cfnplan.validation import ValidationReport, validate_template

logger = getLogger(__name__)


class PlanAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"


class PlanStep(BaseModel, frozen=True):
    action: PlanAction
    logical_id: str
    resource_type: str
    wave: Optional[int] = None
    depends_on: Tuple[str, ...] = ()
    reason: str = ""


class Plan(BaseModel, frozen=True):
    """
    An ordered list of resource operations.

    Attributes:
        steps: creates, updates and replacements in dependency order,
            followed by deletes in reverse dependency order
        waves: groups of resources of the new template that could be
            provisioned in parallel
        report: validation report of the planned template
    """

    steps: Tuple[PlanStep, ...]
    waves: Tuple[Tuple[str, ...], ...]
    report: ValidationReport

    @property
    def has_changes(self) -> bool:
        return bool(self.steps)

    def counts(self) -> Dict[str, int]:
        counts = {action.value: 0 for action in PlanAction}
        for step in self.steps:
            counts[step.action.value] += 1
        return counts

    def rollback_order(self) -> List[str]:
        """Resources the engine would remove if the apply failed at the end."""
        created = [
            step.logical_id
            for step in self.steps
            if step.action in (PlanAction.CREATE, PlanAction.REPLACE)
        ]
        return list(reversed(created))


def build_plan(
    template: Template,
    previous: Optional[Template] = None,
    parameter_values: Optional[Mapping[str, str]] = None,
    strict: bool = False,
) -> Plan:
    """
    Build the plan that takes ``previous`` (or nothing) to ``template``.

    Raises:
        PlanningError: if the template does not pass validation.
    """
    report = validate_template(template, parameter_values)
    if not report.passed(strict):
        raise PlanningError(
            f"template has {len(report.errors)} errors"
            f" and {len(report.warnings)} warnings",
            report,
        )

    active, graph = _active_graph(template, parameter_values)
    order = graph.topological_order()
    waves = graph.waves()
    wave_of = {name: index for index, wave in enumerate(waves) for name in wave}

    def step(action: PlanAction, name: str, reason: str) -> PlanStep:
        return PlanStep(
            action=action,
            logical_id=name,
            resource_type=template.resources[name].type,
            wave=wave_of[name],
            depends_on=tuple(graph.dependencies(name)),
            reason=reason,
        )

    steps: List[PlanStep] = []
    if previous is None:
        steps = [step(PlanAction.CREATE, name, "new resource") for name in order]
    else:
        # Keep only the previous template's own defaults; values supplied for
        # the new template may name parameters it no longer declares.
        previous_values = {
            key: value
            for key, value in (parameter_values or {}).items()
            if key in previous.parameters
        }
        try:
            previous_active, previous_graph = _active_graph(previous, previous_values)
            previous_order = previous_graph.topological_order()
        except CyclicDependencyError as e:
            raise PlanningError(f"previous template is not deployable: {e}")

        replaced: Set[str] = set()
        for name in order:
            new = template.resources[name]
            old = previous.resources.get(name) if name in previous_active else None
            if old is None:
                if name in previous.resources:
                    reason = "condition now true"
                else:
                    reason = "new resource"
                steps.append(step(PlanAction.CREATE, name, reason))
            elif old.type != new.type:
                replaced.add(name)
                steps.append(
                    step(
                        PlanAction.REPLACE,
                        name,
                        f"type changed from {old.type} to {new.type}",
                    )
                )
            else:
                changed = _changed_fields(old, new)
                replaced_dependencies = [
                    dependency
                    for dependency in graph.dependencies(name)
                    if dependency in replaced
                ]
                if changed:
                    steps.append(
                        step(PlanAction.UPDATE, name, "changed: " + ", ".join(changed))
                    )
                elif replaced_dependencies:
                    steps.append(
                        step(
                            PlanAction.UPDATE,
                            name,
                            "dependency replaced: " + ", ".join(replaced_dependencies),
                        )
                    )

        active_set = set(active)
        for name in reversed(previous_order):
            if name in active_set:
                continue
            steps.append(
                PlanStep(
                    action=PlanAction.DELETE,
                    logical_id=name,
                    resource_type=previous.resources[name].type,
                    depends_on=tuple(previous_graph.dependencies(name)),
                    reason=(
                        "condition now false"
                        if name in template.resources
                        else "removed from template"
                    ),
                )
            )

    plan = Plan(
        steps=tuple(steps),
        waves=tuple(tuple(wave) for wave in waves),
        report=report,
    )
    logger.debug(f"Planned {plan.counts()}")
    return plan


def _active_graph(
    template: Template, parameter_values: Optional[Mapping[str, str]]
) -> Tuple[List[str], DependencyGraph]:
    values = resolve_parameters(template, parameter_values)
    conditions = evaluate_conditions(template, values)
    active = active_resources(template, conditions)
    return active, DependencyGraph.from_template(template, active)


def _changed_fields(old: TemplateResource, new: TemplateResource) -> List[str]:
    changed = []
    keys = list(dict.fromkeys([*old.properties, *new.properties]))
    for key in keys:
        if old.properties.get(key) != new.properties.get(key):
            changed.append(f"Properties.{key}")
    if set(old.depends_on) != set(new.depends_on):
        changed.append("DependsOn")
    for label, attribute in (
        ("DeletionPolicy", "deletion_policy"),
        ("UpdateReplacePolicy", "update_replace_policy"),
        ("CreationPolicy", "creation_policy"),
        ("UpdatePolicy", "update_policy"),
        ("Metadata", "metadata"),
    ):
        if getattr(old, attribute) != getattr(new, attribute):
            changed.append(label)
    return changed
