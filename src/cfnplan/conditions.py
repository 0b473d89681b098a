"""
Parameter resolution and evaluation of template conditions.

Conditions are evaluated with three-valued logic: an expression whose inputs
are not known at planning time (a parameter without a value, an intrinsic the
planner does not evaluate) is undecidable. Undecidable conditions are treated
as true, so resources guarded by them stay in the plan.
"""

from logging import getLogger
from typing import Any, Dict, List, Mapping, Optional

from cfnplan.errors import CyclicDependencyError
from cfnplan.schema import Template

logger = getLogger(__name__)


def as_parameter_value(value: Any) -> str:
    """Render a literal the way CloudFormation passes it to a parameter."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ",".join(as_parameter_value(item) for item in value)
    return str(value)


def resolve_parameters(
    template: Template, overrides: Optional[Mapping[str, str]] = None
) -> Dict[str, Optional[str]]:
    """Merge supplied values over defaults; parameters with neither map to None."""
    overrides = overrides or {}
    values: Dict[str, Optional[str]] = {}
    for name, parameter in template.parameters.items():
        if name in overrides:
            values[name] = as_parameter_value(overrides[name])
        elif parameter.default is not None:
            values[name] = as_parameter_value(parameter.default)
        else:
            values[name] = None
    return values


def evaluate_conditions(
    template: Template,
    values: Mapping[str, Optional[str]],
    pseudo_values: Optional[Mapping[str, str]] = None,
) -> Dict[str, bool]:
    """Evaluate every declared condition; undecidable conditions become True."""
    evaluator = _ConditionEvaluator(template, values, pseudo_values or {})
    results = {}
    for name in template.conditions:
        outcome = evaluator.condition(name)
        if outcome is None:
            logger.debug(f"Condition {name} cannot be decided, assuming true")
        results[name] = True if outcome is None else outcome
    return results


def active_resources(template: Template, conditions: Mapping[str, bool]) -> List[str]:
    return [
        name
        for name, resource in template.resources.items()
        if resource.condition is None or conditions.get(resource.condition, True)
    ]


class _ConditionEvaluator:
    def __init__(
        self,
        template: Template,
        values: Mapping[str, Optional[str]],
        pseudo_values: Mapping[str, str],
    ):
        self.template = template
        self.values = values
        self.pseudo_values = pseudo_values
        self._results: Dict[str, Optional[bool]] = {}
        self._visiting: List[str] = []

    def condition(self, name: str) -> Optional[bool]:
        if name in self._results:
            return self._results[name]
        if name in self._visiting:
            cycle = self._visiting[self._visiting.index(name) :] + [name]
            raise CyclicDependencyError([cycle])
        if name not in self.template.conditions:
            return None

        self._visiting.append(name)
        try:
            outcome = self.expression(self.template.conditions[name])
        finally:
            self._visiting.pop()
        self._results[name] = outcome
        return outcome

    def expression(self, node: Any) -> Optional[bool]:
        if isinstance(node, bool):
            return node
        if not isinstance(node, dict) or len(node) != 1:
            return None

        ((function, arguments),) = node.items()
        if function == "Condition" and isinstance(arguments, str):
            return self.condition(arguments)
        if function == "Fn::Equals" and isinstance(arguments, list):
            if len(arguments) != 2:
                return None
            left, right = (self.scalar(argument) for argument in arguments)
            if left is None or right is None:
                return None
            return left == right
        if function == "Fn::Not" and isinstance(arguments, list) and arguments:
            inner = self.expression(arguments[0])
            return None if inner is None else not inner
        if function == "Fn::And" and isinstance(arguments, list):
            outcomes = [self.expression(argument) for argument in arguments]
            if False in outcomes:
                return False
            return None if None in outcomes else True
        if function == "Fn::Or" and isinstance(arguments, list):
            outcomes = [self.expression(argument) for argument in arguments]
            if True in outcomes:
                return True
            return None if None in outcomes else False
        return None

    def scalar(self, node: Any) -> Optional[str]:
        if isinstance(node, dict):
            if len(node) == 1 and isinstance(node.get("Ref"), str):
                name = node["Ref"]
                if name in self.values:
                    return self.values[name]
                return self.pseudo_values.get(name)
            return None
        if isinstance(node, list):
            return None
        return as_parameter_value(node)
