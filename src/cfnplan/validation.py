"""
Structural and semantic checks for CloudFormation templates.

Every check produces findings rather than raising, so one run reports every
problem in a template. Finding codes are stable and documented in the README.
"""

import ipaddress
import re
from logging import getLogger
from typing import Any, Dict, Iterator, List, Mapping, Optional, Set

from pydantic import BaseModel
from typing_extensions import Literal

from cfnplan.conditions import as_parameter_value, evaluate_conditions
from cfnplan.errors import CyclicDependencyError
from cfnplan.graph import DependencyGraph
from cfnplan.references import Reference, ReferenceKind, template_references
from cfnplan.schema import (
    SUPPORTED_FORMAT_VERSION,
    Template,
    TemplateParameter,
    TemplateResource,
)

logger = getLogger(__name__)

MAX_RESOURCES = 500
MAX_PARAMETERS = 200
MAX_OUTPUTS = 200
MAX_MAPPINGS = 200
MAX_LOGICAL_ID_LENGTH = 255

_LOGICAL_ID = re.compile(r"^[A-Za-z0-9]+$")
_RESOURCE_TYPE = re.compile(
    r"^(Custom::[A-Za-z0-9_@-]+|[A-Za-z0-9]+::[A-Za-z0-9]+::[A-Za-z0-9]+(::MODULE)?)$"
)

_BASIC_PARAMETER_TYPES = {"String", "Number", "List<Number>", "CommaDelimitedList"}
_AWS_PARAMETER_TYPES = {
    "AWS::EC2::AvailabilityZone::Name",
    "AWS::EC2::Image::Id",
    "AWS::EC2::Instance::Id",
    "AWS::EC2::KeyPair::KeyName",
    "AWS::EC2::SecurityGroup::GroupName",
    "AWS::EC2::SecurityGroup::Id",
    "AWS::EC2::Subnet::Id",
    "AWS::EC2::Volume::Id",
    "AWS::EC2::VPC::Id",
    "AWS::Route53::HostedZone::Id",
    "AWS::SSM::Parameter::Name",
}
_SSM_PARAMETER_TYPE = re.compile(r"^AWS::SSM::Parameter::Value<.+>$")

_CIDR_PROPERTIES = {
    "CidrBlock",
    "CidrIp",
    "CidrIpv6",
    "DestinationCidrBlock",
    "DestinationIpv6CidrBlock",
    "Ipv6CidrBlock",
}


class Finding(BaseModel, frozen=True):
    severity: Literal["error", "warning"]
    code: str
    message: str
    location: Optional[str] = None


class ValidationReport(BaseModel, frozen=True):
    findings: List[Finding] = []

    @property
    def errors(self) -> List[Finding]:
        return [finding for finding in self.findings if finding.severity == "error"]

    @property
    def warnings(self) -> List[Finding]:
        return [finding for finding in self.findings if finding.severity == "warning"]

    @property
    def ok(self) -> bool:
        return not self.errors

    def passed(self, strict: bool = False) -> bool:
        """True when there are no errors, and with ``strict`` no warnings either."""
        return not self.findings if strict else self.ok

    def codes(self) -> List[str]:
        return [finding.code for finding in self.findings]


def is_valid_parameter_type(parameter_type: str) -> bool:
    if parameter_type in _BASIC_PARAMETER_TYPES:
        return True
    if parameter_type.startswith("List<") and parameter_type.endswith(">"):
        return parameter_type[len("List<") : -1] in _AWS_PARAMETER_TYPES
    if parameter_type in _AWS_PARAMETER_TYPES:
        return True
    return bool(_SSM_PARAMETER_TYPE.match(parameter_type))


def check_parameter_value(parameter: TemplateParameter, value: Any) -> List[str]:
    """Return the constraint violations of ``value`` for ``parameter``."""
    text = as_parameter_value(value)
    items = [item.strip() for item in text.split(",")] if parameter.is_list else [text]
    numeric = parameter.type in ("Number", "List<Number>")
    problems: List[str] = []

    if parameter.allowed_values is not None:
        allowed = {as_parameter_value(option) for option in parameter.allowed_values}
        for item in items:
            if item not in allowed:
                problems.append(
                    f"value '{item}' is not one of {sorted(allowed)}"
                )

    if parameter.allowed_pattern is not None:
        try:
            pattern = re.compile(parameter.allowed_pattern)
        except re.error as e:
            problems.append(
                f"AllowedPattern '{parameter.allowed_pattern}' is invalid: {e}"
            )
        else:
            for item in items:
                if not pattern.fullmatch(item):
                    problems.append(
                        f"value '{item}' does not match pattern"
                        f" '{parameter.allowed_pattern}'"
                    )

    if parameter.min_length is not None and len(text) < parameter.min_length:
        problems.append(f"value is shorter than MinLength {parameter.min_length}")
    if parameter.max_length is not None and len(text) > parameter.max_length:
        problems.append(f"value is longer than MaxLength {parameter.max_length}")

    if numeric:
        for item in items:
            try:
                number = float(item)
            except ValueError:
                problems.append(f"value '{item}' is not a number")
                continue
            if parameter.min_value is not None and number < parameter.min_value:
                problems.append(
                    f"value {item} is below MinValue {parameter.min_value:g}"
                )
            if parameter.max_value is not None and number > parameter.max_value:
                problems.append(
                    f"value {item} is above MaxValue {parameter.max_value:g}"
                )

    if parameter.constraint_description and problems:
        problems.append(parameter.constraint_description)
    return problems


def validate_template(
    template: Template, parameter_values: Optional[Mapping[str, str]] = None
) -> ValidationReport:
    """
    Run every check against ``template``.

    Args:
        template: the template to check
        parameter_values: values that would be supplied at deploy time. When
            given, missing required values and unknown keys are reported and
            the supplied values are checked against parameter constraints.

    Returns:
        A report with findings in check order.
    """
    findings: List[Finding] = []
    references = template_references(template)

    findings.extend(_check_structure(template))
    findings.extend(_check_resource_types(template))
    findings.extend(_check_parameters(template, parameter_values))
    findings.extend(_check_references(template, references))
    findings.extend(_check_cycles(template))
    findings.extend(_check_conditions(template))
    findings.extend(_check_mappings(template))
    findings.extend(_check_cidrs(template))
    findings.extend(_check_unused_parameters(template, references))
    findings.extend(_check_redundant_depends_on(template, references))

    report = ValidationReport(findings=findings)
    logger.debug(
        f"Validation finished with {len(report.errors)} errors"
        f" and {len(report.warnings)} warnings"
    )
    return report


def _error(code: str, message: str, location: Optional[str] = None) -> Finding:
    return Finding(severity="error", code=code, message=message, location=location)


def _warning(code: str, message: str, location: Optional[str] = None) -> Finding:
    return Finding(severity="warning", code=code, message=message, location=location)


def _check_structure(template: Template) -> Iterator[Finding]:
    if (
        template.format_version is not None
        and template.format_version != SUPPORTED_FORMAT_VERSION
    ):
        yield _error(
            "E0001",
            f"AWSTemplateFormatVersion '{template.format_version}' is not supported,"
            f" expected '{SUPPORTED_FORMAT_VERSION}'",
            "AWSTemplateFormatVersion",
        )

    if not template.resources:
        yield _error(
            "E0002", "template must declare at least one resource", "Resources"
        )

    sections: Dict[str, Mapping[str, Any]] = {
        "Parameters": template.parameters,
        "Mappings": template.mappings,
        "Conditions": template.conditions,
        "Resources": template.resources,
        "Outputs": template.outputs,
    }
    for section, entries in sections.items():
        for name in entries:
            if not _LOGICAL_ID.match(name) or len(name) > MAX_LOGICAL_ID_LENGTH:
                yield _error(
                    "E0003",
                    f"logical id '{name}' must be alphanumeric and at most"
                    f" {MAX_LOGICAL_ID_LENGTH} characters",
                    f"{section}/{name}",
                )

    quotas = (
        ("Resources", template.resources, MAX_RESOURCES),
        ("Parameters", template.parameters, MAX_PARAMETERS),
        ("Outputs", template.outputs, MAX_OUTPUTS),
        ("Mappings", template.mappings, MAX_MAPPINGS),
    )
    for section, entries, limit in quotas:
        if len(entries) > limit:
            yield _error(
                "E0004",
                f"{len(entries)} {section.lower()} declared, the limit is {limit}",
                section,
            )

    for name in template.parameters:
        if name in template.resources:
            yield _error(
                "E0005",
                f"'{name}' is declared both as a parameter and as a resource",
                f"Resources/{name}",
            )


def _check_resource_types(template: Template) -> Iterator[Finding]:
    for name, resource in template.resources.items():
        if not _RESOURCE_TYPE.match(resource.type):
            yield _error(
                "E1001",
                f"resource type '{resource.type}' is malformed",
                f"Resources/{name}/Type",
            )


def _check_parameters(
    template: Template, parameter_values: Optional[Mapping[str, str]]
) -> Iterator[Finding]:
    for name, parameter in template.parameters.items():
        location = f"Parameters/{name}"
        if not is_valid_parameter_type(parameter.type):
            yield _error(
                "E2001",
                f"parameter type '{parameter.type}' is not supported",
                f"{location}/Type",
            )
        if parameter.default is not None:
            for problem in check_parameter_value(parameter, parameter.default):
                yield _error("E2002", f"default of {name}: {problem}", location)

    if parameter_values is None:
        return

    for name, value in parameter_values.items():
        if name not in template.parameters:
            yield _error(
                "E2004", f"value supplied for undeclared parameter '{name}'", None
            )
            continue
        for problem in check_parameter_value(template.parameters[name], value):
            yield _error("E2002", f"{name}: {problem}", f"Parameters/{name}")

    for name, parameter in template.parameters.items():
        if parameter.default is None and name not in parameter_values:
            yield _error(
                "E2003",
                f"parameter '{name}' has no default and no value was supplied",
                f"Parameters/{name}",
            )


def _check_references(
    template: Template, references: List[Reference]
) -> Iterator[Finding]:
    for reference in references:
        target = reference.target
        if reference.section in ("Conditions", "Rules"):
            element = "condition" if reference.section == "Conditions" else "rule"
            if target in template.parameters:
                continue
            if target in template.resources:
                yield _error(
                    "E3002",
                    f"{element} {reference.source} refers to resource '{target}';"
                    f" {element}s can only refer to parameters",
                    reference.location,
                )
            else:
                yield _error(
                    "E3001",
                    f"{element} {reference.source} refers to undeclared '{target}'",
                    reference.location,
                )
            continue

        if reference.requires_resource:
            if target in template.resources:
                continue
            if target in template.parameters:
                yield _error(
                    "E3002",
                    f"{reference.kind.value} in {reference.source} needs a resource,"
                    f" but '{target}' is a parameter",
                    reference.location,
                )
            else:
                yield _error(
                    "E3001",
                    f"{reference.source} refers to undeclared resource '{target}'",
                    reference.location,
                )
        elif target not in template.resources and target not in template.parameters:
            yield _error(
                "E3001",
                f"{reference.source} refers to undeclared name '{target}'",
                reference.location,
            )


def _check_cycles(template: Template) -> Iterator[Finding]:
    graph = DependencyGraph.from_template(template)
    for cycle in graph.find_cycles():
        yield _error(
            "E3003",
            "circular dependency: " + " -> ".join(cycle),
            f"Resources/{cycle[0]}",
        )


def _check_conditions(template: Template) -> Iterator[Finding]:
    declared = template.conditions

    for name, resource in template.resources.items():
        if resource.condition is not None and resource.condition not in declared:
            yield _error(
                "E3004",
                f"resource {name} uses undeclared condition '{resource.condition}'",
                f"Resources/{name}/Condition",
            )
        for used in _iter_if_conditions(resource.properties):
            if used not in declared:
                yield _error(
                    "E3004",
                    f"Fn::If in {name} uses undeclared condition '{used}'",
                    f"Resources/{name}/Properties",
                )

    for name, output in template.outputs.items():
        if output.condition is not None and output.condition not in declared:
            yield _error(
                "E3004",
                f"output {name} uses undeclared condition '{output.condition}'",
                f"Outputs/{name}/Condition",
            )
        for used in _iter_if_conditions(output.value):
            if used not in declared:
                yield _error(
                    "E3004",
                    f"Fn::If in output {name} uses undeclared condition '{used}'",
                    f"Outputs/{name}/Value",
                )

    for name, expression in declared.items():
        for used in _iter_condition_refs(expression):
            if used not in declared:
                yield _error(
                    "E3004",
                    f"condition {name} uses undeclared condition '{used}'",
                    f"Conditions/{name}",
                )

    try:
        evaluate_conditions(template, {})
    except CyclicDependencyError as e:
        for cycle in e.cycles:
            yield _error(
                "E3003",
                "circular condition: " + " -> ".join(cycle),
                f"Conditions/{cycle[0]}",
            )


def _check_mappings(template: Template) -> Iterator[Finding]:
    for name, resource in template.resources.items():
        for mapping in _iter_find_in_map(resource.properties):
            if mapping not in template.mappings:
                yield _error(
                    "E3005",
                    f"Fn::FindInMap in {name} uses undeclared mapping '{mapping}'",
                    f"Resources/{name}/Properties",
                )
    for name, output in template.outputs.items():
        for mapping in _iter_find_in_map(output.value):
            if mapping not in template.mappings:
                yield _error(
                    "E3005",
                    f"Fn::FindInMap in output {name} uses undeclared mapping"
                    f" '{mapping}'",
                    f"Outputs/{name}/Value",
                )


def _check_cidrs(template: Template) -> Iterator[Finding]:
    for name, resource in template.resources.items():
        properties = _iter_literal_properties(resource.properties, _CIDR_PROPERTIES)
        for key, value in properties:
            try:
                ipaddress.ip_network(value, strict=True)
            except ValueError as e:
                yield _error(
                    "E4001",
                    f"{key} '{value}' of {name} is not a valid CIDR block: {e}",
                    f"Resources/{name}/Properties",
                )

    for name, resource in template.resources.items():
        if resource.type != "AWS::EC2::Subnet":
            continue
        vpc = _referenced_resource(template, resource.properties.get("VpcId"))
        if vpc is None or vpc.type != "AWS::EC2::VPC":
            continue
        subnet_cidr = _network(resource.properties.get("CidrBlock"))
        vpc_cidr = _network(vpc.properties.get("CidrBlock"))
        if subnet_cidr is None or vpc_cidr is None:
            continue
        if subnet_cidr.version != vpc_cidr.version or not subnet_cidr.subnet_of(
            vpc_cidr  # type: ignore[arg-type]
        ):
            yield _error(
                "E4002",
                f"subnet {name} CIDR {subnet_cidr} is outside its VPC CIDR {vpc_cidr}",
                f"Resources/{name}/Properties/CidrBlock",
            )


def _check_unused_parameters(
    template: Template, references: List[Reference]
) -> Iterator[Finding]:
    used = {reference.target for reference in references}
    for name in template.parameters:
        if name not in used:
            yield _warning(
                "W2001", f"parameter '{name}' is never referenced", f"Parameters/{name}"
            )


def _check_redundant_depends_on(
    template: Template, references: List[Reference]
) -> Iterator[Finding]:
    implied: Dict[str, Set[str]] = {}
    for reference in references:
        if (
            reference.section == "Resources"
            and reference.kind != ReferenceKind.DEPENDS_ON
        ):
            implied.setdefault(reference.source, set()).add(reference.target)

    for name, resource in template.resources.items():
        for dependency in resource.depends_on:
            if dependency in implied.get(name, set()):
                yield _warning(
                    "W3001",
                    f"DependsOn {dependency} in {name} is already implied"
                    " by a reference",
                    f"Resources/{name}/DependsOn",
                )


def _iter_if_conditions(value: Any) -> Iterator[str]:
    if isinstance(value, dict):
        if len(value) == 1 and "Fn::If" in value:
            arguments = value["Fn::If"]
            if _names_first_argument(arguments):
                yield arguments[0]
        for item in value.values():
            yield from _iter_if_conditions(item)
    elif isinstance(value, list):
        for item in value:
            yield from _iter_if_conditions(item)


def _iter_condition_refs(value: Any) -> Iterator[str]:
    if isinstance(value, dict):
        if len(value) == 1 and isinstance(value.get("Condition"), str):
            yield value["Condition"]
            return
        for item in value.values():
            yield from _iter_condition_refs(item)
    elif isinstance(value, list):
        for item in value:
            yield from _iter_condition_refs(item)


def _iter_find_in_map(value: Any) -> Iterator[str]:
    if isinstance(value, dict):
        if len(value) == 1 and "Fn::FindInMap" in value:
            arguments = value["Fn::FindInMap"]
            if _names_first_argument(arguments):
                yield arguments[0]
        for item in value.values():
            yield from _iter_find_in_map(item)
    elif isinstance(value, list):
        for item in value:
            yield from _iter_find_in_map(item)


def _iter_literal_properties(value: Any, keys: Set[str]) -> Iterator[tuple]:
    if isinstance(value, dict):
        for key, item in value.items():
            if key in keys and isinstance(item, str):
                yield key, item
            else:
                yield from _iter_literal_properties(item, keys)
    elif isinstance(value, list):
        for item in value:
            yield from _iter_literal_properties(item, keys)


def _names_first_argument(arguments: Any) -> bool:
    if not isinstance(arguments, list) or not arguments:
        return False
    return isinstance(arguments[0], str)


def _referenced_resource(template: Template, value: Any) -> Optional[TemplateResource]:
    if (
        isinstance(value, dict)
        and len(value) == 1
        and isinstance(value.get("Ref"), str)
    ):
        return template.resources.get(value["Ref"])
    return None


def _network(value: Any) -> Optional[ipaddress.IPv4Network | ipaddress.IPv6Network]:
    if not isinstance(value, str):
        return None
    try:
        return ipaddress.ip_network(value, strict=True)
    except ValueError:
        return None
