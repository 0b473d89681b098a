"""Extract ``refers-to`` edges from template values."""

import re
from enum import Enum
from typing import Any, Iterator, List, Optional, Tuple

from pydantic import BaseModel

from cfnplan.schema import Template

PSEUDO_PARAMETERS = frozenset(
    {
        "AWS::AccountId",
        "AWS::NoValue",
        "AWS::NotificationARNs",
        "AWS::Partition",
        "AWS::Region",
        "AWS::StackId",
        "AWS::StackName",
        "AWS::URLSuffix",
    }
)

_SUB_PLACEHOLDER = re.compile(r"\$\{([^}]*)\}")


class ReferenceKind(str, Enum):
    REF = "Ref"
    GET_ATT = "GetAtt"
    SUB = "Sub"
    DEPENDS_ON = "DependsOn"


class Reference(BaseModel, frozen=True):
    """
    One edge from a template element to a named parameter or resource.

    Attributes:
        section: template section of the source, e.g. "Resources" or "Conditions"
        source: logical name of the element holding the reference
        target: name being referred to
        kind: how the reference was written
        path: location of the reference inside the source element
        attribute: attribute name for GetAtt-style references
    """

    section: str
    source: str
    target: str
    kind: ReferenceKind
    path: str
    attribute: Optional[str] = None

    @property
    def requires_resource(self) -> bool:
        """Attribute lookups and explicit DependsOn only make sense for resources."""
        return (
            self.kind in (ReferenceKind.GET_ATT, ReferenceKind.DEPENDS_ON)
            or self.attribute is not None
        )

    @property
    def location(self) -> str:
        return f"{self.section}/{self.source}/{self.path}"


def iter_references(
    value: Any, source: str, path: str = "", section: str = "Resources"
) -> Iterator[Reference]:
    """Yield every reference found in ``value``, depth first in document order."""
    if isinstance(value, dict):
        if len(value) == 1:
            ((key, argument),) = value.items()
            if key == "Ref" and isinstance(argument, str):
                if argument not in PSEUDO_PARAMETERS:
                    yield Reference(
                        section=section,
                        source=source,
                        target=argument,
                        kind=ReferenceKind.REF,
                        path=path,
                    )
                return
            if key == "Fn::GetAtt":
                yield from _get_att_references(argument, source, path, section)
                return
            if key == "Fn::Sub":
                yield from _sub_references(argument, source, path, section)
                return
        for key, item in value.items():
            yield from iter_references(item, source, _join(path, key), section)
    elif isinstance(value, list):
        for index, item in enumerate(value):
            yield from iter_references(item, source, f"{path}[{index}]", section)


def template_references(template: Template) -> List[Reference]:
    """All references in resources, outputs, conditions and rules, in document order."""
    references: List[Reference] = []
    for name, resource in template.resources.items():
        for index, dependency in enumerate(resource.depends_on):
            references.append(
                Reference(
                    section="Resources",
                    source=name,
                    target=dependency,
                    kind=ReferenceKind.DEPENDS_ON,
                    path=f"DependsOn[{index}]",
                )
            )
        references.extend(iter_references(resource.properties, name, "Properties"))
    for name, output in template.outputs.items():
        references.extend(iter_references(output.value, name, "Value", "Outputs"))
        if output.export is not None:
            references.extend(
                iter_references(output.export, name, "Export", "Outputs")
            )
    for name, condition in template.conditions.items():
        references.extend(iter_references(condition, name, "", "Conditions"))
    for name, rule in template.rules.items():
        references.extend(iter_references(rule, name, "", "Rules"))
    return references


def split_get_att(argument: Any) -> Tuple[Optional[str], Any]:
    if isinstance(argument, str):
        target, _, attribute = argument.partition(".")
        return target, attribute or None
    if isinstance(argument, list) and argument and isinstance(argument[0], str):
        return argument[0], argument[1] if len(argument) > 1 else None
    return None, None


def _get_att_references(
    argument: Any, source: str, path: str, section: str
) -> Iterator[Reference]:
    target, attribute = split_get_att(argument)
    if target is not None:
        yield Reference(
            section=section,
            source=source,
            target=target,
            kind=ReferenceKind.GET_ATT,
            path=_join(path, "Fn::GetAtt"),
            attribute=attribute if isinstance(attribute, str) else None,
        )
    # the attribute name itself may be computed, e.g. with !Ref
    if not isinstance(attribute, str) and attribute is not None:
        yield from iter_references(
            attribute, source, _join(path, "Fn::GetAtt") + "[1]", section
        )


def _sub_references(
    argument: Any, source: str, path: str, section: str
) -> Iterator[Reference]:
    sub_path = _join(path, "Fn::Sub")
    variables: dict = {}
    if isinstance(argument, list) and argument:
        text = argument[0]
        if len(argument) > 1 and isinstance(argument[1], dict):
            variables = argument[1]
    else:
        text = argument

    if isinstance(text, str):
        for match in _SUB_PLACEHOLDER.finditer(text):
            placeholder = match.group(1).strip()
            # ${!Literal} renders as ${Literal}
            if not placeholder or placeholder.startswith("!"):
                continue
            target, _, attribute = placeholder.partition(".")
            if target in variables or target in PSEUDO_PARAMETERS:
                continue
            yield Reference(
                section=section,
                source=source,
                target=target,
                kind=ReferenceKind.SUB,
                path=sub_path,
                attribute=attribute or None,
            )

    for key, item in variables.items():
        yield from iter_references(item, source, f"{sub_path}[1].{key}", section)


def _join(path: str, key: str) -> str:
    return f"{path}.{key}" if path else key
