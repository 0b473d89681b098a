"""Read CloudFormation templates from YAML or JSON."""

import json
from logging import getLogger
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml
from pydantic import ValidationError
from yaml.constructor import ConstructorError

from cfnplan.errors import TemplateLoadError
from cfnplan.schema import Template

logger = getLogger(__name__)

# Short-form tags that expand to "Fn::<name>"; Ref and Condition keep their name.
_FUNCTION_TAGS = frozenset(
    {
        "And",
        "Base64",
        "Cidr",
        "Equals",
        "FindInMap",
        "GetAtt",
        "GetAZs",
        "If",
        "ImportValue",
        "Join",
        "Not",
        "Or",
        "Select",
        "Split",
        "Sub",
        "Transform",
    }
)
_PLAIN_TAGS = frozenset({"Ref", "Condition"})


class _TemplateLoader(yaml.SafeLoader):
    """SafeLoader that understands CloudFormation short-form tags."""

    def construct_mapping(self, node, deep=False):
        # CloudFormation rejects repeated keys; PyYAML would keep the last one
        if isinstance(node, yaml.MappingNode):
            seen = set()
            for key_node, _ in node.value:
                if not isinstance(key_node, yaml.ScalarNode):
                    continue
                key = self.construct_scalar(key_node)
                if key in seen:
                    raise ConstructorError(
                        "while constructing a mapping",
                        node.start_mark,
                        f"duplicate key '{key}'",
                        key_node.start_mark,
                    )
                seen.add(key)
        return super().construct_mapping(node, deep=deep)


def _construct_intrinsic(
    loader: _TemplateLoader, tag_suffix: str, node: yaml.Node
) -> Dict[str, Any]:
    if tag_suffix in _PLAIN_TAGS:
        key = tag_suffix
    elif tag_suffix in _FUNCTION_TAGS:
        key = f"Fn::{tag_suffix}"
    else:
        raise ConstructorError(
            None, None, f"unknown tag !{tag_suffix}", node.start_mark
        )

    value: Any
    if isinstance(node, yaml.ScalarNode):
        value = loader.construct_scalar(node)
    elif isinstance(node, yaml.SequenceNode):
        value = loader.construct_sequence(node, deep=True)
    else:
        value = loader.construct_mapping(node, deep=True)

    if tag_suffix == "GetAtt" and isinstance(value, str):
        value = value.split(".", 1)

    return {key: value}


def _unique_keys(pairs: List[Tuple[str, Any]]) -> Dict[str, Any]:
    document: Dict[str, Any] = {}
    for key, value in pairs:
        if key in document:
            raise ValueError(f"duplicate key '{key}'")
        document[key] = value
    return document


_TemplateLoader.add_multi_constructor("!", _construct_intrinsic)

# Dates such as AWSTemplateFormatVersion stay strings, as CloudFormation reads them.
_TemplateLoader.yaml_implicit_resolvers = {
    first: [
        (tag, regexp)
        for tag, regexp in resolvers
        if tag != "tag:yaml.org,2002:timestamp"
    ]
    for first, resolvers in yaml.SafeLoader.yaml_implicit_resolvers.items()
}


def parse_document(text: str, path: Optional[Path] = None) -> Dict[str, Any]:
    """Parse template text into plain Python data with intrinsics in long form."""
    if text.lstrip().startswith("{"):
        try:
            document = json.loads(text, object_pairs_hook=_unique_keys)
        except ValueError as e:
            raise TemplateLoadError(f"invalid JSON: {e}", path)
    else:
        try:
            document = yaml.load(text, Loader=_TemplateLoader)
        except yaml.YAMLError as e:
            raise TemplateLoadError(f"invalid YAML: {e}", path)

    if not isinstance(document, dict):
        raise TemplateLoadError("template must be a mapping at the top level", path)
    return document


def template_from_document(
    document: Dict[str, Any], path: Optional[Path] = None
) -> Template:
    try:
        return Template.model_validate(document)
    except ValidationError as e:
        problems = "; ".join(
            f"{'/'.join(str(part) for part in error['loc'])}: {error['msg']}"
            for error in e.errors()
        )
        raise TemplateLoadError(f"template does not match schema: {problems}", path)


def loads_template(text: str, path: Optional[Path] = None) -> Template:
    return template_from_document(parse_document(text, path), path)


def load_template(path: Union[str, Path]) -> Template:
    """Load a template from a YAML or JSON file."""
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise TemplateLoadError(f"cannot read template: {e}", path)

    template = loads_template(text, path)
    logger.debug(
        f"Loaded {path} with {len(template.parameters)} parameters"
        f" and {len(template.resources)} resources"
    )
    return template
