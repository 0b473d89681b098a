"""
Schema definitions for CloudFormation templates and planner configuration.

This module provides the typed template model consumed by the planner and the
configuration classes used when talking to the CloudFormation API.
"""

import os
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ._unpack_tags import unpack_tags

env_prefix = "CFNPLAN_"

SUPPORTED_FORMAT_VERSION = "2010-09-09"


class TemplateParameter(
    BaseModel, frozen=True, extra="forbid", populate_by_name=True
):
    """A declared input of the template with its type and constraints."""

    type: str = Field(alias="Type")
    default: Any = Field(default=None, alias="Default")
    allowed_values: Optional[Tuple[Any, ...]] = Field(
        default=None, alias="AllowedValues"
    )
    allowed_pattern: Optional[str] = Field(default=None, alias="AllowedPattern")
    min_length: Optional[int] = Field(default=None, alias="MinLength")
    max_length: Optional[int] = Field(default=None, alias="MaxLength")
    min_value: Optional[float] = Field(default=None, alias="MinValue")
    max_value: Optional[float] = Field(default=None, alias="MaxValue")
    description: Optional[str] = Field(default=None, alias="Description")
    no_echo: Any = Field(default=False, alias="NoEcho")
    constraint_description: Optional[str] = Field(
        default=None, alias="ConstraintDescription"
    )

    @property
    def is_list(self) -> bool:
        return self.type == "CommaDelimitedList" or self.type.startswith("List<")


class TemplateResource(
    BaseModel, frozen=True, extra="forbid", populate_by_name=True
):
    """A single declared infrastructure object."""

    type: str = Field(alias="Type")
    properties: Dict[str, Any] = Field(default_factory=dict, alias="Properties")
    depends_on: Tuple[str, ...] = Field(default=(), alias="DependsOn")
    condition: Optional[str] = Field(default=None, alias="Condition")
    deletion_policy: Optional[str] = Field(default=None, alias="DeletionPolicy")
    update_replace_policy: Optional[str] = Field(
        default=None, alias="UpdateReplacePolicy"
    )
    creation_policy: Optional[Dict[str, Any]] = Field(
        default=None, alias="CreationPolicy"
    )
    update_policy: Optional[Dict[str, Any]] = Field(default=None, alias="UpdatePolicy")
    metadata: Optional[Dict[str, Any]] = Field(default=None, alias="Metadata")
    version: Optional[str] = Field(default=None, alias="Version")

    @field_validator("depends_on", mode="before")
    @classmethod
    def _normalise_depends_on(cls, value: Any) -> Any:
        if isinstance(value, str):
            return (value,)
        return value

    @field_validator("properties", mode="before")
    @classmethod
    def _empty_properties(cls, value: Any) -> Any:
        # "Properties:" with nothing under it loads as None
        return {} if value is None else value


class TemplateOutput(BaseModel, frozen=True, extra="forbid", populate_by_name=True):
    value: Any = Field(alias="Value")
    description: Optional[str] = Field(default=None, alias="Description")
    export: Optional[Dict[str, Any]] = Field(default=None, alias="Export")
    condition: Optional[str] = Field(default=None, alias="Condition")


class Template(BaseModel, frozen=True, extra="forbid", populate_by_name=True):
    """
    A CloudFormation template.

    Attributes:
        format_version: value of AWSTemplateFormatVersion, if present
        description: free-form description of the template
        parameters: inputs, keyed by logical name
        mappings: static lookup tables used by Fn::FindInMap
        conditions: named boolean expressions over parameters
        resources: declared resources, keyed by logical id, in document order
        outputs: values exported from the stack
        metadata: template-level metadata
        transform: macros to apply, kept as declared
        rules: parameter rules, kept as declared
    """

    format_version: Optional[str] = Field(
        default=None, alias="AWSTemplateFormatVersion"
    )
    description: Optional[str] = Field(default=None, alias="Description")
    metadata: Dict[str, Any] = Field(default_factory=dict, alias="Metadata")
    transform: Any = Field(default=None, alias="Transform")
    parameters: Dict[str, TemplateParameter] = Field(
        default_factory=dict, alias="Parameters"
    )
    rules: Dict[str, Any] = Field(default_factory=dict, alias="Rules")
    mappings: Dict[str, Any] = Field(default_factory=dict, alias="Mappings")
    conditions: Dict[str, Any] = Field(default_factory=dict, alias="Conditions")
    resources: Dict[str, TemplateResource] = Field(
        default_factory=dict, alias="Resources"
    )
    outputs: Dict[str, TemplateOutput] = Field(default_factory=dict, alias="Outputs")

    @field_validator("format_version", mode="before")
    @classmethod
    def _format_version_text(cls, value: Any) -> Any:
        if value is not None and not isinstance(value, str):
            return str(value)
        return value

    @field_validator(
        "metadata",
        "parameters",
        "rules",
        "mappings",
        "conditions",
        "resources",
        "outputs",
        mode="before",
    )
    @classmethod
    def _empty_section(cls, value: Any) -> Any:
        return {} if value is None else value


class _PlannerSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", extra="ignore", env_prefix=env_prefix
    )
    region: Optional[str] = None
    stack_name: Optional[str] = None
    strict: Optional[bool] = None
    extra_tags_str: Optional[str] = None  # in the format "key1=value1;key2=value2"
    wait_timeout_seconds: Optional[int] = None
    poll_interval_seconds: Optional[int] = None


class PlannerConfig(BaseModel, frozen=True):
    """
    Configuration for planning and deploying templates.

    Attributes:
        region: AWS region (optional, only needed for operations that call AWS)
        stack_name: default stack name for deploy / plan-against-stack
        strict: treat warnings as failures
        extra_tags: tuple of 2-tuples of stack tags added on every deploy
        wait_timeout_seconds: how long to wait for a stack operation to finish
        poll_interval_seconds: delay between stack status polls
    """

    region: Optional[str]
    stack_name: Optional[str]
    strict: bool
    extra_tags: Tuple[Tuple[str, str], ...]
    wait_timeout_seconds: int
    poll_interval_seconds: int

    @classmethod
    def from_settings(cls, **kwargs):
        """Create an instance from environment settings with optional overrides."""
        settings = _PlannerSettings()

        params = {
            "region": settings.region,
            "stack_name": settings.stack_name,
            "strict": settings.strict,
            "extra_tags": unpack_tags(settings.extra_tags_str),
            "wait_timeout_seconds": settings.wait_timeout_seconds,
            "poll_interval_seconds": settings.poll_interval_seconds,
        }

        # Override with any provided kwargs
        params.update(kwargs)

        if params["region"] is None:
            params["region"] = os.getenv("AWS_REGION") or os.getenv(
                "AWS_DEFAULT_REGION"
            )

        if params["strict"] is None:
            params["strict"] = False

        if params["wait_timeout_seconds"] is None:
            params["wait_timeout_seconds"] = 3600

        if params["poll_interval_seconds"] is None:
            params["poll_interval_seconds"] = 10

        if params["poll_interval_seconds"] <= 0:
            raise ValueError(
                f"Poll interval must be positive, got {params['poll_interval_seconds']}"
            )

        return cls(**params)

    def require_region(self) -> str:
        if self.region is None:
            raise ValueError(
                "Region must be specified either in settings,"
                f" or as an environment variable {env_prefix}REGION or AWS_REGION."
            )
        return self.region
