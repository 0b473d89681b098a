"""Validate CloudFormation templates and plan the order they apply in."""

from cfnplan.errors import (
    CfnPlanError,
    CyclicDependencyError,
    PlanningError,
    StackOperationError,
    TemplateLoadError,
)
from cfnplan.graph import DependencyGraph
from cfnplan.loader import load_template, loads_template
from cfnplan.planner import Plan, PlanAction, PlanStep, build_plan
from cfnplan.schema import PlannerConfig, Template
from cfnplan.validation import Finding, ValidationReport, validate_template

__all__ = [
    "CfnPlanError",
    "CyclicDependencyError",
    "DependencyGraph",
    "Finding",
    "Plan",
    "PlanAction",
    "PlanStep",
    "PlannerConfig",
    "PlanningError",
    "StackOperationError",
    "Template",
    "TemplateLoadError",
    "ValidationReport",
    "build_plan",
    "load_template",
    "loads_template",
    "validate_template",
]
