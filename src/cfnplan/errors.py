"""
Error types raised by the cfnplan library.

Validation problems are reported as findings rather than raised; these
exceptions cover the cases where an operation cannot produce a result at all.
"""

from pathlib import Path
from typing import TYPE_CHECKING, List, Optional

if TYPE_CHECKING:
    from cfnplan.validation import ValidationReport


class CfnPlanError(Exception):
    """Base exception for all cfnplan errors."""


class TemplateLoadError(CfnPlanError):
    """
    Raised when a template cannot be read or does not match the template schema.

    Examples:
    - File does not exist or cannot be decoded
    - Invalid YAML / JSON syntax
    - Unknown short-form tag such as ``!Reff``
    - Top-level keys that are not part of the template format
    """

    def __init__(self, message: str, path: Optional[Path] = None):
        self.message = message
        self.path = path
        super().__init__(f"{path}: {message}" if path else message)


class CyclicDependencyError(CfnPlanError):
    """Raised when an ordering is requested for a graph that contains cycles."""

    def __init__(self, cycles: List[List[str]]):
        self.cycles = cycles
        rendered = "; ".join(" -> ".join(cycle) for cycle in cycles)
        super().__init__(f"Circular dependency detected: {rendered}")


class PlanningError(CfnPlanError):
    """Raised when a plan is requested for a template that fails validation."""

    def __init__(self, message: str, report: Optional["ValidationReport"] = None):
        self.report = report
        super().__init__(message)


class StackOperationError(CfnPlanError):
    """Raised when a call to the CloudFormation API fails or a stack ends in failure."""

    def __init__(self, message: str, stack_name: Optional[str] = None):
        self.stack_name = stack_name
        super().__init__(message)
