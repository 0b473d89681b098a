"""Thin client for the CloudFormation API: remote validation, deploy and events."""

from logging import getLogger
from typing import Any, Dict, List, Optional, Sequence, Tuple

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from tenacity import (
    RetryError,
    Retrying,
    retry_if_exception_type,
    stop_after_delay,
    wait_fixed,
)

from cfnplan._unpack_tags import (
    convert_parameters_for_aws_interface,
    convert_tags_for_aws_interface,
)
from cfnplan.errors import StackOperationError
from cfnplan.loader import loads_template, template_from_document
from cfnplan.schema import PlannerConfig, Template

MARKER_TAG_KEY = "cfnplan"

SUCCESS_STATUSES = frozenset(
    {
        "CREATE_COMPLETE",
        "UPDATE_COMPLETE",
        "DELETE_COMPLETE",
        "IMPORT_COMPLETE",
    }
)
FAILURE_STATUSES = frozenset(
    {
        "CREATE_FAILED",
        "DELETE_FAILED",
        "ROLLBACK_COMPLETE",
        "ROLLBACK_FAILED",
        "UPDATE_ROLLBACK_COMPLETE",
        "UPDATE_ROLLBACK_FAILED",
        "UPDATE_FAILED",
        "IMPORT_ROLLBACK_COMPLETE",
        "IMPORT_ROLLBACK_FAILED",
    }
)

_NO_UPDATES_MESSAGE = "No updates are to be performed"


class _StackInProgress(Exception):
    def __init__(self, status: str):
        self.status = status
        super().__init__(status)


def _is_missing_stack(error: ClientError) -> bool:
    message = error.response.get("Error", {}).get("Message", "")
    return "does not exist" in message


def _error_message(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Message", str(error))


class StackClient:
    """Talks to CloudFormation on behalf of the CLI."""

    logger = getLogger(__name__)

    config: PlannerConfig

    def __init__(self, config: PlannerConfig, cfn_client: Any = None):
        self.config = config
        self.cfn_client = cfn_client or boto3.client(
            "cloudformation", region_name=config.require_region()
        )

    def validate_remote(self, template_body: str) -> Dict[str, Any]:
        """Ask CloudFormation itself to validate the template."""
        try:
            response = self.cfn_client.validate_template(TemplateBody=template_body)
        except ClientError as e:
            raise StackOperationError(
                f"CloudFormation rejected the template: {_error_message(e)}"
            )
        except BotoCoreError as e:
            raise StackOperationError(f"Could not reach CloudFormation: {e}")

        return {
            "description": response.get("Description"),
            "capabilities": response.get("Capabilities", []),
            "capabilities_reason": response.get("CapabilitiesReason"),
            "parameters": [
                {
                    "parameter_key": p.get("ParameterKey", ""),
                    "default_value": p.get("DefaultValue"),
                    "no_echo": p.get("NoEcho", False),
                    "description": p.get("Description", ""),
                }
                for p in response.get("Parameters", [])
            ],
        }

    def describe_stack(self, stack_name: str) -> Optional[Dict[str, Any]]:
        try:
            response = self.cfn_client.describe_stacks(StackName=stack_name)
        except ClientError as e:
            if _is_missing_stack(e):
                return None
            raise StackOperationError(_error_message(e), stack_name)
        stacks = response.get("Stacks", [])
        return stacks[0] if stacks else None

    def deployed_template(self, stack_name: str) -> Optional[Template]:
        """Template the stack was last deployed with, None if it does not exist."""
        try:
            response = self.cfn_client.get_template(
                StackName=stack_name, TemplateStage="Original"
            )
        except ClientError as e:
            if _is_missing_stack(e):
                self.logger.info(f"Stack {stack_name} does not exist yet")
                return None
            raise StackOperationError(_error_message(e), stack_name)

        body = response["TemplateBody"]
        # boto3 decodes JSON templates into a dict; YAML ones stay text
        if isinstance(body, dict):
            return template_from_document(body)
        return loads_template(body)

    def deploy(
        self,
        stack_name: str,
        template_body: str,
        parameters: Optional[Dict[str, str]] = None,
        tags: Tuple[Tuple[str, str], ...] = (),
        capabilities: Optional[Sequence[str]] = None,
    ) -> str:
        """
        Create the stack, or update it if it already exists.

        Returns:
            "create", "update", or "none" when CloudFormation reports that
            there is nothing to update.
        """
        if capabilities is None:
            capabilities = self.validate_remote(template_body)["capabilities"]

        stack = self.describe_stack(stack_name)
        # a stack left in REVIEW_IN_PROGRESS by a change set still needs a create
        stack_exists = (
            stack is not None and stack["StackStatus"] != "REVIEW_IN_PROGRESS"
        )

        all_tags = list(self.config.extra_tags) + list(tags)
        if not stack_exists:
            all_tags.append((MARKER_TAG_KEY, "true"))

        params: Dict[str, Any] = {
            "StackName": stack_name,
            "TemplateBody": template_body,
            "Parameters": convert_parameters_for_aws_interface(parameters or {}),
            "Tags": convert_tags_for_aws_interface(tuple(all_tags)),
        }
        if capabilities:
            params["Capabilities"] = list(capabilities)

        try:
            if stack_exists:
                self.cfn_client.update_stack(**params)
                operation = "update"
            else:
                self.cfn_client.create_stack(**params)
                operation = "create"
        except ClientError as e:
            if _NO_UPDATES_MESSAGE in _error_message(e):
                self.logger.info(f"Stack {stack_name} is already up to date")
                return "none"
            raise StackOperationError(_error_message(e), stack_name)

        self.logger.info(f"Started {operation} of stack {stack_name}")
        return operation

    def wait(self, stack_name: str, deleting: bool = False) -> str:
        """
        Poll until the stack reaches a terminal status and return it.

        A stack that cannot be found counts as deleted only when ``deleting``
        is set; right after a create it may simply not be visible yet.
        """
        retrying = Retrying(
            stop=stop_after_delay(self.config.wait_timeout_seconds),
            wait=wait_fixed(self.config.poll_interval_seconds),
            retry=retry_if_exception_type(_StackInProgress),
        )
        try:
            status = retrying(self._poll_status, stack_name, deleting)
        except RetryError as e:
            last = e.last_attempt.exception()
            raise StackOperationError(
                f"Timed out waiting for stack {stack_name} (last status: {last})",
                stack_name,
            )

        if status in FAILURE_STATUSES:
            reasons = [
                f"{event['logical_id']}: {event['status_reason']}"
                for event in self.events(stack_name)
                if event["resource_status"].endswith("_FAILED")
                and event["status_reason"]
            ]
            detail = "; ".join(reasons) or "see stack events"
            raise StackOperationError(
                f"Stack {stack_name} finished with {status}: {detail}", stack_name
            )
        return status

    def events(self, stack_name: str, limit: int = 30) -> List[Dict[str, str]]:
        """Recent stack events, newest first."""
        try:
            response = self.cfn_client.describe_stack_events(StackName=stack_name)
        except ClientError as e:
            raise StackOperationError(_error_message(e), stack_name)

        return [
            {
                "timestamp": str(event.get("Timestamp", "")),
                "resource_status": event.get("ResourceStatus", ""),
                "resource_type": event.get("ResourceType", ""),
                "logical_id": event.get("LogicalResourceId", ""),
                "status_reason": event.get("ResourceStatusReason") or "",
            }
            for event in response.get("StackEvents", [])[:limit]
        ]

    def _poll_status(self, stack_name: str, deleting: bool) -> str:
        stack = self.describe_stack(stack_name)
        if stack is None:
            # a deleted stack disappears from DescribeStacks by name
            if deleting:
                return "DELETE_COMPLETE"
            raise _StackInProgress("NOT_FOUND")
        status = stack["StackStatus"]
        self.logger.debug(f"Stack {stack_name} status: {status}")
        if status in SUCCESS_STATUSES or status in FAILURE_STATUSES:
            return status
        raise _StackInProgress(status)
