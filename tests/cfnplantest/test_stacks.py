import datetime
from unittest import mock

import pytest
from botocore.exceptions import ClientError

from cfnplan.errors import StackOperationError
from cfnplan.schema import PlannerConfig
from cfnplan.stacks import MARKER_TAG_KEY, StackClient

from .helpers import WEB_STACK, has_aws_creds

SIMPLE_BODY = """
Resources:
  Topic:
    Type: AWS::SNS::Topic
"""


def config(**overrides) -> PlannerConfig:
    params = {
        "region": "eu-west-2",
        "stack_name": None,
        "strict": False,
        "extra_tags": (("team", "platform"),),
        "wait_timeout_seconds": 60,
        "poll_interval_seconds": 0,
    }
    params.update(overrides)
    return PlannerConfig(**params)


def client_error(message: str, operation: str = "DescribeStacks") -> ClientError:
    return ClientError(
        {"Error": {"Code": "ValidationError", "Message": message}}, operation
    )


def missing_stack(name: str = "web") -> ClientError:
    return client_error(f"Stack with id {name} does not exist")


def stack(status: str) -> dict:
    return {"Stacks": [{"StackName": "web", "StackStatus": status}]}


@pytest.fixture()
def cfn():
    return mock.MagicMock()


@pytest.fixture()
def client(cfn):
    return StackClient(config(), cfn_client=cfn)


def test_boto3_client_uses_configured_region():
    with mock.patch("cfnplan.stacks.boto3.client") as boto3_client:
        StackClient(config())
    boto3_client.assert_called_once_with("cloudformation", region_name="eu-west-2")


def test_region_is_required_for_stack_operations():
    with pytest.raises(ValueError, match="Region must be specified"):
        StackClient(config(region=None))


def test_validate_remote(client, cfn):
    cfn.validate_template.return_value = {
        "Description": "demo",
        "Capabilities": ["CAPABILITY_IAM"],
        "CapabilitiesReason": "The following resource(s) require capabilities",
        "Parameters": [{"ParameterKey": "Env", "DefaultValue": "dev"}],
    }

    result = client.validate_remote(SIMPLE_BODY)

    cfn.validate_template.assert_called_once_with(TemplateBody=SIMPLE_BODY)
    assert result["capabilities"] == ["CAPABILITY_IAM"]
    assert result["parameters"] == [
        {
            "parameter_key": "Env",
            "default_value": "dev",
            "no_echo": False,
            "description": "",
        }
    ]


def test_validate_remote_rejection(client, cfn):
    cfn.validate_template.side_effect = client_error(
        "Template format error: unsupported structure.", "ValidateTemplate"
    )
    with pytest.raises(StackOperationError, match="rejected the template"):
        client.validate_remote("{}")


def test_describe_missing_stack(client, cfn):
    cfn.describe_stacks.side_effect = missing_stack()
    assert client.describe_stack("web") is None


def test_describe_stack_other_errors_propagate(client, cfn):
    cfn.describe_stacks.side_effect = client_error("Rate exceeded")
    with pytest.raises(StackOperationError) as e:
        client.describe_stack("web")
    assert e.value.stack_name == "web"


def test_deployed_template_from_yaml_text(client, cfn):
    cfn.get_template.return_value = {"TemplateBody": SIMPLE_BODY}

    deployed = client.deployed_template("web")

    cfn.get_template.assert_called_once_with(StackName="web", TemplateStage="Original")
    assert deployed is not None
    assert list(deployed.resources) == ["Topic"]


def test_deployed_template_from_decoded_json(client, cfn):
    cfn.get_template.return_value = {
        "TemplateBody": {"Resources": {"Queue": {"Type": "AWS::SQS::Queue"}}}
    }
    deployed = client.deployed_template("web")
    assert deployed is not None
    assert deployed.resources["Queue"].type == "AWS::SQS::Queue"


def test_deployed_template_of_missing_stack(client, cfn):
    cfn.get_template.side_effect = missing_stack()
    assert client.deployed_template("web") is None


def test_deploy_creates_new_stack_with_marker_tag(client, cfn):
    cfn.describe_stacks.side_effect = missing_stack()

    operation = client.deploy(
        "web",
        SIMPLE_BODY,
        parameters={"Env": "prod"},
        tags=(("owner", "ops"),),
        capabilities=["CAPABILITY_IAM"],
    )

    assert operation == "create"
    cfn.validate_template.assert_not_called()
    cfn.create_stack.assert_called_once_with(
        StackName="web",
        TemplateBody=SIMPLE_BODY,
        Parameters=[{"ParameterKey": "Env", "ParameterValue": "prod"}],
        Tags=[
            {"Key": "team", "Value": "platform"},
            {"Key": "owner", "Value": "ops"},
            {"Key": MARKER_TAG_KEY, "Value": "true"},
        ],
        Capabilities=["CAPABILITY_IAM"],
    )


def test_deploy_updates_existing_stack_and_detects_capabilities(client, cfn):
    cfn.describe_stacks.return_value = stack("CREATE_COMPLETE")
    cfn.validate_template.return_value = {"Capabilities": []}

    operation = client.deploy("web", SIMPLE_BODY)

    assert operation == "update"
    cfn.create_stack.assert_not_called()
    kwargs = cfn.update_stack.call_args.kwargs
    assert kwargs["Tags"] == [{"Key": "team", "Value": "platform"}]
    assert "Capabilities" not in kwargs


def test_deploy_with_nothing_to_update(client, cfn):
    cfn.describe_stacks.return_value = stack("UPDATE_COMPLETE")
    cfn.update_stack.side_effect = client_error(
        "No updates are to be performed.", "UpdateStack"
    )
    assert client.deploy("web", SIMPLE_BODY, capabilities=[]) == "none"


def test_deploy_failure(client, cfn):
    cfn.describe_stacks.return_value = stack("UPDATE_COMPLETE")
    cfn.update_stack.side_effect = client_error(
        "Parameters: [Env] must have values", "UpdateStack"
    )
    with pytest.raises(StackOperationError, match="must have values"):
        client.deploy("web", SIMPLE_BODY, capabilities=[])


def test_wait_until_complete(client, cfn):
    cfn.describe_stacks.side_effect = [
        stack("CREATE_IN_PROGRESS"),
        stack("CREATE_IN_PROGRESS"),
        stack("CREATE_COMPLETE"),
    ]
    assert client.wait("web") == "CREATE_COMPLETE"
    assert cfn.describe_stacks.call_count == 3


def test_wait_reports_failed_resources(client, cfn):
    cfn.describe_stacks.return_value = stack("ROLLBACK_COMPLETE")
    cfn.describe_stack_events.return_value = {
        "StackEvents": [
            {
                "Timestamp": datetime.datetime(2026, 1, 1, 12, 0),
                "LogicalResourceId": "WebServer",
                "ResourceType": "AWS::EC2::Instance",
                "ResourceStatus": "CREATE_FAILED",
                "ResourceStatusReason": "Instance type not supported",
            },
            {
                "Timestamp": datetime.datetime(2026, 1, 1, 11, 59),
                "LogicalResourceId": "Vpc",
                "ResourceType": "AWS::EC2::VPC",
                "ResourceStatus": "CREATE_COMPLETE",
            },
        ]
    }
    with pytest.raises(StackOperationError) as e:
        client.wait("web")
    assert str(e.value) == (
        "Stack web finished with ROLLBACK_COMPLETE:"
        " WebServer: Instance type not supported"
    )


def test_wait_times_out(cfn):
    client = StackClient(config(wait_timeout_seconds=0), cfn_client=cfn)
    cfn.describe_stacks.return_value = stack("UPDATE_IN_PROGRESS")
    with pytest.raises(StackOperationError, match="Timed out waiting for stack web"):
        client.wait("web")


def test_wait_for_deleted_stack(client, cfn):
    cfn.describe_stacks.side_effect = missing_stack()
    assert client.wait("web", deleting=True) == "DELETE_COMPLETE"


def test_wait_retries_until_new_stack_is_visible(client, cfn):
    cfn.describe_stacks.side_effect = [
        missing_stack(),
        stack("CREATE_IN_PROGRESS"),
        stack("CREATE_COMPLETE"),
    ]
    assert client.wait("web") == "CREATE_COMPLETE"
    assert cfn.describe_stacks.call_count == 3


def test_missing_stack_is_not_a_success_when_not_deleting(cfn):
    client = StackClient(config(wait_timeout_seconds=0), cfn_client=cfn)
    cfn.describe_stacks.side_effect = missing_stack()
    with pytest.raises(StackOperationError, match="last status: NOT_FOUND"):
        client.wait("web")


def test_events(client, cfn):
    cfn.describe_stack_events.return_value = {
        "StackEvents": [
            {
                "Timestamp": datetime.datetime(2026, 1, 1, 12, 0),
                "LogicalResourceId": f"Topic{index}",
                "ResourceType": "AWS::SNS::Topic",
                "ResourceStatus": "CREATE_COMPLETE",
            }
            for index in range(5)
        ]
    }

    events = client.events("web", limit=2)

    assert [event["logical_id"] for event in events] == ["Topic0", "Topic1"]
    assert events[0]["status_reason"] == ""
    assert events[0]["timestamp"] == "2026-01-01 12:00:00"


@pytest.mark.skipif(
    not has_aws_creds(),
    reason="Test requires AWS credentials",
)
def test_example_template_is_accepted_by_cloudformation():
    client = StackClient(PlannerConfig.from_settings())
    result = client.validate_remote(WEB_STACK.read_text(encoding="utf-8"))
    assert result["capabilities"] == []
    assert "EnvironmentName" in [p["parameter_key"] for p in result["parameters"]]
