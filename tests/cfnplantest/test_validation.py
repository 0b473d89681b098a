import pytest

from cfnplan.loader import load_template
from cfnplan.schema import Template, TemplateParameter
from cfnplan.validation import (
    check_parameter_value,
    is_valid_parameter_type,
    validate_template,
)

from .helpers import WEB_STACK, template


def test_example_template_is_clean():
    report = validate_template(load_template(WEB_STACK))
    assert report.findings == []
    assert report.ok
    assert report.passed(strict=True)


def test_example_template_with_supplied_values():
    loaded = load_template(WEB_STACK)
    report = validate_template(loaded, {"InstanceType": "m5.large", "Unknown": "x"})
    assert report.codes() == ["E2002", "E2004"]
    assert "m5.large" in report.errors[0].message


def test_structure_checks():
    report = validate_template(
        template(
            """
            AWSTemplateFormatVersion: "2012-01-01"
            Parameters:
              bad-name:
                Type: String
            Resources: {}
            """
        )
    )
    assert report.codes()[:3] == ["E0001", "E0002", "E0003"]
    assert report.errors[2].location == "Parameters/bad-name"


def test_quota_on_resources():
    resources = "\n".join(
        f"  Topic{index}:\n    Type: AWS::SNS::Topic" for index in range(501)
    )
    report = validate_template(template("Resources:\n" + resources))
    assert report.codes() == ["E0004"]


def test_parameter_and_resource_with_the_same_name():
    report = validate_template(
        template(
            """
            Parameters:
              Topic:
                Type: String
            Resources:
              Topic:
                Type: AWS::SNS::Topic
                Properties:
                  TopicName: !Ref Topic
            """
        )
    )
    assert "E0005" in report.codes()


@pytest.mark.parametrize(
    "resource_type,valid",
    [
        ("AWS::EC2::VPC", True),
        ("Custom::DnsRecord", True),
        ("MyOrg::Network::Thing::MODULE", True),
        ("AWS::EC2", False),
        ("ec2 instance", False),
    ],
)
def test_resource_types(resource_type, valid):
    loaded = template(
        f"""
        Resources:
          Thing:
            Type: "{resource_type}"
        """
    )
    codes = validate_template(loaded).codes()
    assert ("E1001" not in codes) is valid


@pytest.mark.parametrize(
    "parameter_type,valid",
    [
        ("String", True),
        ("List<Number>", True),
        ("AWS::EC2::VPC::Id", True),
        ("List<AWS::EC2::Subnet::Id>", True),
        ("AWS::SSM::Parameter::Value<String>", True),
        ("Integer", False),
        ("List<String>", False),
    ],
)
def test_parameter_types(parameter_type, valid):
    assert is_valid_parameter_type(parameter_type) is valid


def test_parameter_constraints():
    parameter = TemplateParameter(
        type="Number", allowed_values=(1, 2, 3), min_value=2, max_value=3
    )
    assert check_parameter_value(parameter, 2) == []
    problems = check_parameter_value(parameter, 1)
    assert any("below MinValue 2" in problem for problem in problems)
    problems = check_parameter_value(parameter, 4)
    assert any("is not one of" in problem for problem in problems)
    assert check_parameter_value(parameter, "x")[-1] == "value 'x' is not a number"


def test_parameter_pattern_and_length():
    parameter = TemplateParameter(
        type="String",
        allowed_pattern="[a-z]+",
        max_length=5,
        constraint_description="lower case, at most five letters",
    )
    assert check_parameter_value(parameter, "abc") == []
    problems = check_parameter_value(parameter, "Abcdef")
    assert problems == [
        "value 'Abcdef' does not match pattern '[a-z]+'",
        "value is longer than MaxLength 5",
        "lower case, at most five letters",
    ]


def test_list_parameter_checks_each_item():
    parameter = TemplateParameter(
        type="CommaDelimitedList", allowed_values=("a", "b")
    )
    assert check_parameter_value(parameter, "a, b") == []
    assert check_parameter_value(parameter, "a,c") == [
        "value 'c' is not one of ['a', 'b']"
    ]


def test_default_violating_constraints_and_missing_values():
    loaded = template(
        """
        Parameters:
          Size:
            Type: String
            Default: huge
            AllowedValues: [small, large]
          KeyName:
            Type: AWS::EC2::KeyPair::KeyName
        Resources:
          Instance:
            Type: AWS::EC2::Instance
            Properties:
              InstanceType: !Ref Size
              KeyName: !Ref KeyName
        """
    )
    assert validate_template(loaded).codes() == ["E2002"]
    assert validate_template(loaded, {}).codes() == ["E2002", "E2003"]
    assert validate_template(loaded, {"KeyName": "ops"}).codes() == ["E2002"]


def test_reference_checks():
    loaded = template(
        """
        Parameters:
          Env:
            Type: String
        Resources:
          Queue:
            Type: AWS::SQS::Queue
            DependsOn: [Missing, Env]
            Properties:
              QueueName: !Ref Nowhere
              Tags:
                - Key: env
                  Value: !GetAtt Env.Value
                - Key: arn
                  Value: !Sub "${Topic.Arn}"
        Outputs:
          Region:
            Value: !Ref AWS::Region
        """
    )
    report = validate_template(loaded)
    errors = [(f.code, f.message) for f in report.errors]
    assert errors == [
        ("E3001", "Queue refers to undeclared resource 'Missing'"),
        ("E3002", "DependsOn in Queue needs a resource, but 'Env' is a parameter"),
        ("E3001", "Queue refers to undeclared name 'Nowhere'"),
        ("E3002", "GetAtt in Queue needs a resource, but 'Env' is a parameter"),
        ("E3001", "Queue refers to undeclared resource 'Topic'"),
    ]
    assert report.errors[2].location == "Resources/Queue/Properties.QueueName"


def test_condition_references_must_be_parameters():
    loaded = template(
        """
        Conditions:
          HasTopic: !Equals [!Ref Topic, ""]
          Other: !Equals [!Ref Ghost, ""]
        Resources:
          Topic:
            Type: AWS::SNS::Topic
            Condition: HasTopic
        """
    )
    codes = validate_template(loaded).codes()
    assert codes[:2] == ["E3002", "E3001"]


def test_cycle_is_reported_with_path():
    loaded = template(
        """
        Resources:
          A:
            Type: AWS::SNS::Topic
            Properties:
              TopicName: !GetAtt B.TopicName
          B:
            Type: AWS::SNS::Topic
            DependsOn: A
        """
    )
    report = validate_template(loaded)
    assert report.codes() == ["E3003"]
    assert report.errors[0].message == "circular dependency: A -> B -> A"


def test_condition_checks():
    loaded = template(
        """
        Conditions:
          Loop1: !Not [!Condition Loop2]
          Loop2: !Not [!Condition Loop1]
          UsesGhost: !Not [!Condition Ghost]
        Resources:
          Topic:
            Type: AWS::SNS::Topic
            Condition: Missing
            Properties:
              TopicName: !If [AlsoMissing, a, b]
        Outputs:
          Name:
            Condition: Loop1
            Value: !If [Gone, a, !Ref Topic]
        """
    )
    report = validate_template(loaded)
    messages = [f.message for f in report.errors]
    assert messages == [
        "resource Topic uses undeclared condition 'Missing'",
        "Fn::If in Topic uses undeclared condition 'AlsoMissing'",
        "Fn::If in output Name uses undeclared condition 'Gone'",
        "condition UsesGhost uses undeclared condition 'Ghost'",
        "circular condition: Loop1 -> Loop2 -> Loop1",
    ]


def test_find_in_map_needs_declared_mapping():
    loaded = template(
        """
        Mappings:
          RegionMap:
            eu-west-1:
              Ami: ami-123
        Resources:
          Instance:
            Type: AWS::EC2::Instance
            Properties:
              ImageId: !FindInMap [RegionMap, !Ref "AWS::Region", Ami]
              KeyName: !FindInMap [KeyMap, default, Name]
        """
    )
    report = validate_template(loaded)
    assert report.codes() == ["E3005"]
    assert "KeyMap" in report.errors[0].message


def test_cidr_checks():
    loaded = template(
        """
        Resources:
          Vpc:
            Type: AWS::EC2::VPC
            Properties:
              CidrBlock: 10.0.0.0/16
          Inside:
            Type: AWS::EC2::Subnet
            Properties:
              VpcId: !Ref Vpc
              CidrBlock: 10.0.1.0/24
          Outside:
            Type: AWS::EC2::Subnet
            Properties:
              VpcId: !Ref Vpc
              CidrBlock: 10.1.0.0/24
          Sg:
            Type: AWS::EC2::SecurityGroup
            Properties:
              GroupDescription: web
              VpcId: !Ref Vpc
              SecurityGroupIngress:
                - IpProtocol: tcp
                  FromPort: 443
                  ToPort: 443
                  CidrIp: 10.0.0.300/32
        """
    )
    report = validate_template(loaded)
    assert report.codes() == ["E4001", "E4002"]
    assert report.errors[0].location == "Resources/Sg/Properties"
    assert report.errors[1].message == (
        "subnet Outside CIDR 10.1.0.0/24 is outside its VPC CIDR 10.0.0.0/16"
    )


def test_warnings():
    loaded = template(
        """
        Parameters:
          Unused:
            Type: String
            Default: x
        Resources:
          Topic:
            Type: AWS::SNS::Topic
          Subscription:
            Type: AWS::SNS::Subscription
            DependsOn: Topic
            Properties:
              TopicArn: !Ref Topic
              Protocol: email
              Endpoint: ops@example.com
        """
    )
    report = validate_template(loaded)
    assert report.codes() == ["W2001", "W3001"]
    assert report.ok
    assert not report.passed(strict=True)


def test_long_dependency_chain_is_reported_not_raised():
    resources = {"Topic0": {"Type": "AWS::SNS::Topic"}}
    for index in range(1, 1200):
        resources[f"Topic{index}"] = {
            "Type": "AWS::SNS::Topic",
            "DependsOn": f"Topic{index - 1}",
        }
    report = validate_template(Template.model_validate({"Resources": resources}))
    assert report.codes() == ["E0004"]


def test_parameters_used_in_rules_count_as_used():
    loaded = template(
        """
        Parameters:
          Env:
            Type: String
            Default: dev
          InstanceType:
            Type: String
            Default: t3.micro
        Rules:
          ProdInstanceType:
            RuleCondition: !Equals [!Ref Env, prod]
            Assertions:
              - Assert: !Not [!Equals [!Ref InstanceType, t3.micro]]
                AssertDescription: production needs a larger instance
          UsesQueue:
            Assertions:
              - Assert: !Equals [!Ref Queue, x]
              - Assert: !Equals [!Ref Nothing, x]
        Resources:
          Queue:
            Type: AWS::SQS::Queue
        """
    )
    report = validate_template(loaded)
    assert report.codes() == ["E3002", "E3001"]
    assert report.errors[0].message == (
        "rule UsesQueue refers to resource 'Queue';"
        " rules can only refer to parameters"
    )
    assert report.passed(strict=True) is False
    assert "W2001" not in report.codes()


def test_cycles_through_one_resource_are_each_reported():
    loaded = template(
        """
        Resources:
          A:
            Type: AWS::SNS::Topic
            DependsOn: [B, C]
          B:
            Type: AWS::SNS::Topic
            DependsOn: A
          C:
            Type: AWS::SNS::Topic
            DependsOn: A
        """
    )
    messages = [finding.message for finding in validate_template(loaded).errors]
    assert messages == [
        "circular dependency: A -> B -> A",
        "circular dependency: A -> C -> A",
    ]
