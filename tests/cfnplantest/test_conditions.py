import pytest

from cfnplan.conditions import (
    active_resources,
    as_parameter_value,
    evaluate_conditions,
    resolve_parameters,
)
from cfnplan.errors import CyclicDependencyError

from .helpers import template

CONDITIONAL = """
Parameters:
  Env:
    Type: String
    Default: dev
  EnableAlarms:
    Type: String
    AllowedValues: ["true", "false"]
  Replicas:
    Type: Number
    Default: 2
Conditions:
  IsProd: !Equals [!Ref Env, prod]
  WantsAlarms: !Equals [!Ref EnableAlarms, "true"]
  ProdWithAlarms: !And [!Condition IsProd, !Condition WantsAlarms]
  DevOrAlarms: !Or [!Not [!Condition IsProd], !Condition WantsAlarms]
  InUsEast: !Equals [!Ref "AWS::Region", us-east-1]
  TwoReplicas: !Equals [!Ref Replicas, 2]
Resources:
  Topic:
    Type: AWS::SNS::Topic
  Alarm:
    Type: AWS::CloudWatch::Alarm
    Condition: ProdWithAlarms
  DevQueue:
    Type: AWS::SQS::Queue
    Condition: DevOrAlarms
"""


def test_as_parameter_value():
    assert as_parameter_value(True) == "true"
    assert as_parameter_value(3) == "3"
    assert as_parameter_value(["a", "b"]) == "a,b"


def test_resolve_parameters_merges_overrides_over_defaults():
    loaded = template(CONDITIONAL)
    assert resolve_parameters(loaded) == {
        "Env": "dev",
        "EnableAlarms": None,
        "Replicas": "2",
    }
    assert resolve_parameters(loaded, {"Env": "prod", "EnableAlarms": "true"}) == {
        "Env": "prod",
        "EnableAlarms": "true",
        "Replicas": "2",
    }


def test_decidable_conditions():
    loaded = template(CONDITIONAL)
    values = resolve_parameters(loaded, {"Env": "prod", "EnableAlarms": "false"})
    conditions = evaluate_conditions(loaded, values, {"AWS::Region": "eu-west-1"})
    assert conditions == {
        "IsProd": True,
        "WantsAlarms": False,
        "ProdWithAlarms": False,
        "DevOrAlarms": False,
        "InUsEast": False,
        "TwoReplicas": True,
    }
    assert active_resources(loaded, conditions) == ["Topic"]


def test_unknown_values_are_treated_as_true():
    loaded = template(CONDITIONAL)
    conditions = evaluate_conditions(loaded, resolve_parameters(loaded))
    # EnableAlarms and the region are unknown
    assert conditions["WantsAlarms"] is True
    assert conditions["InUsEast"] is True
    # a known False short-circuits And
    assert conditions["ProdWithAlarms"] is False
    # a known True short-circuits Or
    assert conditions["DevOrAlarms"] is True
    assert active_resources(loaded, conditions) == ["Topic", "DevQueue"]


def test_condition_cycle_is_reported():
    loaded = template(
        """
        Conditions:
          A: !Not [!Condition B]
          B: !Not [!Condition A]
        Resources:
          Topic:
            Type: AWS::SNS::Topic
        """
    )
    with pytest.raises(CyclicDependencyError) as excinfo:
        evaluate_conditions(loaded, {})
    assert excinfo.value.cycles == [["A", "B", "A"]]
