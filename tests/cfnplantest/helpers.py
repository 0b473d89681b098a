import textwrap
from pathlib import Path

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from cfnplan.loader import loads_template
from cfnplan.schema import Template

EXAMPLES_DIR = Path(__file__).resolve().parents[2] / "examples"
WEB_STACK = EXAMPLES_DIR / "web-stack.yaml"


def has_aws_creds():
    try:
        boto3.client("sts").get_caller_identity()
        return True
    except (BotoCoreError, ClientError):
        return False


def template(text: str) -> Template:
    return loads_template(textwrap.dedent(text))
