from collections import defaultdict
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from stackdeploy.deploy.cloudformation.templates import (
    ENV_TEMPLATE_PATH,
    InMemoryTemplateSource,
    TemplateStackConfiguration,
)

TEST_AWS_ACCESS_KEY_ID = "test"
TEST_AWS_SECRET_ACCESS_KEY = "test"
TEST_AWS_REGION_NAME = "us-east-1"

STACK_NAME = "my-project-test"
STACK_ID = f"arn:aws:cloudformation:us-east-1:000000000000:stack/{STACK_NAME}/1a2b3c4d"
CHANGE_SET_ID = "arn:aws:cloudformation:us-east-1:000000000000:changeSet/stackdeploy-my-project-test-5e6f7a8b/9c0d"
BASELINE_TEMPLATE = "Description: baseline\nResources: {}\n"


@pytest.fixture(autouse=True)
def set_boto_test_credentials_and_region(monkeypatch):
    """
    Automatically sets the default credentials and region for all unit tests.
    """
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", TEST_AWS_ACCESS_KEY_ID)
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", TEST_AWS_SECRET_ACCESS_KEY)
    monkeypatch.setenv("AWS_DEFAULT_REGION", TEST_AWS_REGION_NAME)


def client_error(code: str, message: str, operation_name: str = "DescribeStacks") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message}}, operation_name)


def stack_description(status: str = "CREATE_COMPLETE", **kwargs) -> dict:
    return {"StackId": STACK_ID, "StackName": STACK_NAME, "StackStatus": status, **kwargs}


@pytest.fixture
def waiters():
    """The waiters handed out by the ``cfn_client`` fixture, by waiter name."""
    return defaultdict(MagicMock)


@pytest.fixture
def cfn_client(waiters):
    client = MagicMock()
    client.get_waiter.side_effect = lambda name: waiters[name]
    client.create_change_set.return_value = {"Id": CHANGE_SET_ID, "StackId": STACK_ID}
    client.describe_change_set.return_value = {
        "ChangeSetId": CHANGE_SET_ID,
        "StackId": STACK_ID,
        "ExecutionStatus": "AVAILABLE",
        "Status": "CREATE_COMPLETE",
        "Changes": [{"Type": "Resource", "ResourceChange": {"LogicalResourceId": "Cluster"}}],
    }
    client.describe_stacks.return_value = {"Stacks": [stack_description()]}
    return client


@pytest.fixture
def template_source():
    return InMemoryTemplateSource({ENV_TEMPLATE_PATH: BASELINE_TEMPLATE})


@pytest.fixture
def stack_config():
    return TemplateStackConfiguration(
        STACK_NAME,
        template_body="Resources:\n  Cluster:\n    Type: AWS::ECS::Cluster\n",
        parameters={"ProjectName": "my-project", "EnvironmentName": "test"},
        tags={"stackdeploy-project": "my-project", "stackdeploy-environment": "test"},
    )
