import logging
import re
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import WaiterError

from stackdeploy import config
from stackdeploy.deploy.cloudformation.deployer import (
    CAPABILITIES,
    WAITER_CHANGE_SET_CREATE_COMPLETE,
    WAITER_STACK_CREATE_COMPLETE,
    WAITER_STACK_DELETE_COMPLETE,
    WAITER_STACK_UPDATE_COMPLETE,
    CloudFormation,
)
from stackdeploy.deploy.cloudformation.errors import (
    ChangeSetCreationFailed,
    ChangeSetDescribeFailed,
    ChangeSetExecuteFailed,
    ChangeSetWaitFailed,
    NotExecutableChangeSet,
    StackAlreadyExists,
    StackCreationFailed,
    StackDeletionFailed,
    StackNotFound,
    StackUpdateFailed,
    StackUpdateInProgress,
)
from stackdeploy.deploy.cloudformation.stack import is_valid_change_set_name
from stackdeploy.deploy.cloudformation.templates import TemplateStackConfiguration
from tests.unit.conftest import (
    BASELINE_TEMPLATE,
    CHANGE_SET_ID,
    STACK_ID,
    STACK_NAME,
    client_error,
    stack_description,
)

NO_CHANGES_REASON = (
    "The submitted information didn't contain changes. "
    "Submit different information to create a change set."
)
CHANGE_SET_STR = f"name={CHANGE_SET_ID}, stackID={STACK_ID}"


def api_calls(client: MagicMock, *names: str) -> list[str]:
    """Returns the names of the calls to the given client methods, in call order."""
    return [name for name, _, _ in client.mock_calls if name in names]


def waiter_error(name: str = "ChangeSetCreateComplete") -> WaiterError:
    return WaiterError(
        name=name, reason="Waiter encountered a terminal failure state", last_response={}
    )


def stack_missing_error():
    return client_error("ValidationError", f"Stack with id {STACK_NAME} does not exist")


@pytest.fixture
def deployer(cfn_client, template_source):
    return CloudFormation(cfn_client, template_source=template_source)


class TestCreate:
    def test_create_new_stack(self, deployer, cfn_client, waiters, stack_config):
        cfn_client.describe_stacks.side_effect = [
            stack_missing_error(),
            {"Stacks": [stack_description("CREATE_COMPLETE")]},
        ]

        deployer.create(stack_config)

        kwargs = cfn_client.create_change_set.call_args.kwargs
        assert kwargs["StackName"] == STACK_NAME
        assert kwargs["ChangeSetType"] == "CREATE"
        assert kwargs["TemplateBody"] == stack_config.template()
        assert kwargs["Capabilities"] == CAPABILITIES
        assert kwargs["Parameters"] == [
            {"ParameterKey": "ProjectName", "ParameterValue": "my-project"},
            {"ParameterKey": "EnvironmentName", "ParameterValue": "test"},
        ]
        assert kwargs["Tags"] == [
            {"Key": "stackdeploy-environment", "Value": "test"},
            {"Key": "stackdeploy-project", "Value": "my-project"},
        ]
        assert is_valid_change_set_name(kwargs["ChangeSetName"])

        waiters[WAITER_CHANGE_SET_CREATE_COMPLETE].wait.assert_called_once_with(
            ChangeSetName=CHANGE_SET_ID, StackName=STACK_ID, WaiterConfig=config.waiter_config()
        )
        cfn_client.describe_change_set.assert_called_once_with(
            ChangeSetName=CHANGE_SET_ID, StackName=STACK_ID
        )
        cfn_client.execute_change_set.assert_called_once_with(
            ChangeSetName=CHANGE_SET_ID, StackName=STACK_ID
        )
        waiters[WAITER_STACK_CREATE_COMPLETE].wait.assert_called_once_with(
            StackName=STACK_NAME, WaiterConfig=config.waiter_config()
        )
        assert api_calls(
            cfn_client,
            "describe_stacks",
            "create_change_set",
            "describe_change_set",
            "execute_change_set",
        ) == [
            "describe_stacks",
            "create_change_set",
            "describe_change_set",
            "execute_change_set",
            "describe_stacks",
        ]

    def test_create_when_describe_returns_no_stacks(self, deployer, cfn_client, stack_config):
        cfn_client.describe_stacks.side_effect = [
            {"Stacks": []},
            {"Stacks": [stack_description("CREATE_COMPLETE")]},
        ]

        deployer.create(stack_config)

        assert cfn_client.create_change_set.call_args.kwargs["ChangeSetType"] == "CREATE"
        cfn_client.execute_change_set.assert_called_once()

    def test_create_propagates_other_describe_errors(self, deployer, cfn_client, stack_config):
        error = client_error("AccessDenied", "not allowed")
        cfn_client.describe_stacks.side_effect = error

        with pytest.raises(type(error)) as e:
            deployer.create(stack_config)

        assert e.value is error
        cfn_client.create_change_set.assert_not_called()

    def test_create_propagates_other_validation_errors(self, deployer, cfn_client, stack_config):
        cfn_client.describe_stacks.side_effect = client_error(
            "ValidationError", "1 validation error detected: Value at 'stackName' failed"
        )

        with pytest.raises(Exception, match="1 validation error detected"):
            deployer.create(stack_config)

        cfn_client.create_change_set.assert_not_called()

    def test_create_recreates_rolled_back_stack(self, deployer, cfn_client, waiters, stack_config):
        cfn_client.describe_stacks.side_effect = [
            {"Stacks": [stack_description("ROLLBACK_COMPLETE")]},
            {"Stacks": [stack_description("CREATE_COMPLETE")]},
        ]

        deployer.create(stack_config)

        cfn_client.delete_stack.assert_called_once_with(StackName=STACK_NAME)
        waiters[WAITER_STACK_DELETE_COMPLETE].wait.assert_called_once_with(
            StackName=STACK_ID, WaiterConfig=config.waiter_config()
        )
        assert api_calls(
            cfn_client, "delete_stack", "create_change_set", "execute_change_set"
        ) == ["delete_stack", "create_change_set", "execute_change_set"]
        assert cfn_client.create_change_set.call_args.kwargs["ChangeSetType"] == "CREATE"

    def test_create_fails_if_rolled_back_stack_cannot_be_deleted(
        self, deployer, cfn_client, stack_config
    ):
        cfn_client.describe_stacks.return_value = {
            "Stacks": [stack_description("ROLLBACK_COMPLETE")]
        }
        cfn_client.delete_stack.side_effect = client_error("AccessDenied", "some error", "DeleteStack")

        with pytest.raises(
            StackDeletionFailed,
            match=f"cleaning up a previous failed stack: deleting stack {STACK_NAME}: .*some error",
        ):
            deployer.create(stack_config)

        cfn_client.create_change_set.assert_not_called()

    def test_create_fails_if_rolled_back_stack_deletion_does_not_complete(
        self, deployer, cfn_client, waiters, stack_config
    ):
        cfn_client.describe_stacks.return_value = {
            "Stacks": [stack_description("ROLLBACK_COMPLETE")]
        }
        waiters[WAITER_STACK_DELETE_COMPLETE].wait.side_effect = waiter_error("StackDeleteComplete")

        with pytest.raises(StackDeletionFailed, match="cleaning up a previous failed stack"):
            deployer.create(stack_config)

        cfn_client.create_change_set.assert_not_called()

    @pytest.mark.parametrize(
        "status", ["CREATE_IN_PROGRESS", "UPDATE_IN_PROGRESS", "UPDATE_ROLLBACK_IN_PROGRESS"]
    )
    def test_create_fails_for_stack_in_progress(self, deployer, cfn_client, stack_config, status):
        cfn_client.describe_stacks.return_value = {"Stacks": [stack_description(status)]}

        with pytest.raises(StackUpdateInProgress) as e:
            deployer.create(stack_config)

        assert str(e.value) == (
            f"stack {STACK_NAME} is currently being updated (status {status}) and cannot be deployed to"
        )
        assert e.value.status == status
        cfn_client.create_change_set.assert_not_called()

    @pytest.mark.parametrize("status", ["CREATE_COMPLETE", "UPDATE_COMPLETE", "UPDATE_ROLLBACK_FAILED"])
    def test_create_fails_for_existing_stack(self, deployer, cfn_client, stack_config, status):
        cfn_client.describe_stacks.return_value = {"Stacks": [stack_description(status)]}

        with pytest.raises(StackAlreadyExists, match=f"^stack {STACK_NAME} already exists$"):
            deployer.create(stack_config)

        cfn_client.create_change_set.assert_not_called()
        cfn_client.delete_stack.assert_not_called()

    def test_create_reports_failed_resources(self, deployer, cfn_client, waiters, stack_config):
        cfn_client.describe_stacks.side_effect = stack_missing_error()
        waiters[WAITER_STACK_CREATE_COMPLETE].wait.side_effect = waiter_error("StackCreateComplete")
        failed_event = {
            "LogicalResourceId": "Cluster",
            "ResourceType": "AWS::ECS::Cluster",
            "ResourceStatus": "CREATE_FAILED",
            "ResourceStatusReason": "Resource limit exceeded",
        }
        cfn_client.get_paginator.return_value.paginate.return_value = [
            {
                "StackEvents": [
                    {"LogicalResourceId": STACK_NAME, "ResourceStatus": "ROLLBACK_IN_PROGRESS"},
                    failed_event,
                ]
            }
        ]

        with pytest.raises(StackCreationFailed, match=f"failed to create stack {STACK_NAME}: ") as e:
            deployer.create(stack_config)

        assert e.value.events == [failed_event]
        assert isinstance(e.value.__cause__, WaiterError)
        cfn_client.get_paginator.assert_called_once_with("describe_stack_events")

    def test_create_fails_without_events_if_events_cannot_be_listed(
        self, deployer, cfn_client, waiters, stack_config
    ):
        cfn_client.describe_stacks.side_effect = stack_missing_error()
        waiters[WAITER_STACK_CREATE_COMPLETE].wait.side_effect = waiter_error("StackCreateComplete")
        cfn_client.get_paginator.return_value.paginate.side_effect = client_error(
            "Throttling", "Rate exceeded", "DescribeStackEvents"
        )

        with pytest.raises(StackCreationFailed) as e:
            deployer.create(stack_config)

        assert e.value.events == []

    def test_create_fails_if_created_stack_cannot_be_found(self, deployer, cfn_client, stack_config):
        cfn_client.describe_stacks.side_effect = [stack_missing_error(), {"Stacks": []}]

        with pytest.raises(StackNotFound, match=f"^failed to find a stack named {STACK_NAME}$"):
            deployer.create(stack_config)

        assert cfn_client.describe_stacks.call_args.kwargs == {"StackName": STACK_NAME}


class TestUpdate:
    def test_update_existing_stack(self, deployer, cfn_client, waiters, stack_config):
        cfn_client.describe_stacks.return_value = {"Stacks": [stack_description("UPDATE_COMPLETE")]}

        deployer.update(stack_config)

        assert cfn_client.create_change_set.call_args.kwargs["ChangeSetType"] == "UPDATE"
        cfn_client.execute_change_set.assert_called_once_with(
            ChangeSetName=CHANGE_SET_ID, StackName=STACK_ID
        )
        assert WAITER_STACK_CREATE_COMPLETE not in waiters
        assert WAITER_STACK_UPDATE_COMPLETE not in waiters

    def test_update_fails_for_stack_in_progress(self, deployer, cfn_client, stack_config):
        cfn_client.describe_stacks.return_value = {
            "Stacks": [stack_description("UPDATE_IN_PROGRESS")]
        }

        with pytest.raises(StackUpdateInProgress, match="status UPDATE_IN_PROGRESS"):
            deployer.update(stack_config)

        cfn_client.create_change_set.assert_not_called()

    def test_update_does_not_create_missing_stack(self, deployer, cfn_client, stack_config):
        error = stack_missing_error()
        cfn_client.describe_stacks.side_effect = error

        with pytest.raises(type(error)):
            deployer.update(stack_config)

        cfn_client.create_change_set.assert_not_called()

    def test_redeploy_without_changes_succeeds(self, deployer, cfn_client, waiters, stack_config):
        cfn_client.describe_stacks.return_value = {"Stacks": [stack_description("UPDATE_COMPLETE")]}
        waiters[WAITER_CHANGE_SET_CREATE_COMPLETE].wait.side_effect = waiter_error()
        cfn_client.describe_change_set.return_value = {
            "ExecutionStatus": "UNAVAILABLE",
            "Status": "FAILED",
            "StatusReason": NO_CHANGES_REASON,
            "Changes": [],
        }

        deployer.update(stack_config)

        cfn_client.execute_change_set.assert_not_called()
        cfn_client.delete_change_set.assert_called_once_with(
            ChangeSetName=CHANGE_SET_ID, StackName=STACK_ID
        )

    def test_wait_for_stack_update(self, deployer, cfn_client, waiters):
        cfn_client.describe_stacks.return_value = {
            "Stacks": [
                stack_description(
                    "UPDATE_COMPLETE", Outputs=[{"OutputKey": "ClusterName", "OutputValue": "c-1"}]
                )
            ]
        }

        stack = deployer.wait_for_stack_update(STACK_NAME)

        waiters[WAITER_STACK_UPDATE_COMPLETE].wait.assert_called_once_with(
            StackName=STACK_NAME, WaiterConfig=config.waiter_config()
        )
        assert stack.status == "UPDATE_COMPLETE"
        assert stack.outputs == {"ClusterName": "c-1"}

    def test_wait_for_stack_update_fails(self, deployer, cfn_client, waiters):
        waiters[WAITER_STACK_UPDATE_COMPLETE].wait.side_effect = waiter_error("StackUpdateComplete")
        cfn_client.get_paginator.return_value.paginate.return_value = [{"StackEvents": []}]

        with pytest.raises(StackUpdateFailed, match=f"failed to update stack {STACK_NAME}"):
            deployer.wait_for_stack_update(STACK_NAME)


class TestDeploy:
    def test_deploy_fails_if_change_set_cannot_be_created(self, deployer, cfn_client, stack_config):
        cause = client_error("ValidationError", "Template format error", "CreateChangeSet")
        cfn_client.create_change_set.side_effect = cause

        with pytest.raises(
            ChangeSetCreationFailed,
            match=f"^failed to create changeSet for stack {STACK_NAME}: .*Template format error",
        ) as e:
            deployer.deploy(stack_config, "UPDATE")

        assert e.value.__cause__ is cause
        cfn_client.execute_change_set.assert_not_called()

    def test_deploy_uses_baseline_template_without_template(self, deployer, cfn_client):
        stack_config = TemplateStackConfiguration(STACK_NAME)

        deployer.deploy(stack_config, "UPDATE")

        assert cfn_client.create_change_set.call_args.kwargs["TemplateBody"] == BASELINE_TEMPLATE

    def test_deploy_generates_unique_change_set_names(self, deployer, cfn_client, stack_config):
        deployer.deploy(stack_config, "UPDATE")
        deployer.deploy(stack_config, "UPDATE")

        names = [c.kwargs["ChangeSetName"] for c in cfn_client.create_change_set.call_args_list]
        assert len(set(names)) == 2
        for name in names:
            assert is_valid_change_set_name(name)
            assert name.startswith(f"{config.CHANGE_SET_NAME_PREFIX}-{STACK_NAME}-")

    def test_deploy_uses_custom_change_set_name_prefix(self, cfn_client, template_source, stack_config):
        deployer = CloudFormation(
            cfn_client, template_source=template_source, change_set_name_prefix="ci"
        )

        deployer.deploy(stack_config, "UPDATE")

        assert cfn_client.create_change_set.call_args.kwargs["ChangeSetName"].startswith(
            f"ci-{STACK_NAME}-"
        )

    def test_deploy_fails_if_wait_fails_for_other_reasons(
        self, deployer, cfn_client, waiters, stack_config
    ):
        cause = waiter_error()
        waiters[WAITER_CHANGE_SET_CREATE_COMPLETE].wait.side_effect = cause
        cfn_client.describe_change_set.return_value = {
            "ExecutionStatus": "UNAVAILABLE",
            "Status": "FAILED",
            "StatusReason": "Template error: unresolved resource dependencies [Vpc]",
        }

        with pytest.raises(
            ChangeSetWaitFailed,
            match=re.escape(f"failed to wait for changeSet creation {CHANGE_SET_STR}: "),
        ) as e:
            deployer.deploy(stack_config, "UPDATE")

        assert e.value.__cause__ is cause
        assert e.value.change_set.name == CHANGE_SET_ID
        cfn_client.execute_change_set.assert_not_called()

    def test_wait_failure_reports_change_set_status_reason(
        self, deployer, cfn_client, waiters, stack_config
    ):
        reason = "Template error: unresolved resource dependencies [Vpc]"
        waiters[WAITER_CHANGE_SET_CREATE_COMPLETE].wait.side_effect = waiter_error()
        cfn_client.describe_change_set.return_value = {
            "ExecutionStatus": "UNAVAILABLE",
            "Status": "FAILED",
            "StatusReason": reason,
        }

        with pytest.raises(ChangeSetWaitFailed) as e:
            deployer.deploy(stack_config, "UPDATE")

        assert e.value.change_set.status_reason == reason
        assert e.value.change_set.execution_status == "UNAVAILABLE"
        assert e.value.change_set.stack_id == STACK_ID
        assert str(e.value).endswith(f"(execution status UNAVAILABLE, reason {reason})")

    def test_deploy_fails_if_wait_fails_and_change_set_cannot_be_described(
        self, deployer, cfn_client, waiters, stack_config
    ):
        waiters[WAITER_CHANGE_SET_CREATE_COMPLETE].wait.side_effect = waiter_error()
        cfn_client.describe_change_set.side_effect = client_error(
            "ChangeSetNotFound", "ChangeSet does not exist", "DescribeChangeSet"
        )

        with pytest.raises(ChangeSetWaitFailed):
            deployer.deploy(stack_config, "UPDATE")

    @pytest.mark.parametrize(
        "reason",
        [
            "No updates are to be performed.",
            NO_CHANGES_REASON,
            "THE SUBMITTED INFORMATION DIDN'T CONTAIN CHANGES.",
        ],
    )
    def test_deploy_skips_change_set_without_changes(
        self, deployer, cfn_client, waiters, stack_config, reason
    ):
        cfn_client.describe_change_set.return_value = {
            "ExecutionStatus": "UNAVAILABLE",
            "StatusReason": reason,
        }

        deployer.deploy(stack_config, "UPDATE")

        cfn_client.execute_change_set.assert_not_called()
        cfn_client.delete_change_set.assert_called_once_with(
            ChangeSetName=CHANGE_SET_ID, StackName=STACK_ID
        )

    def test_deploy_skips_empty_change_set_without_reason(self, deployer, cfn_client, stack_config):
        cfn_client.describe_change_set.return_value = {
            "ExecutionStatus": "UNAVAILABLE",
            "Changes": [],
        }

        deployer.deploy(stack_config, "UPDATE")

        cfn_client.execute_change_set.assert_not_called()

    def test_deploy_ignores_failed_cleanup_of_change_set_without_changes(
        self, deployer, cfn_client, stack_config
    ):
        cfn_client.describe_change_set.return_value = {
            "ExecutionStatus": "UNAVAILABLE",
            "StatusReason": "No updates are to be performed.",
        }
        cfn_client.delete_change_set.side_effect = client_error(
            "InvalidChangeSetStatus", "cannot delete", "DeleteChangeSet"
        )

        deployer.deploy(stack_config, "UPDATE")

        cfn_client.execute_change_set.assert_not_called()

    def test_deploy_fails_for_change_set_that_is_not_executable(
        self, deployer, cfn_client, stack_config
    ):
        cfn_client.describe_change_set.return_value = {
            "ExecutionStatus": "UNAVAILABLE",
            "StatusReason": "some other reason",
            "Changes": [{"Type": "Resource"}],
        }

        with pytest.raises(NotExecutableChangeSet) as e:
            deployer.deploy(stack_config, "UPDATE")

        assert str(e.value) == (
            f"cannot execute change set {CHANGE_SET_STR} because status is UNAVAILABLE "
            f"with reason some other reason"
        )
        assert e.value.execution_status == "UNAVAILABLE"
        assert e.value.status_reason == "some other reason"
        assert e.value.change_set.stack_id == STACK_ID
        cfn_client.execute_change_set.assert_not_called()
        cfn_client.delete_change_set.assert_not_called()

    def test_deploy_fails_if_change_set_cannot_be_described(self, deployer, cfn_client, stack_config):
        cfn_client.describe_change_set.side_effect = client_error(
            "Throttling", "Rate exceeded", "DescribeChangeSet"
        )

        with pytest.raises(
            ChangeSetDescribeFailed,
            match=re.escape(f"failed to describe changeSet {CHANGE_SET_STR}: "),
        ):
            deployer.deploy(stack_config, "UPDATE")

        cfn_client.execute_change_set.assert_not_called()

    def test_deploy_fails_if_change_set_cannot_be_executed(self, deployer, cfn_client, stack_config):
        cfn_client.execute_change_set.side_effect = client_error(
            "InsufficientCapabilities", "Requires capabilities", "ExecuteChangeSet"
        )

        with pytest.raises(
            ChangeSetExecuteFailed,
            match=re.escape(f"failed to execute changeSet {CHANGE_SET_STR}: "),
        ):
            deployer.deploy(stack_config, "UPDATE")

    def test_deploy_logs_carry_the_stack_name(self, deployer, cfn_client, stack_config, caplog):
        with caplog.at_level(logging.INFO, logger="stackdeploy"):
            deployer.deploy(stack_config, "UPDATE")

        created = [r for r in caplog.records if r.getMessage().startswith("Created UPDATE change set")]
        assert len(created) == 1
        assert created[0].stack_name == STACK_NAME

    def test_deploy_follows_change_set_pages(self, deployer, cfn_client, stack_config):
        cfn_client.describe_change_set.side_effect = [
            {"ExecutionStatus": "AVAILABLE", "Changes": [{"Type": "Resource"}], "NextToken": "t1"},
            {"ExecutionStatus": "AVAILABLE", "Changes": [{"Type": "Resource"}]},
        ]

        deployer.deploy(stack_config, "UPDATE")

        assert cfn_client.describe_change_set.call_args_list[1].kwargs == {
            "ChangeSetName": CHANGE_SET_ID,
            "StackName": STACK_ID,
            "NextToken": "t1",
        }
        cfn_client.execute_change_set.assert_called_once()


class TestDelete:
    def test_delete_stack(self, deployer, cfn_client, waiters):
        deployer.delete(STACK_NAME)

        cfn_client.delete_stack.assert_called_once_with(StackName=STACK_NAME)
        waiters[WAITER_STACK_DELETE_COMPLETE].wait.assert_called_once_with(
            StackName=STACK_ID, WaiterConfig=config.waiter_config()
        )

    def test_delete_missing_stack_does_nothing(self, deployer, cfn_client):
        cfn_client.describe_stacks.side_effect = stack_missing_error()

        deployer.delete(STACK_NAME)

        cfn_client.delete_stack.assert_not_called()

    def test_delete_fails(self, deployer, cfn_client, waiters):
        waiters[WAITER_STACK_DELETE_COMPLETE].wait.side_effect = waiter_error("StackDeleteComplete")

        with pytest.raises(StackDeletionFailed, match=f"^deleting stack {STACK_NAME}: "):
            deployer.delete(STACK_NAME)


class TestDescribe:
    def test_describe_stack(self, deployer, cfn_client):
        cfn_client.describe_stacks.return_value = {
            "Stacks": [stack_description("UPDATE_ROLLBACK_COMPLETE", StackStatusReason="reason")]
        }

        stack = deployer.describe_stack(STACK_NAME)

        assert stack.id == STACK_ID
        assert stack.name == STACK_NAME
        assert stack.status == "UPDATE_ROLLBACK_COMPLETE"
        assert stack.status_reason == "reason"
        assert not stack.in_progress
        assert not stack.terminal_failure

    def test_stack_events_are_paginated(self, deployer, cfn_client):
        cfn_client.get_paginator.return_value.paginate.return_value = [
            {"StackEvents": [{"EventId": "1"}, {"EventId": "2"}]},
            {"StackEvents": [{"EventId": "3"}]},
        ]

        events = deployer.stack_events(STACK_NAME)

        assert [e["EventId"] for e in events] == ["1", "2", "3"]
        cfn_client.get_paginator.return_value.paginate.assert_called_once_with(StackName=STACK_NAME)


def test_from_client_factory(cfn_client):
    factory = MagicMock()
    factory.return_value.cloudformation = cfn_client

    deployer = CloudFormation.from_client_factory(factory, region_name="eu-west-1")

    factory.assert_called_once_with(region_name="eu-west-1")
    assert deployer.client is cfn_client
