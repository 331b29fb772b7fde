"""
Deployment of single CloudFormation stacks through change sets.

Every deployment creates a fresh change set, waits until the provider computed it, and executes it only if it
contains changes. A change set without changes is deleted again and the deployment counts as successful.
"""
import logging
from typing import Optional

from botocore.exceptions import ClientError

from stackdeploy import config as stackdeploy_config
from stackdeploy.aws.api.cloudformation import Capability, ChangeSetType, StackEvents, StackStatus
from stackdeploy.aws.connect import ClientFactory, connect_to
from stackdeploy.deploy.cloudformation import status
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
from stackdeploy.deploy.cloudformation.stack import (
    ChangeSet,
    CloudFormationClient,
    Stack,
    StackConfiguration,
    failed_resource_events,
    format_events,
    generate_change_set_name,
)
from stackdeploy.deploy.cloudformation.templates import (
    ENV_TEMPLATE_PATH,
    PackagedTemplateSource,
    TemplateSource,
)
from stackdeploy.logging.format import stack_context

LOG = logging.getLogger(__name__)

WAITER_CHANGE_SET_CREATE_COMPLETE = "change_set_create_complete"
WAITER_STACK_CREATE_COMPLETE = "stack_create_complete"
WAITER_STACK_UPDATE_COMPLETE = "stack_update_complete"
WAITER_STACK_DELETE_COMPLETE = "stack_delete_complete"

CAPABILITIES = [
    Capability.CAPABILITY_IAM,
    Capability.CAPABILITY_NAMED_IAM,
    Capability.CAPABILITY_AUTO_EXPAND,
]


class CloudFormation:
    """
    Deploys stacks with the two-phase change set protocol.

    All operations block until the remote operation is terminal. The deployer keeps no state between calls, so one
    instance can deploy different stacks from multiple threads. Concurrent deployments of the *same* stack are only
    guarded by a point-in-time status check, the provider rejects the loser.
    """

    client: CloudFormationClient
    template_source: TemplateSource

    def __init__(
        self,
        client: CloudFormationClient,
        template_source: Optional[TemplateSource] = None,
        change_set_name_prefix: Optional[str] = None,
    ):
        """
        :param client: the CloudFormation client, e.g. ``connect_to().cloudformation``
        :param template_source: source of the baseline template, used for configurations without a template
        :param change_set_name_prefix: prefix of generated change set names, defaults to ``CHANGE_SET_NAME_PREFIX``
        """
        self.client = client
        self.template_source = template_source or PackagedTemplateSource()
        self.change_set_name_prefix = change_set_name_prefix

    @classmethod
    def from_client_factory(
        cls, factory: ClientFactory = None, region_name: str = None, **kwargs
    ) -> "CloudFormation":
        factory = factory or connect_to
        return cls(factory(region_name=region_name).cloudformation, **kwargs)

    def create(self, stack_config: StackConfiguration) -> None:
        """
        Provision a new stack.

        A stack left in ``ROLLBACK_COMPLETE`` by a failed first creation is deleted and created again.

        :raises StackUpdateInProgress: if another operation is running against the stack
        :raises StackAlreadyExists: if the stack exists in any other state
        """
        stack_name = stack_config.stack_name()
        try:
            stack = self.describe_stack(stack_name)
        except (ClientError, StackNotFound) as e:
            if not status.stack_does_not_exist(e):
                raise
            LOG.debug("Stack %s does not exist yet, creating it", stack_name)
            return self.deploy(stack_config, ChangeSetType.CREATE)

        if stack.status == StackStatus.ROLLBACK_COMPLETE:
            LOG.info(
                "Stack %s failed to create previously (status %s), deleting it before creating it again",
                stack_name,
                stack.status,
                extra=stack_context(stack_name),
            )
            self._delete_stack(
                stack, message=f"cleaning up a previous failed stack: deleting stack {stack_name}"
            )
            return self.deploy(stack_config, ChangeSetType.CREATE)

        if stack.in_progress:
            raise StackUpdateInProgress(stack_name, stack.status)
        raise StackAlreadyExists(stack_name)

    def update(self, stack_config: StackConfiguration) -> None:
        """
        Converge an existing stack to the given configuration.

        :raises StackUpdateInProgress: if another operation is running against the stack
        :raises ClientError: if the stack does not exist, stacks are never created by an update
        """
        stack_name = stack_config.stack_name()
        stack = self.describe_stack(stack_name)
        if stack.in_progress:
            raise StackUpdateInProgress(stack_name, stack.status)
        return self.deploy(stack_config, ChangeSetType.UPDATE)

    def deploy(self, stack_config: StackConfiguration, change_set_type: str) -> None:
        """
        Create a change set of the given type for the stack, and execute it if it contains changes.

        For ``CREATE`` change sets, this also waits until the stack has been created. For ``UPDATE`` change sets, the
        execution is the last step; use ``wait_for_stack_update`` to wait for the stack.
        """
        stack_name = stack_config.stack_name()
        change_set = self._create_change_set(stack_config, change_set_type)

        try:
            self._wait_for_change_set_creation(change_set)
        except Exception as e:
            # the waiter also fails for change sets without changes, the description tells them apart
            LOG.debug("Waiting for change set %s failed, describing it: %s", change_set, e)
            try:
                described = self._describe_change_set(change_set)
            except ChangeSetDescribeFailed as describe_error:
                LOG.debug("Unable to describe change set %s: %s", change_set, describe_error)
                raise ChangeSetWaitFailed(change_set, e) from e
            if not described.is_no_op:
                raise ChangeSetWaitFailed(described, e) from e
            self._skip_no_op_change_set(stack_name, described)
            return

        change_set = self._describe_change_set(change_set)
        if change_set.is_no_op:
            self._skip_no_op_change_set(stack_name, change_set)
            return
        if not change_set.is_available:
            raise NotExecutableChangeSet(change_set)

        self._execute_change_set(change_set)

        if change_set_type == ChangeSetType.CREATE:
            self.wait_for_stack_creation(stack_name)

    def delete(self, stack_name: str) -> None:
        """
        Delete the stack and wait until it is gone. Deleting a stack that does not exist does nothing.
        """
        try:
            stack = self.describe_stack(stack_name)
        except (ClientError, StackNotFound) as e:
            if not status.stack_does_not_exist(e):
                raise
            LOG.debug("Stack %s does not exist, nothing to delete", stack_name)
            return
        self._delete_stack(stack)

    def describe_stack(self, stack_name: str) -> Stack:
        """
        :raises StackNotFound: if the provider returns no stack
        :raises ClientError: any error of the provider, e.g. a validation error if the stack does not exist
        """
        response = self.client.describe_stacks(StackName=stack_name)
        stacks = response.get("Stacks") or []
        if not stacks:
            raise StackNotFound(stack_name)
        stack = Stack.from_description(stacks[0])
        stack.name = stack.name or stack_name
        return stack

    def stack_events(self, stack_name: str) -> StackEvents:
        """Returns all events of the stack, newest first."""
        paginator = self.client.get_paginator("describe_stack_events")
        events = []
        for page in paginator.paginate(StackName=stack_name):
            events.extend(page.get("StackEvents") or [])
        return events

    def wait_for_stack_creation(self, stack_name: str) -> Stack:
        try:
            self.client.get_waiter(WAITER_STACK_CREATE_COMPLETE).wait(
                StackName=stack_name, WaiterConfig=stackdeploy_config.waiter_config()
            )
        except Exception as e:
            raise StackCreationFailed(stack_name, e, self._failed_events(stack_name)) from e
        stack = self.describe_stack(stack_name)
        LOG.info(
            "Stack %s created (status %s)", stack_name, stack.status, extra=stack_context(stack_name)
        )
        return stack

    def wait_for_stack_update(self, stack_name: str) -> Stack:
        try:
            self.client.get_waiter(WAITER_STACK_UPDATE_COMPLETE).wait(
                StackName=stack_name, WaiterConfig=stackdeploy_config.waiter_config()
            )
        except Exception as e:
            raise StackUpdateFailed(stack_name, e, self._failed_events(stack_name)) from e
        stack = self.describe_stack(stack_name)
        LOG.info(
            "Stack %s updated (status %s)", stack_name, stack.status, extra=stack_context(stack_name)
        )
        return stack

    def _template_body(self, stack_config: StackConfiguration) -> str:
        template = stack_config.template()
        if template:
            return template
        LOG.debug(
            "No template for stack %s, using the baseline template %s",
            stack_config.stack_name(),
            ENV_TEMPLATE_PATH,
        )
        return self.template_source.get(ENV_TEMPLATE_PATH)

    def _create_change_set(self, stack_config: StackConfiguration, change_set_type: str) -> ChangeSet:
        stack_name = stack_config.stack_name()
        change_set_name = generate_change_set_name(
            stack_name, self.change_set_name_prefix or stackdeploy_config.CHANGE_SET_NAME_PREFIX
        )
        template_body = self._template_body(stack_config)

        try:
            response = self.client.create_change_set(
                StackName=stack_name,
                ChangeSetName=change_set_name,
                TemplateBody=template_body,
                Parameters=stack_config.parameters(),
                Tags=stack_config.tags(),
                ChangeSetType=change_set_type,
                Capabilities=CAPABILITIES,
            )
        except Exception as e:
            raise ChangeSetCreationFailed(stack_name, e) from e

        change_set = ChangeSet(name=response["Id"], stack_id=response["StackId"])
        LOG.info(
            "Created %s change set %s for stack %s",
            change_set_type,
            change_set_name,
            stack_name,
            extra=stack_context(stack_name),
        )
        return change_set

    def _wait_for_change_set_creation(self, change_set: ChangeSet) -> None:
        LOG.debug("Waiting for change set %s to be created", change_set)
        self.client.get_waiter(WAITER_CHANGE_SET_CREATE_COMPLETE).wait(
            ChangeSetName=change_set.name,
            StackName=change_set.stack_id,
            WaiterConfig=stackdeploy_config.waiter_config(),
        )

    def _describe_change_set(self, change_set: ChangeSet) -> ChangeSet:
        """Returns a copy of the change set with its status, status reason, and all of its changes."""
        kwargs = {"ChangeSetName": change_set.name, "StackName": change_set.stack_id}
        changes = []
        try:
            while True:
                response = self.client.describe_change_set(**kwargs)
                changes.extend(response.get("Changes") or [])
                next_token = response.get("NextToken")
                if not next_token:
                    break
                kwargs["NextToken"] = next_token
        except Exception as e:
            raise ChangeSetDescribeFailed(change_set, e) from e

        described = ChangeSet(
            name=change_set.name,
            stack_id=change_set.stack_id,
            execution_status=response.get("ExecutionStatus"),
            status_reason=response.get("StatusReason"),
            changes=changes,
        )
        LOG.debug(
            "Change set %s has execution status %s (%s) with %d changes",
            described,
            described.execution_status,
            described.status_reason,
            len(changes),
        )
        return described

    def _execute_change_set(self, change_set: ChangeSet) -> None:
        try:
            self.client.execute_change_set(
                ChangeSetName=change_set.name, StackName=change_set.stack_id
            )
        except Exception as e:
            raise ChangeSetExecuteFailed(change_set, e) from e
        LOG.info("Executing change set %s with %d changes", change_set, len(change_set.changes or []))

    def _skip_no_op_change_set(self, stack_name: str, change_set: ChangeSet) -> None:
        LOG.info(
            "No changes to deploy for stack %s (%s), deleting change set",
            stack_name,
            change_set.status_reason or "empty change set",
            extra=stack_context(stack_name),
        )
        try:
            self.client.delete_change_set(
                ChangeSetName=change_set.name, StackName=change_set.stack_id
            )
        except Exception:
            LOG.warning(
                "Failed to delete change set %s without changes",
                change_set,
                exc_info=LOG.isEnabledFor(logging.DEBUG),
            )

    def _delete_stack(self, stack: Stack, message: str = None) -> None:
        try:
            self.client.delete_stack(StackName=stack.name)
            self.client.get_waiter(WAITER_STACK_DELETE_COMPLETE).wait(
                StackName=stack.id or stack.name, WaiterConfig=stackdeploy_config.waiter_config()
            )
        except Exception as e:
            raise StackDeletionFailed(stack.name, e, message=message) from e
        LOG.info("Deleted stack %s", stack.name, extra=stack_context(stack.name))

    def _failed_events(self, stack_name: str) -> StackEvents:
        """Returns the events of failed resources, to report why a stack operation failed."""
        try:
            events = failed_resource_events(self.stack_events(stack_name))
        except Exception:
            LOG.warning(
                "Unable to retrieve the events of stack %s",
                stack_name,
                exc_info=LOG.isEnabledFor(logging.DEBUG),
            )
            return []
        if events:
            LOG.info("Failed resources of stack %s:\n%s", stack_name, format_events(events))
        return events
