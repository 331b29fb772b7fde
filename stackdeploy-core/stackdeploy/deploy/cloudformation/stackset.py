"""
Deployment of CloudFormation stack sets.

Stack set operations have no native boto3 waiter, they are polled until they reach a terminal status.
"""
import logging
from typing import Iterable, Optional

from botocore.exceptions import ClientError

from stackdeploy import config as stackdeploy_config
from stackdeploy.aws.api.cloudformation import (
    Parameters,
    StackSetOperationResultStatus,
    StackSetOperationResultSummary,
    Tags,
)
from stackdeploy.aws.connect import ClientFactory, connect_to
from stackdeploy.deploy.cloudformation import status
from stackdeploy.deploy.cloudformation.deployer import CAPABILITIES
from stackdeploy.deploy.cloudformation.errors import (
    StackSetOperationFailed,
    StackSetOperationTimeout,
)
from stackdeploy.deploy.cloudformation.stack import CloudFormationClient, StackSetConfiguration
from stackdeploy.deploy.cloudformation.templates import (
    PROJECT_TEMPLATE_PATH,
    PackagedTemplateSource,
    TemplateSource,
)
from stackdeploy.logging.format import stack_context
from stackdeploy.utils.strings import long_uid
from stackdeploy.utils.sync import poll_condition

LOG = logging.getLogger(__name__)


class StackSetOrchestrator:
    """Creates and updates stack sets, and their stack instances across accounts and regions."""

    def __init__(
        self,
        client: CloudFormationClient,
        poll_interval: Optional[float] = None,
        timeout: Optional[float] = None,
        template_source: Optional[TemplateSource] = None,
    ):
        """
        :param client: the CloudFormation client
        :param poll_interval: seconds between two polls of an operation, defaults to ``STACK_SET_POLL_INTERVAL``
        :param timeout: seconds to wait for an operation, defaults to ``STACK_SET_OPERATION_TIMEOUT``
        :param template_source: source of the baseline template ``project/cf.yml``, used for configurations
            without a template
        """
        self.client = client
        self.template_source = template_source or PackagedTemplateSource()
        self.poll_interval = (
            poll_interval if poll_interval is not None else stackdeploy_config.STACK_SET_POLL_INTERVAL
        )
        self.timeout = timeout if timeout is not None else stackdeploy_config.STACK_SET_OPERATION_TIMEOUT

    @classmethod
    def from_client_factory(
        cls, factory: ClientFactory = None, region_name: str = None, **kwargs
    ) -> "StackSetOrchestrator":
        factory = factory or connect_to
        return cls(factory(region_name=region_name).cloudformation, **kwargs)

    def describe_stack_set(self, stack_set_name: str) -> dict:
        return self.client.describe_stack_set(StackSetName=stack_set_name)["StackSet"]

    def list_stack_instances(self, stack_set_name: str) -> list[dict]:
        paginator = self.client.get_paginator("list_stack_instances")
        instances = []
        for page in paginator.paginate(StackSetName=stack_set_name):
            instances.extend(page.get("Summaries") or [])
        return instances

    def deploy_stack_set(self, stack_set_config: StackSetConfiguration) -> Optional[str]:
        """
        Create the stack set, or update it if its definition changed.

        :returns: the id of the update operation, or None if the stack set was created or is up to date
        :raises StackSetOperationFailed: if the update operation did not succeed
        """
        stack_set_name = stack_set_config.stack_set_name()
        template = stack_set_config.template() or self.template_source.get(PROJECT_TEMPLATE_PATH)
        parameters = stack_set_config.parameters()
        tags = stack_set_config.tags()

        try:
            current = self.describe_stack_set(stack_set_name)
        except ClientError as e:
            if not (status.stack_set_does_not_exist(e) or status.stack_does_not_exist(e)):
                raise
            LOG.info("Creating stack set %s", stack_set_name, extra=stack_context(stack_set_name))
            self.client.create_stack_set(
                **self._stack_set_kwargs(stack_set_config, template, parameters, tags)
            )
            return None

        if _is_up_to_date(current, template, parameters, tags):
            LOG.info(
                "No changes to deploy for stack set %s",
                stack_set_name,
                extra=stack_context(stack_set_name),
            )
            return None

        operation_id = long_uid()
        LOG.info(
            "Updating stack set %s (operation %s)",
            stack_set_name,
            operation_id,
            extra=stack_context(stack_set_name),
        )
        self.client.update_stack_set(
            OperationId=operation_id,
            **self._stack_set_kwargs(stack_set_config, template, parameters, tags),
        )
        self.wait_for_stack_set_operation(stack_set_name, operation_id)
        return operation_id

    def create_stack_instances(
        self, stack_set_name: str, accounts: Iterable[str], regions: Iterable[str]
    ) -> list[str]:
        """
        Create the stack instances of the given accounts and regions which do not exist yet.

        Accounts missing the same regions share one operation. Each operation is waited for.

        :returns: the ids of the started operations, empty if all instances exist already
        """
        regions = list(dict.fromkeys(regions))
        existing = {
            (instance.get("Account"), instance.get("Region"))
            for instance in self.list_stack_instances(stack_set_name)
        }

        missing: dict[tuple[str, ...], list[str]] = {}
        for account in dict.fromkeys(accounts):
            missing_regions = tuple(r for r in regions if (account, r) not in existing)
            if missing_regions:
                missing.setdefault(missing_regions, []).append(account)

        if not missing:
            LOG.debug("All stack instances of stack set %s exist already", stack_set_name)
            return []

        operation_ids = []
        for missing_regions, missing_accounts in missing.items():
            operation_id = long_uid()
            LOG.info(
                "Creating stack instances of stack set %s for accounts %s in regions %s (operation %s)",
                stack_set_name,
                ", ".join(missing_accounts),
                ", ".join(missing_regions),
                operation_id,
            )
            self.client.create_stack_instances(
                StackSetName=stack_set_name,
                Accounts=missing_accounts,
                Regions=list(missing_regions),
                OperationId=operation_id,
            )
            self.wait_for_stack_set_operation(stack_set_name, operation_id)
            operation_ids.append(operation_id)
        return operation_ids

    def wait_for_stack_set_operation(self, stack_set_name: str, operation_id: str) -> None:
        """
        Block until the operation is ``SUCCEEDED``, ``FAILED`` or ``STOPPED``.

        :raises StackSetOperationFailed: if the operation ended in any status other than ``SUCCEEDED``
        :raises StackSetOperationTimeout: if the operation did not end within the configured timeout
        """
        last_status = {}

        def _is_terminal() -> bool:
            operation = self.client.describe_stack_set_operation(
                StackSetName=stack_set_name, OperationId=operation_id
            )["StackSetOperation"]
            last_status["status"] = operation.get("Status")
            LOG.debug(
                "Operation %s of stack set %s has status %s",
                operation_id,
                stack_set_name,
                last_status["status"],
            )
            return status.is_stack_set_operation_terminal(last_status["status"])

        if not poll_condition(_is_terminal, timeout=self.timeout, interval=self.poll_interval):
            raise StackSetOperationTimeout(
                stack_set_name, operation_id, last_status.get("status"), self.timeout
            )

        operation_status = last_status["status"]
        if not status.is_stack_set_operation_success(operation_status):
            raise StackSetOperationFailed(
                stack_set_name,
                operation_id,
                operation_status,
                results=self._unsuccessful_results(stack_set_name, operation_id),
            )
        LOG.info(
            "Operation %s of stack set %s succeeded",
            operation_id,
            stack_set_name,
            extra=stack_context(stack_set_name),
        )

    def _stack_set_kwargs(
        self, stack_set_config: StackSetConfiguration, template: str, parameters: Parameters, tags: Tags
    ) -> dict:
        kwargs = {
            "StackSetName": stack_set_config.stack_set_name(),
            "TemplateBody": template,
            "Parameters": parameters,
            "Tags": tags,
            "Capabilities": CAPABILITIES,
        }
        if administration_role_arn := stack_set_config.administration_role_arn():
            kwargs["AdministrationRoleARN"] = administration_role_arn
        if execution_role_name := stack_set_config.execution_role_name():
            kwargs["ExecutionRoleName"] = execution_role_name
        return kwargs

    def _unsuccessful_results(
        self, stack_set_name: str, operation_id: str
    ) -> list[StackSetOperationResultSummary]:
        try:
            paginator = self.client.get_paginator("list_stack_set_operation_results")
            results = []
            for page in paginator.paginate(StackSetName=stack_set_name, OperationId=operation_id):
                results.extend(page.get("Summaries") or [])
        except Exception:
            LOG.warning(
                "Unable to list the results of operation %s of stack set %s",
                operation_id,
                stack_set_name,
                exc_info=LOG.isEnabledFor(logging.DEBUG),
            )
            return []
        return [r for r in results if r.get("Status") != StackSetOperationResultStatus.SUCCEEDED]


def _is_up_to_date(current: dict, template: str, parameters: Parameters, tags: Tags) -> bool:
    """Whether the described stack set already has the given template, parameters and tags."""
    if current.get("TemplateBody") != template:
        return False
    current_parameters = {
        p.get("ParameterKey"): p.get("ParameterValue") for p in current.get("Parameters") or []
    }
    if current_parameters != {p.get("ParameterKey"): p.get("ParameterValue") for p in parameters}:
        return False
    current_tags = {t.get("Key"): t.get("Value") for t in current.get("Tags") or []}
    return current_tags == {t.get("Key"): t.get("Value") for t in tags}
