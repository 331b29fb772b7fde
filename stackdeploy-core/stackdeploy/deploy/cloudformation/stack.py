"""
Models and capability interfaces of the CloudFormation deployers.

The deployers only depend on the narrow protocols below, so they can be driven by a real boto3 client as well as by
test doubles, and so the layer producing templates and parameters can vary independently.
"""
import re
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from stackdeploy.aws.api.cloudformation import (
    ExecutionStatus,
    Parameters,
    StackEvents,
    Tags,
)
from stackdeploy.deploy.cloudformation import status
from stackdeploy.utils.strings import short_uid, to_resource_name_part

# A change set name can contain only alphanumeric, case sensitive characters
# and hyphens. It must start with an alphabetic character and cannot exceed
# 128 characters.
CHANGE_SET_NAME_MAX_LENGTH = 128
CHANGE_SET_NAME_PATTERN = re.compile(r"^[A-Za-z][-A-Za-z0-9]{0,127}$")


class StackConfiguration(Protocol):
    """A stack to deploy. Implementations must not change their values during a deployment."""

    def stack_name(self) -> str:
        ...

    def template(self) -> str:
        """
        Returns the template body of the stack. An empty body selects the baseline template of the template source.

        :raises Exception: if the template cannot be produced
        """
        ...

    def parameters(self) -> Parameters:
        ...

    def tags(self) -> Tags:
        ...


class StackSetConfiguration(Protocol):
    """A stack set to deploy, replicated as stack instances across accounts and regions."""

    def stack_set_name(self) -> str:
        ...

    def template(self) -> str:
        ...

    def parameters(self) -> Parameters:
        ...

    def tags(self) -> Tags:
        ...

    def administration_role_arn(self) -> Optional[str]:
        ...

    def execution_role_name(self) -> Optional[str]:
        ...


class Waiter(Protocol):
    def wait(self, **kwargs) -> None:
        ...


class CloudFormationClient(Protocol):
    """
    The CloudFormation operations used by the deployers, named and shaped like the boto3 client methods.
    """

    def create_change_set(self, **kwargs) -> dict[str, Any]:
        ...

    def describe_change_set(self, **kwargs) -> dict[str, Any]:
        ...

    def execute_change_set(self, **kwargs) -> dict[str, Any]:
        ...

    def delete_change_set(self, **kwargs) -> dict[str, Any]:
        ...

    def describe_stacks(self, **kwargs) -> dict[str, Any]:
        ...

    def delete_stack(self, **kwargs) -> dict[str, Any]:
        ...

    def describe_stack_set(self, **kwargs) -> dict[str, Any]:
        ...

    def create_stack_set(self, **kwargs) -> dict[str, Any]:
        ...

    def update_stack_set(self, **kwargs) -> dict[str, Any]:
        ...

    def create_stack_instances(self, **kwargs) -> dict[str, Any]:
        ...

    def describe_stack_set_operation(self, **kwargs) -> dict[str, Any]:
        ...

    def get_waiter(self, waiter_name: str) -> Waiter:
        ...

    def get_paginator(self, operation_name: str) -> Any:
        ...


@dataclass
class ChangeSet:
    """
    A change set created for a single deployment attempt.

    ``name`` holds the id (ARN) returned by the provider, which identifies the change set unambiguously.
    """

    name: str
    stack_id: str
    execution_status: Optional[str] = None
    status_reason: Optional[str] = None
    changes: Optional[list[dict]] = None

    @property
    def has_changes(self) -> bool:
        return bool(self.changes)

    @property
    def is_available(self) -> bool:
        return self.execution_status == ExecutionStatus.AVAILABLE

    @property
    def is_no_op(self) -> bool:
        return status.is_no_op_change_set(self.execution_status, self.status_reason, self.changes)

    def __str__(self):
        return f"name={self.name}, stackID={self.stack_id}"


@dataclass
class Stack:
    id: str
    name: str
    status: str
    status_reason: Optional[str] = None
    outputs: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_description(cls, description: dict) -> "Stack":
        """Create a stack from an entry of the ``Stacks`` list returned by ``describe_stacks``."""
        outputs = {o["OutputKey"]: o.get("OutputValue") for o in description.get("Outputs", [])}
        return cls(
            id=description.get("StackId"),
            name=description.get("StackName"),
            status=description.get("StackStatus"),
            status_reason=description.get("StackStatusReason"),
            outputs=outputs,
        )

    @property
    def in_progress(self) -> bool:
        return status.is_in_progress(self.status)

    @property
    def terminal_failure(self) -> bool:
        return status.is_terminal_failure(self.status)


def failed_resource_events(events: StackEvents) -> StackEvents:
    """Select the events of resources which failed to deploy, in the order returned by the provider (newest first)."""
    return [e for e in events if (e.get("ResourceStatus") or "").endswith("_FAILED")]


def format_events(events: StackEvents) -> str:
    return "\n".join(
        f"{e.get('LogicalResourceId')} ({e.get('ResourceType')}): "
        f"{e.get('ResourceStatus')} {e.get('ResourceStatusReason') or ''}".rstrip()
        for e in events
    )


def is_valid_change_set_name(name: str) -> bool:
    return bool(name) and CHANGE_SET_NAME_PATTERN.match(name) is not None


def generate_change_set_name(stack_name: str, prefix: str) -> str:
    """
    Generate a unique change set name for a deployment of the given stack, e.g. ``stackdeploy-my-app-1a2b3c4d``.

    :param stack_name: the name of the stack the change set is created for
    :param prefix: the prefix of the name, must start with a letter
    :return: a name starting with a letter, only containing alphanumerics and hyphens, at most 128 characters long
    """
    prefix = to_resource_name_part(prefix)
    if not prefix or not prefix[0].isalpha():
        raise ValueError(f"change set name prefix must start with a letter: {prefix!r}")
    suffix = short_uid()
    if len(prefix) + len(suffix) + 1 > CHANGE_SET_NAME_MAX_LENGTH:
        raise ValueError(
            f"change set name prefix must be at most "
            f"{CHANGE_SET_NAME_MAX_LENGTH - len(suffix) - 1} characters long: {prefix!r}"
        )
    # the stack name is shortened so that the random suffix always survives the length limit
    available = CHANGE_SET_NAME_MAX_LENGTH - len(prefix) - len(suffix) - 2
    middle = to_resource_name_part(stack_name)[: max(available, 0)].strip("-")
    parts = [prefix, middle, suffix] if middle else [prefix, suffix]
    return "-".join(parts)[:CHANGE_SET_NAME_MAX_LENGTH]
